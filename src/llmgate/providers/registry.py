from __future__ import annotations
from typing import Dict, List, Type, Callable
from importlib import import_module

_BUILTIN_MODULES = (
    "llmgate.providers.anthropic",
    "llmgate.providers.openai_adapter",
    "llmgate.providers.gemini",
    "llmgate.providers.huggingface",
    "llmgate.providers.ollama",
    "llmgate.providers.bedrock",
    "llmgate.providers.echo",
)


class AdapterCatalog:
    """
    Backend id -> adapter class. Classes register themselves with @AdapterCatalog.register("id")
    and expose create(*, secrets, provider_cfg, client).
    """
    _classes: Dict[str, Type] = {}

    @classmethod
    def register(cls, name: str) -> Callable[[Type], Type]:
        name = name.lower()
        def deco(klass: Type) -> Type:
            cls._classes[name] = klass
            return klass
        return deco

    @classmethod
    def get(cls, name: str) -> Type:
        key = name.lower()
        if key not in cls._classes:
            raise KeyError(f"Provider '{name}' not registered")
        return cls._classes[key]

    @classmethod
    def names(cls) -> List[str]:
        return list(cls._classes)

    @classmethod
    def ensure_imports(cls) -> None:
        """
        Import built-in adapters so their @register decorators run.
        Call once at bootstrap before get().
        """
        for module in _BUILTIN_MODULES:
            import_module(module)
