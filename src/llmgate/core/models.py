from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Literal, Optional, Tuple, Union

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ModelSettings:
    """
    Inference parameters for one backend. Backends ignore fields they don't support.
    """
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float = 1.0
    model_name: str = ""
    system_prompt: str = ""
    use_streaming: bool = True

    @classmethod
    def default_for(cls, provider_id: str) -> "ModelSettings":
        preset = _DEFAULTS.get(provider_id)
        return replace(preset) if preset else cls()

    def copy(self, **changes: Any) -> "ModelSettings":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["ModelSettings"] = None) -> "ModelSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise ValueError(f"Unknown model settings: {unknown}")
        return replace(base or cls(), **data)


_DEFAULTS: Dict[str, ModelSettings] = {
    "anthropic": ModelSettings(model_name="claude-sonnet-4-20250514"),
    "openai": ModelSettings(model_name="gpt-4o"),
    "grok": ModelSettings(model_name="grok-3", use_streaming=False),
    "gemini": ModelSettings(model_name="gemini-2.0-flash", use_streaming=False),
    "huggingface": ModelSettings(
        max_tokens=1024, top_p=0.9, model_name="mistralai/Mistral-7B-Instruct-v0.2", use_streaming=False
    ),
    "ollama": ModelSettings(model_name="llama3"),
    "bedrock": ModelSettings(model_name="us.anthropic.claude-sonnet-4-20250514-v1:0"),
    "echo": ModelSettings(model_name="echo-lorem"),
}


@dataclass(frozen=True)
class CapabilityDescriptor:
    id: str
    display_name: str
    supports_vision: bool = False
    supports_streaming: bool = False
    supports_tools: bool = False
    available_models: Tuple[str, ...] = ()
    # Model list can be refreshed from the backend itself (local daemon)
    dynamic_models: bool = False


@dataclass(frozen=True)
class Response:
    content: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    latency_ms: float = 0.0
    model: str = ""
    provider_id: str = ""
    finish_reason: Optional[str] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


@dataclass(frozen=True)
class Content:
    text: str


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


# Closed sum type: consumers branch on exactly these two.
StreamChunk = Union[Content, Usage]


@dataclass(frozen=True)
class ModelInfo:
    """One model reported by a backend's own listing endpoint."""
    name: str
    model: Optional[str] = None
    size: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_embedding_model(self) -> bool:
        return "embed" in self.name.lower()

    @property
    def formatted_size(self) -> str:
        if self.size is None:
            return ""
        gb = self.size / 1_000_000_000
        if gb >= 1.0:
            return f"{gb:.1f} GB"
        return f"{self.size / 1_000_000:.0f} MB"
