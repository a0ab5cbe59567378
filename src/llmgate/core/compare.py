from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from .errors import ProviderError
from .registry import ProviderRegistry
from .usage import UsageLedger

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompareResult:
    provider_id: str
    provider_name: str
    model: str
    content: str
    latency_ms: float
    total_tokens: Optional[int] = None
    error: Optional[str] = None
    rank: int = 0  # 1-based, by latency

    @property
    def ok(self) -> bool:
        return self.error is None


async def _one(registry: ProviderRegistry, provider_id: str, prompt: str, usage: Optional[UsageLedger]) -> CompareResult:
    adapter = registry.get(provider_id)
    settings = registry.settings_for(provider_id)
    if adapter.descriptor.dynamic_models:
        models = registry.models_for(provider_id)
        if models and settings.model_name not in models:
            settings = settings.copy(model_name=models[0])

    start = time.monotonic()
    try:
        response = await adapter.send_message(prompt, (), settings)
    except ProviderError as e:
        log.warning("compare: %s failed: %s", provider_id, e.message)
        error = e.message
    except Exception as e:
        # The other backends still report
        log.exception("compare: %s raised unexpectedly", provider_id)
        error = f"{type(e).__name__}: {e}"
    else:
        error = None
    latency = (time.monotonic() - start) * 1000

    if error is not None:
        if usage is not None:
            usage.record_error(provider_id, latency_ms=latency)
        return CompareResult(
            provider_id=provider_id,
            provider_name=adapter.descriptor.display_name,
            model=settings.model_name,
            content="",
            latency_ms=latency,
            error=error,
        )
    if usage is not None:
        usage.record(provider_id, input_tokens=response.input_tokens, output_tokens=response.output_tokens, latency_ms=latency)
    return CompareResult(
        provider_id=provider_id,
        provider_name=adapter.descriptor.display_name,
        model=settings.model_name,
        content=response.content,
        latency_ms=latency,
        total_tokens=response.total_tokens,
    )


async def compare(
    registry: ProviderRegistry,
    prompt: str,
    provider_ids: Iterable[str],
    *,
    usage: Optional[UsageLedger] = None,
) -> List[CompareResult]:
    """
    Send one prompt to several backends at once, each with its saved settings
    and no history. Results come back sorted by measured latency, ranked from 1.
    """
    text = prompt.strip()
    if not text:
        raise ValueError("Enter a prompt to compare.")
    ids = list(dict.fromkeys(provider_ids))
    if len(ids) < 2:
        raise ValueError("Select at least 2 providers to compare.")
    for provider_id in ids:
        registry.get(provider_id)  # unknown ids fail before anything is sent

    for provider_id in ids:
        if registry.get(provider_id).descriptor.dynamic_models and not registry.cached_models(provider_id):
            await registry.refresh_models(provider_id)

    raw = await asyncio.gather(*(_one(registry, pid, text, usage) for pid in ids))
    ordered = sorted(raw, key=lambda r: (r.latency_ms, r.provider_id))
    return [replace(r, rank=i) for i, r in enumerate(ordered, start=1)]
