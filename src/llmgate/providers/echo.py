from __future__ import annotations
import asyncio
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from llmgate.core.models import CapabilityDescriptor, Content, Message, ModelSettings, Response, StreamChunk, Usage
from llmgate.providers.registry import AdapterCatalog

_LOREM_50 = (
    "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "
    "incididunt ut labore et dolore magna aliqua Curabitur non nulla sit amet nisl "
    "tempor convallis quis ac lectus Phasellus viverra nulla ut metus varius laoreet "
    "Quisque rutrum Aenean imperdiet Etiam ultricies nisi vel augue Curabitur ullamcorper ultricies nisi"
).split()


@AdapterCatalog.register("echo")
class EchoProvider:
    """
    Offline backend that returns a fixed 50-word lorem ipsum.
    Streaming yields one word at a time with a small delay to simulate tokens.
    """
    descriptor = CapabilityDescriptor(
        id="echo",
        display_name="Echo (offline)",
        supports_streaming=True,
        available_models=("echo-lorem",),
    )

    def __init__(self, token_delay: float = 0.125, words: Optional[List[str]] = None):
        self.token_delay = float(token_delay)
        self.words = list(words) if words is not None else list(_LOREM_50)

    @classmethod
    def create(cls, *, secrets=None, provider_cfg: Dict[str, Any], client=None) -> "EchoProvider":
        cfg = provider_cfg or {}
        return cls(token_delay=cfg.get("token_delay", 0.125))

    def is_configured(self) -> bool:
        return True

    def _usage(self, text: str, history: Sequence[Message]) -> Usage:
        prompt_words = sum(len(m.content.split()) for m in history) + len(text.split())
        return Usage(prompt_words, len(self.words))

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        start = time.monotonic()
        usage = self._usage(text, history)
        return Response(
            content=" ".join(self.words),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            latency_ms=(time.monotonic() - start) * 1000,
            model=settings.model_name or "echo-lorem",
            provider_id=self.descriptor.id,
            finish_reason="stop",
        )

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        last_idx = len(self.words) - 1
        for i, w in enumerate(self.words):
            yield Content(w + ("" if i == last_idx else " "))
            if self.token_delay > 0:
                await asyncio.sleep(self.token_delay)
        yield self._usage(text, history)
