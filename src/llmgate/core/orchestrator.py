# src/llmgate/core/orchestrator.py
from __future__ import annotations
import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

from .errors import MissingCredential, UnsupportedFeature
from .models import Content, Message, ModelSettings, Response, Usage
from .ports import Provider
from .registry import ProviderRegistry
from .usage import UsageLedger

log = logging.getLogger(__name__)


class TurnState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnResult:
    content: str
    input_tokens: Optional[int]
    output_tokens: Optional[int]
    latency_ms: float
    model: str
    provider_id: str
    finish_reason: Optional[str] = None
    interrupted: bool = False

    @property
    def total_tokens(self) -> Optional[int]:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


class Turn:
    """
    One request against one backend. Iterate chunks() for text as it arrives,
    or await run() for the whole result. Whatever text arrived before a failure
    or cancellation stays readable through .text.
    """

    def __init__(
        self,
        provider: Provider,
        text: str,
        history: Sequence[Message],
        settings: ModelSettings,
        *,
        usage: Optional[UsageLedger] = None,
    ):
        self.provider = provider
        self.provider_id = provider.descriptor.id
        self.prompt = text
        self.history = tuple(history)
        self.settings = settings
        self.streaming = provider.descriptor.supports_streaming and settings.use_streaming
        self.state = TurnState.IDLE
        self.input_tokens: Optional[int] = None
        self.output_tokens: Optional[int] = None
        self.finish_reason: Optional[str] = None
        self.model = settings.model_name
        self.latency_ms = 0.0
        self.error: Optional[BaseException] = None
        self._usage = usage
        self._parts: List[str] = []
        self._started = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def interrupted(self) -> bool:
        return self.state in (TurnState.CANCELLED, TurnState.FAILED) and bool(self._parts)

    def _apply_response(self, response: Response) -> None:
        self._parts.append(response.content)
        self.input_tokens = response.input_tokens
        self.output_tokens = response.output_tokens
        self.finish_reason = response.finish_reason
        self.model = response.model or self.model

    def _apply_chunk(self, chunk) -> Optional[str]:
        if isinstance(chunk, Content):
            self.state = TurnState.STREAMING
            if chunk.text:
                self._parts.append(chunk.text)
                return chunk.text
            return None
        if isinstance(chunk, Usage):
            # Last usage seen wins
            self.input_tokens = chunk.input_tokens
            self.output_tokens = chunk.output_tokens
            return None
        raise TypeError(f"Unexpected stream chunk: {chunk!r}")

    async def chunks(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("A turn can only be consumed once")
        self._started = True
        self.state = TurnState.SENDING
        start = time.monotonic()
        try:
            if self.streaming:
                stream = self.provider.stream_message(self.prompt, self.history, self.settings)
                try:
                    async for chunk in stream:
                        piece = self._apply_chunk(chunk)
                        if piece:
                            yield piece
                except UnsupportedFeature:
                    if self._parts:
                        raise
                    log.info("%s refused to stream; retrying as a single call", self.provider_id)
                    self.streaming = False
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                if self.streaming:
                    self.finish_reason = self.finish_reason or "stop"
            if not self.streaming:
                response = await self.provider.send_message(self.prompt, self.history, self.settings)
                self._apply_response(response)
                self.state = TurnState.COMPLETED
                if response.content:
                    yield response.content
            self.state = TurnState.COMPLETED
        except (asyncio.CancelledError, GeneratorExit):
            if self.state != TurnState.COMPLETED:
                self.state = TurnState.CANCELLED
            raise
        except Exception as e:
            self.state = TurnState.FAILED
            self.error = e
            raise
        finally:
            self.latency_ms = (time.monotonic() - start) * 1000
            self._record()

    def _record(self) -> None:
        if self.state == TurnState.FAILED:
            log.error("%s failed after %.0fms: %s", self.provider_id, self.latency_ms, self.error)
            if self._usage is not None:
                self._usage.record_error(self.provider_id, latency_ms=self.latency_ms)
            return
        log.info("%s %s in %.0fms", self.provider_id, self.state.value, self.latency_ms)
        if self._usage is not None:
            self._usage.record(
                self.provider_id,
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                latency_ms=self.latency_ms,
            )

    def result(self) -> TurnResult:
        return TurnResult(
            content=self.text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            latency_ms=self.latency_ms,
            model=self.model,
            provider_id=self.provider_id,
            finish_reason=self.finish_reason,
            interrupted=self.interrupted,
        )

    async def run(self) -> TurnResult:
        gen = self.chunks()
        try:
            async for _ in gen:
                pass
        finally:
            await gen.aclose()
        return self.result()


class StreamOrchestrator:
    """Starts turns against whatever backend the registry has active."""

    def __init__(self, registry: ProviderRegistry, usage: Optional[UsageLedger] = None):
        self.registry = registry
        self.usage = usage

    def start(self, text: str, history: Sequence[Message] = ()) -> Turn:
        provider = self.registry.active
        if not provider.is_configured():
            if self.usage is not None:
                self.usage.record_error(provider.descriptor.id)
            raise MissingCredential(provider.descriptor.id)
        return Turn(provider, text, history, self.registry.settings, usage=self.usage)
