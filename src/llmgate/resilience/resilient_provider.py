from __future__ import annotations
import asyncio
import logging
import random
import time
from typing import AsyncIterator, List, Optional, Sequence

from llmgate.core.errors import ProviderError, RateLimited, UnsupportedFeature
from llmgate.core.models import Message, ModelInfo, ModelSettings, Response, StreamChunk

log = logging.getLogger(__name__)


class ResiliencePolicy:
    def __init__(self, max_retries=3, base_delay=0.5, max_delay=8.0, total_timeout=30.0,
                 retry_exceptions=(TimeoutError,)):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.total_timeout = total_timeout
        self.retry_exceptions = tuple(retry_exceptions)

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "ResiliencePolicy":
        cfg = cfg or {}
        return cls(
            max_retries=int(cfg.get("max_retries", 3)),
            base_delay=float(cfg.get("base_delay", 0.5)),
            max_delay=float(cfg.get("max_delay", 8.0)),
            total_timeout=float(cfg.get("total_timeout", 30.0)),
        )

    def compute_backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.1)


class ResilientProvider:
    """
    Retries retryable failures around any Provider. Errors that exhaust the budget
    are re-raised unchanged, so callers always see the adapter's own error kind.
    """

    def __init__(self, inner, policy: ResiliencePolicy):
        self.inner = inner
        self.policy = policy

    @property
    def descriptor(self):
        return self.inner.descriptor

    def is_configured(self) -> bool:
        return self.inner.is_configured()

    async def list_models(self) -> List[ModelInfo]:
        lister = getattr(self.inner, "list_models", None)
        if lister is None:
            raise UnsupportedFeature("model listing", provider=self.descriptor.id)
        return await lister()

    def _should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, ProviderError):
            return exc.retryable
        # Fallback on configured transient types (e.g., TimeoutError)
        return isinstance(exc, self.policy.retry_exceptions)

    def _delay(self, exc: Exception, attempt: int, start: float) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to give up."""
        if not self._should_retry(exc) or attempt > self.policy.max_retries:
            return None
        remaining = self.policy.total_timeout - (time.monotonic() - start)
        delay = self.policy.compute_backoff(attempt)
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            delay = float(exc.retry_after)
        if delay > remaining:
            return None
        return delay

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.inner.send_message(text, history, settings)
            except Exception as e:
                delay = self._delay(e, attempt, start)
                if delay is None:
                    raise
                log.info("%s: attempt %d failed (%s); retrying in %.2fs", self.descriptor.id, attempt, e, delay)
                await asyncio.sleep(delay)

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        start = time.monotonic()
        attempt = 0
        yielded_any = False
        while True:
            attempt += 1
            stream = self.inner.stream_message(text, history, settings)
            try:
                async for chunk in stream:
                    yielded_any = True
                    yield chunk
                return
            except Exception as e:
                # Only retry before first chunk is yielded
                delay = None if yielded_any else self._delay(e, attempt, start)
                if delay is None:
                    raise
                log.info("%s: stream attempt %d failed (%s); retrying in %.2fs", self.descriptor.id, attempt, e, delay)
                await asyncio.sleep(delay)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
