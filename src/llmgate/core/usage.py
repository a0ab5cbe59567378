from __future__ import annotations
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

MAX_LATENCY_SAMPLES = 50


@dataclass
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    errors: int = 0
    latencies_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=MAX_LATENCY_SAMPLES))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def average_latency_ms(self) -> Optional[float]:
        if not self.latencies_ms:
            return None
        return sum(self.latencies_ms) / len(self.latencies_ms)

    def snapshot(self) -> "ProviderUsage":
        return ProviderUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            requests=self.requests,
            errors=self.errors,
            latencies_ms=deque(self.latencies_ms, maxlen=MAX_LATENCY_SAMPLES),
        )


class UsageLedger:
    """
    Per-provider token, request, error and latency counters for this process.
    Missing token counts are recorded as zero; nothing is estimated.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_provider: Dict[str, ProviderUsage] = {}

    def _entry(self, provider_id: str) -> ProviderUsage:
        return self._by_provider.setdefault(provider_id, ProviderUsage())

    def record(
        self,
        provider_id: str,
        *,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        latency_ms: Optional[float] = None,
    ) -> None:
        with self._lock:
            entry = self._entry(provider_id)
            entry.requests += 1
            entry.input_tokens += input_tokens or 0
            entry.output_tokens += output_tokens or 0
            if latency_ms is not None:
                entry.latencies_ms.append(float(latency_ms))

    def record_error(self, provider_id: str, *, latency_ms: Optional[float] = None) -> None:
        with self._lock:
            entry = self._entry(provider_id)
            entry.errors += 1
            if latency_ms is not None:
                entry.latencies_ms.append(float(latency_ms))

    def for_provider(self, provider_id: str) -> ProviderUsage:
        with self._lock:
            entry = self._by_provider.get(provider_id)
            return entry.snapshot() if entry else ProviderUsage()

    def providers(self) -> Dict[str, ProviderUsage]:
        with self._lock:
            return {pid: entry.snapshot() for pid, entry in self._by_provider.items()}

    def session_total(self) -> ProviderUsage:
        total = ProviderUsage()
        for entry in self.providers().values():
            total.input_tokens += entry.input_tokens
            total.output_tokens += entry.output_tokens
            total.requests += entry.requests
            total.errors += entry.errors
        return total

    def reset(self) -> None:
        with self._lock:
            self._by_provider.clear()
