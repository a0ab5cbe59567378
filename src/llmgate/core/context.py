# src/llmgate/core/context.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import tiktoken

from .models import Message

log = logging.getLogger(__name__)

# Known context windows (safe lower bounds)
MODEL_LIMITS: Dict[str, int] = {
    # Anthropic
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-opus": 200_000,
    "claude-3-haiku": 200_000,
    "claude-2.1": 200_000,
    # OpenAI
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-3.5-turbo": 16_000,
    # Google
    "gemini-1.5-pro": 2_000_000,
    "gemini-1.5-flash": 1_000_000,
    # xAI
    "grok-3": 128_000,
    # Local
    "llama3": 8_000,
    "mistral": 32_000,
}
DEFAULT_CONTEXT_LIMIT = 8_192
PROMPT_OVERHEAD_TOKENS = 500


def context_limit_for(model: str) -> int:
    """Exact match, then the longest known name contained in `model`, then name hints."""
    if model in MODEL_LIMITS:
        return MODEL_LIMITS[model]
    matches = [k for k in MODEL_LIMITS if k in model]
    if matches:
        return MODEL_LIMITS[max(matches, key=len)]
    lower = model.lower()
    if "128k" in lower:
        return 128_000
    if "32k" in lower:
        return 32_000
    if "16k" in lower:
        return 16_000
    if "flash" in lower or "pro" in lower:
        return 1_000_000
    return DEFAULT_CONTEXT_LIMIT


def _rough_token_count(text: str) -> int:
    # Fallback heuristic ≈ 4 chars/token
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


class TokenCounter:
    """
    Counts tokens for a list of messages.
    Uses tiktoken's cl100k_base for every backend; falls back to a heuristic
    if the encoding can't be loaded (e.g. offline with a cold cache).
    """
    def __init__(self, model_hint: Optional[str] = None):
        self.model_hint = model_hint
        try:
            self._enc = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            log.debug("tiktoken unavailable, using heuristic counts: %s", e)
            self._enc = None

    def count_text(self, text: str) -> int:
        if self._enc is not None:
            return len(self._enc.encode(text, disallowed_special=()))
        return _rough_token_count(text)

    def count_messages(self, messages: Sequence[Message]) -> int:
        # per-message overhead ~ 4 (role, separators), conservative
        return sum(4 + self.count_text(m.content) for m in messages)


@dataclass(frozen=True)
class ContextUsage:
    used_tokens: int
    limit: int

    @property
    def fraction(self) -> float:
        return self.used_tokens / self.limit if self.limit else 0.0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used_tokens)


def usage(history: Sequence[Message], model: str, counter: Optional[TokenCounter] = None) -> ContextUsage:
    counter = counter or TokenCounter(model_hint=model)
    used = counter.count_messages(history) + PROMPT_OVERHEAD_TOKENS
    return ContextUsage(used_tokens=used, limit=context_limit_for(model))


@dataclass(frozen=True)
class ContextPolicy:
    """
    max_input_tokens: hard cap for the request messages (pre-response).
    response_reserve_tokens: budget you want to leave for the model to answer.
    always_keep_last_n: always keep this many most-recent messages (in addition to system).
    """
    max_input_tokens: int
    response_reserve_tokens: int = 1024
    always_keep_last_n: int = 6  # user+assistant messages, not counting the initial system

    @classmethod
    def for_model(cls, model: str, **kwargs) -> "ContextPolicy":
        return cls(max_input_tokens=context_limit_for(model), **kwargs)


class ContextWindowManager:
    """
    Trims old turns until the request fits within (max_input_tokens - response_reserve_tokens).
    Always keeps the very first system message and the last N messages.
    """
    def __init__(self, policy: ContextPolicy, model_hint: Optional[str] = None, counter: Optional[TokenCounter] = None):
        self.policy = policy
        self.counter = counter or TokenCounter(model_hint=model_hint)

    def apply(self, messages: Sequence[Message]) -> List[Message]:
        messages = list(messages)
        if not messages:
            return messages

        # Never drop the very first message if it's system
        system: List[Message] = []
        rest = messages
        if messages[0].role == "system":
            system = [messages[0]]
            rest = messages[1:]

        target = self.policy.max_input_tokens - max(0, self.policy.response_reserve_tokens)
        target = max(1, target)  # sanity floor so we don't go to zero

        keep_tail_n = min(self.policy.always_keep_last_n, len(rest))
        head = rest[:-keep_tail_n] if keep_tail_n > 0 else rest
        tail = rest[-keep_tail_n:] if keep_tail_n > 0 else []

        candidate = system + head + tail
        if self.counter.count_messages(candidate) <= target:
            return candidate

        # Trim from the head (oldest first), keeping system + tail intact
        drop_idx = 0
        while drop_idx < len(head) and self.counter.count_messages(system + head[drop_idx:] + tail) > target:
            drop_idx += 1
        trimmed = system + head[drop_idx:] + tail

        # Still over: shorten the tail too, but never below one message
        while self.counter.count_messages(trimmed) > target and len(trimmed) > len(system) + 1:
            trimmed = system + trimmed[len(system) + 1:]

        dropped = len(messages) - len(trimmed)
        if dropped:
            log.debug("context: dropped %d oldest messages to fit %d tokens", dropped, target)
        return trimmed
