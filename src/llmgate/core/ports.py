from __future__ import annotations
from typing import AsyncIterator, Optional, Protocol, Sequence

from .models import CapabilityDescriptor, Message, ModelSettings, Response, StreamChunk


class SecretStore(Protocol):
    """
    Key -> secret store. Keys are opaque identifiers, one per credential
    (per-backend API key, base URL override, ...).
    """

    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, value: str) -> bool: ...

    def delete(self, key: str) -> bool: ...


class Provider(Protocol):
    """
    Interface the core uses to talk to any inference backend.
    """

    descriptor: CapabilityDescriptor

    def is_configured(self) -> bool:
        """True when the credentials this backend needs are present."""
        ...

    async def send_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> Response:
        """
        Single-shot call. 'history' holds the prior turns; 'text' is the new user turn.
        Raises one of the llmgate.core.errors kinds.
        """
        ...

    def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        """
        Streaming call. Yields Content/Usage chunks until the backend completes.
        """
        ...

