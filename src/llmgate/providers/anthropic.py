# src/llmgate/providers/anthropic.py
from __future__ import annotations
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx

from llmgate.core.errors import (
    InvalidResponse,
    MissingCredential,
    ModelUnavailable,
    ProviderError,
    RateLimited,
    ServerError,
)
from llmgate.core.models import CapabilityDescriptor, Content, Message, ModelSettings, Response, StreamChunk, Usage
from llmgate.core.ports import SecretStore
from llmgate.decoders.sse import iter_sse_events
from llmgate.providers.http import (
    HTTPBackend,
    json_body,
    json_object,
    network_failure,
    optional_str,
    raise_for_status,
    token_count,
)
from llmgate.providers.messages import split_system
from llmgate.providers.registry import AdapterCatalog
from llmgate.secrets import keys

log = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


def _stream_error(provider: str, error: Dict[str, Any], model: str) -> ProviderError:
    """In-band `error` event -> error kind."""
    kind = str(error.get("type") or "")
    message = str(error.get("message") or "stream error")
    if kind == "rate_limit_error":
        return RateLimited(provider=provider)
    if kind == "not_found_error":
        return ModelUnavailable(model, provider=provider)
    if kind == "overloaded_error":
        return ServerError(529, message, provider=provider)
    return ServerError(0, message, provider=provider)


@AdapterCatalog.register("anthropic")
class AnthropicAdapter(HTTPBackend):
    """Messages API over plain HTTP; streaming is server-sent events."""

    descriptor = CapabilityDescriptor(
        id="anthropic",
        display_name="Anthropic Claude",
        supports_vision=True,
        supports_streaming=True,
        supports_tools=True,
        available_models=(
            "claude-sonnet-4-20250514",
            "claude-opus-4-20250514",
            "claude-haiku-3-20250414",
            "claude-3-5-sonnet-20241022",
            "claude-3-haiku-20240307",
        ),
    )

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = ANTHROPIC_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self.base_url = base_url

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "AnthropicAdapter":
        cfg = provider_cfg or {}
        return cls(secrets, base_url=cfg.get("base_url") or ANTHROPIC_URL, client=client, timeout=cfg.get("timeout"))

    def _api_key(self) -> str:
        key = self.secrets.load(keys.ANTHROPIC_API_KEY)
        if not key:
            raise MissingCredential(self.descriptor.id)
        return key

    def is_configured(self) -> bool:
        return bool(self.secrets.load(keys.ANTHROPIC_API_KEY))

    def _request(self, api_key: str, text: str, history: Sequence[Message], settings: ModelSettings, *, stream: bool):
        system, messages = split_system(text, history, settings)
        body: Dict[str, Any] = {
            "model": settings.model_name,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "messages": messages,
            "stream": stream,
        }
        if system:
            body["system"] = system
        headers = {
            "content-type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": API_VERSION,
        }
        return headers, body

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        api_key = self._api_key()
        headers, body = self._request(api_key, text, history, settings, stream=False)
        start = time.monotonic()
        try:
            async with self._session() as client:
                resp = await client.post(self.base_url, headers=headers, json=body)
                await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                data = json_body(self.descriptor.id, resp)
        except httpx.TransportError as e:
            raise network_failure(self.descriptor.id, e) from e
        latency = (time.monotonic() - start) * 1000

        blocks = data.get("content")
        texts = [b.get("text") for b in blocks or [] if isinstance(b, dict) and isinstance(b.get("text"), str)]
        if not isinstance(blocks, list) or not texts:
            raise InvalidResponse(self.descriptor.id, "no text content block")
        usage = data.get("usage")
        if usage is not None and not isinstance(usage, dict):
            raise InvalidResponse(self.descriptor.id, "usage is not an object")
        usage = usage or {}
        return Response(
            content="".join(texts),
            input_tokens=token_count(usage.get("input_tokens")),
            output_tokens=token_count(usage.get("output_tokens")),
            latency_ms=latency,
            model=settings.model_name,
            provider_id=self.descriptor.id,
            finish_reason=optional_str(data.get("stop_reason")),
        )

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        api_key = self._api_key()
        headers, body = self._request(api_key, text, history, settings, stream=True)
        input_tokens = 0
        try:
            async with self._session() as client:
                async with client.stream("POST", self.base_url, headers=headers, json=body) as resp:
                    await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                    # Events with an unexpected shape are skipped, like malformed lines
                    async with aclosing(iter_sse_events(resp.aiter_lines())) as events:
                        async for event in events:
                            kind = event.get("type")
                            if kind == "content_block_delta":
                                piece = json_object(event.get("delta")).get("text")
                                if isinstance(piece, str) and piece:
                                    yield Content(piece)
                            elif kind == "message_start":
                                usage = json_object(json_object(event.get("message")).get("usage"))
                                input_tokens = token_count(usage.get("input_tokens")) or input_tokens
                            elif kind == "message_delta":
                                output_tokens = token_count(json_object(event.get("usage")).get("output_tokens"))
                                if output_tokens is not None:
                                    yield Usage(input_tokens, output_tokens)
                            elif kind == "message_stop":
                                break
                            elif kind == "error":
                                raise _stream_error(self.descriptor.id, json_object(event.get("error")), settings.model_name)
        except httpx.TransportError as e:
            raise network_failure(self.descriptor.id, e) from e
