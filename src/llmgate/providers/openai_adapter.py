# src/llmgate/providers/openai_adapter.py
from __future__ import annotations
import time
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx
from openai import APIConnectionError, AsyncOpenAI

from llmgate.core.errors import (
    InvalidResponse,
    MissingCredential,
    ModelUnavailable,
    NetworkFailure,
    ProviderError,
    RateLimited,
    ServerError,
)
from llmgate.core.models import CapabilityDescriptor, Content, Message, ModelSettings, Response, StreamChunk, Usage
from llmgate.core.ports import SecretStore
from llmgate.core.streaming import as_stream
from llmgate.providers.http import make_timeout, parse_retry_after
from llmgate.providers.messages import folded_messages
from llmgate.providers.registry import AdapterCatalog
from llmgate.secrets import keys


def _classify_openai_exception(exc: Exception, *, provider: str, model: str) -> ProviderError:
    """
    Convert OpenAI SDK exceptions into error kinds.
    Avoid hard dependency on specific SDK status classes by inspecting attributes/message.
    """
    if isinstance(exc, APIConnectionError):
        return NetworkFailure(str(exc) or "connection error", provider=provider)

    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    msg = getattr(exc, "message", None) or str(exc)

    if status is not None:
        s = int(status)
        if s == 429:
            response = getattr(exc, "response", None)
            headers = getattr(response, "headers", None) or {}
            return RateLimited(parse_retry_after(headers.get("retry-after")), provider=provider)
        if s == 404:
            return ModelUnavailable(model, provider=provider)
        return ServerError(s, msg, provider=provider)

    lower = msg.lower()
    if any(k in lower for k in ("rate limit", "temporarily unavailable")):
        return RateLimited(provider=provider)
    if any(k in lower for k in ("timeout", "timed out", "connection")):
        return NetworkFailure(msg, provider=provider)
    return InvalidResponse(provider, msg)


@AdapterCatalog.register("openai")
class OpenAIAdapter:
    """
    Chat Completions through the official SDK.
    SDK retries are off: retrying is ResilientProvider's job.
    """

    descriptor = CapabilityDescriptor(
        id="openai",
        display_name="OpenAI",
        supports_vision=True,
        supports_streaming=True,
        supports_tools=True,
        available_models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo", "o1-preview", "o1-mini"),
    )
    secret_key = keys.OPENAI_API_KEY
    default_base_url: Optional[str] = None

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.secrets = secrets
        self.base_url = base_url or self.default_base_url
        self.organization = organization
        self.timeout = make_timeout(timeout)
        self._http_client = client
        self._sdk: Optional[AsyncOpenAI] = None
        self._sdk_key: Optional[str] = None

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "OpenAIAdapter":
        cfg = provider_cfg or {}
        return cls(
            secrets,
            base_url=cfg.get("base_url"),
            organization=cfg.get("organization"),
            client=client,
            timeout=cfg.get("timeout"),
        )

    def is_configured(self) -> bool:
        return bool(self.secrets.load(self.secret_key))

    def _client(self) -> AsyncOpenAI:
        api_key = self.secrets.load(self.secret_key)
        if not api_key:
            raise MissingCredential(self.descriptor.id)
        # Rebuilt only when the stored key changes
        if self._sdk is None or self._sdk_key != api_key:
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0, "timeout": self.timeout}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            if self.organization:
                client_kwargs["organization"] = self.organization
            if self._http_client is not None:
                client_kwargs["http_client"] = self._http_client
            self._sdk = AsyncOpenAI(**client_kwargs)
            self._sdk_key = api_key
        return self._sdk

    def _build_args(self, text: str, history: Sequence[Message], settings: ModelSettings, *, stream: bool) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "model": settings.model_name,
            "messages": folded_messages(text, history, settings),
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "stream": stream,
        }
        if stream:
            args["stream_options"] = {"include_usage": True}
        return args

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        sdk = self._client()
        start = time.monotonic()
        try:
            resp = await sdk.chat.completions.create(**self._build_args(text, history, settings, stream=False))
        except Exception as e:
            raise _classify_openai_exception(e, provider=self.descriptor.id, model=settings.model_name) from e
        latency = (time.monotonic() - start) * 1000

        if not resp.choices:
            raise InvalidResponse(self.descriptor.id, "no choices in response")
        choice = resp.choices[0]
        usage = resp.usage
        return Response(
            content=choice.message.content or "",
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            latency_ms=latency,
            model=resp.model or settings.model_name,
            provider_id=self.descriptor.id,
            finish_reason=choice.finish_reason,
        )

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        sdk = self._client()
        try:
            stream = await sdk.chat.completions.create(**self._build_args(text, history, settings, stream=True))
        except Exception as e:
            raise _classify_openai_exception(e, provider=self.descriptor.id, model=settings.model_name) from e

        try:
            async for chunk in stream:
                if chunk.usage is not None:
                    yield Usage(chunk.usage.prompt_tokens or 0, chunk.usage.completion_tokens or 0)
                if not chunk.choices:
                    continue
                piece = chunk.choices[0].delta.content
                if piece:
                    yield Content(piece)
        except ProviderError:
            raise
        except Exception as e:
            raise _classify_openai_exception(e, provider=self.descriptor.id, model=settings.model_name) from e
        finally:
            await stream.close()

    async def aclose(self) -> None:
        # An injected http client belongs to the caller
        if self._sdk is not None and self._http_client is None:
            await self._sdk.close()
        self._sdk = None


@AdapterCatalog.register("grok")
class GrokAdapter(OpenAIAdapter):
    """xAI speaks the same Chat Completions dialect; only the endpoint and key differ."""

    descriptor = CapabilityDescriptor(
        id="grok",
        display_name="Grok",
        supports_vision=True,
        supports_streaming=False,
        supports_tools=False,
        available_models=("grok-3", "grok-3-fast", "grok-3-mini", "grok-3-mini-fast", "grok-2", "grok-2-vision"),
    )
    secret_key = keys.GROK_API_KEY
    default_base_url = "https://api.x.ai/v1"

    stream_message = as_stream(OpenAIAdapter.send_message)
