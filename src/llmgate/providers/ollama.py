# src/llmgate/providers/ollama.py
from __future__ import annotations
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from llmgate.core.errors import InvalidResponse, NetworkFailure, ServerError
from llmgate.core.models import (
    CapabilityDescriptor,
    Content,
    Message,
    ModelInfo,
    ModelSettings,
    Response,
    StreamChunk,
    Usage,
)
from llmgate.core.ports import SecretStore
from llmgate.decoders.ndjson import iter_ndjson
from llmgate.providers.http import (
    HTTPBackend,
    json_body,
    json_object,
    network_failure,
    optional_str,
    raise_for_status,
    token_count,
)
from llmgate.providers.messages import folded_messages
from llmgate.providers.registry import AdapterCatalog
from llmgate.secrets import keys

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
TAGS_TIMEOUT = 10.0


@AdapterCatalog.register("ollama")
class OllamaAdapter(HTTPBackend):
    """
    Local daemon. No credentials; the base URL can be overridden through the secret store.
    Installed models come from /api/tags, so the descriptor's list is only a fallback.
    """

    descriptor = CapabilityDescriptor(
        id="ollama",
        display_name="Ollama (Local)",
        supports_vision=True,
        supports_streaming=True,
        supports_tools=False,
        available_models=("llama3", "gemma3:latest", "mistral", "codellama", "phi3"),
        dynamic_models=True,
    )

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self._configured_url = base_url

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "OllamaAdapter":
        cfg = provider_cfg or {}
        return cls(secrets, base_url=cfg.get("base_url"), client=client, timeout=cfg.get("timeout"))

    @property
    def base_url(self) -> str:
        saved = self.secrets.load(keys.OLLAMA_BASE_URL)
        url = saved or self._configured_url or DEFAULT_BASE_URL
        return url.rstrip("/")

    def is_configured(self) -> bool:
        return True

    def _not_running(self, exc: Exception) -> NetworkFailure:
        if isinstance(exc, httpx.ConnectError):
            hint = f"Cannot connect to Ollama at {self.base_url}. Is Ollama running? Start it with 'ollama serve'."
            return network_failure(self.descriptor.id, exc, hint=hint)
        return network_failure(self.descriptor.id, exc)

    @staticmethod
    def _body(text: str, history: Sequence[Message], settings: ModelSettings, *, stream: bool) -> Dict[str, Any]:
        return {
            "model": settings.model_name,
            "messages": folded_messages(text, history, settings),
            "stream": stream,
            "options": {
                "temperature": settings.temperature,
                "top_p": settings.top_p,
                "num_predict": settings.max_tokens,
            },
        }

    async def list_models(self) -> List[ModelInfo]:
        url = f"{self.base_url}/api/tags"
        try:
            async with self._session() as client:
                resp = await client.get(url, timeout=TAGS_TIMEOUT)
                await raise_for_status(self.descriptor.id, resp)
                data = json_body(self.descriptor.id, resp)
        except httpx.TransportError as e:
            raise self._not_running(e) from e

        entries = data.get("models")
        if not isinstance(entries, list):
            raise InvalidResponse(self.descriptor.id, "tags response has no 'models' list")
        models = [
            ModelInfo(
                name=str(m["name"]),
                model=m.get("model"),
                size=token_count(m.get("size")),
                details=json_object(m.get("details")),
            )
            for m in entries
            if isinstance(m, dict) and m.get("name")
        ]
        chat_models = [m for m in models if not m.is_embedding_model]
        log.debug("ollama: %d models installed, %d usable for chat", len(models), len(chat_models))
        return chat_models

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        start = time.monotonic()
        try:
            async with self._session() as client:
                resp = await client.post(f"{self.base_url}/api/chat", json=self._body(text, history, settings, stream=False))
                await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                data = json_body(self.descriptor.id, resp)
        except httpx.TransportError as e:
            raise self._not_running(e) from e
        latency = (time.monotonic() - start) * 1000

        message = data.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise InvalidResponse(self.descriptor.id, "missing message.content")
        return Response(
            content=message["content"],
            input_tokens=token_count(data.get("prompt_eval_count")),
            output_tokens=token_count(data.get("eval_count")),
            latency_ms=latency,
            model=settings.model_name,
            provider_id=self.descriptor.id,
            finish_reason=optional_str(data.get("done_reason")) or "stop",
        )

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        body = self._body(text, history, settings, stream=True)
        try:
            async with self._session() as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=body) as resp:
                    await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                    async with aclosing(iter_ndjson(resp.aiter_lines())) as objects:
                        async for obj in objects:
                            if isinstance(obj.get("error"), str):
                                raise ServerError(0, obj["error"], provider=self.descriptor.id)
                            piece = json_object(obj.get("message")).get("content")
                            if isinstance(piece, str) and piece:
                                yield Content(piece)
                            if obj.get("done") is True:
                                input_tokens = token_count(obj.get("prompt_eval_count"))
                                output_tokens = token_count(obj.get("eval_count"))
                                if input_tokens is not None or output_tokens is not None:
                                    yield Usage(input_tokens or 0, output_tokens or 0)
        except httpx.TransportError as e:
            raise self._not_running(e) from e
