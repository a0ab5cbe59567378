from __future__ import annotations
import time
from typing import Any, Dict, Optional, Sequence

import httpx

from llmgate.core.errors import InvalidResponse, MissingCredential
from llmgate.core.models import CapabilityDescriptor, Message, ModelSettings, Response
from llmgate.core.ports import SecretStore
from llmgate.core.streaming import as_stream
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

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta"


@AdapterCatalog.register("gemini")
class GeminiAdapter(HTTPBackend):
    """generateContent only; streaming goes through the single-chunk fallback."""

    descriptor = CapabilityDescriptor(
        id="gemini",
        display_name="Gemini",
        supports_vision=True,
        supports_streaming=False,
        supports_tools=False,
        available_models=(
            "gemini-2.5-flash-preview-05-20",
            "gemini-2.5-pro-preview-05-06",
            "gemini-2.0-flash",
            "gemini-2.0-flash-lite",
            "gemini-1.5-pro",
            "gemini-1.5-flash",
        ),
    )

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = GEMINI_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self.base_url = base_url.rstrip("/")

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "GeminiAdapter":
        cfg = provider_cfg or {}
        return cls(secrets, base_url=cfg.get("base_url") or GEMINI_URL, client=client, timeout=cfg.get("timeout"))

    def is_configured(self) -> bool:
        return bool(self.secrets.load(keys.GEMINI_API_KEY))

    @staticmethod
    def _body(text: str, history: Sequence[Message], settings: ModelSettings) -> Dict[str, Any]:
        system, turns = split_system(text, history, settings)
        contents = [
            {"role": "model" if t["role"] == "assistant" else "user", "parts": [{"text": t["content"]}]}
            for t in turns
        ]
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": settings.temperature,
                "maxOutputTokens": settings.max_tokens,
                "topP": settings.top_p,
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        api_key = self.secrets.load(keys.GEMINI_API_KEY)
        if not api_key:
            raise MissingCredential(self.descriptor.id)

        url = f"{self.base_url}/models/{settings.model_name}:generateContent"
        headers = {"content-type": "application/json", "x-goog-api-key": api_key}
        start = time.monotonic()
        try:
            async with self._session() as client:
                resp = await client.post(url, headers=headers, json=self._body(text, history, settings))
                await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                data = json_body(self.descriptor.id, resp)
        except httpx.TransportError as e:
            raise network_failure(self.descriptor.id, e) from e
        latency = (time.monotonic() - start) * 1000

        try:
            candidate = data["candidates"][0]
            parts = candidate["content"]["parts"]
            content = "".join(p["text"] for p in parts if "text" in p)
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidResponse(self.descriptor.id, "could not parse candidates") from e

        meta = json_object(data.get("usageMetadata"))
        return Response(
            content=content,
            input_tokens=token_count(meta.get("promptTokenCount")),
            output_tokens=token_count(meta.get("candidatesTokenCount")),
            latency_ms=latency,
            model=settings.model_name,
            provider_id=self.descriptor.id,
            finish_reason=optional_str(candidate.get("finishReason")),
        )

    stream_message = as_stream(send_message)
