from __future__ import annotations
import json
import time
from typing import Any, Dict, Optional, Sequence

import httpx

from llmgate.core.errors import InvalidResponse, MissingCredential, ServerError
from llmgate.core.models import CapabilityDescriptor, Message, ModelSettings, Response
from llmgate.core.ports import SecretStore
from llmgate.core.streaming import as_stream
from llmgate.providers.http import HTTPBackend, network_failure, raise_for_status
from llmgate.providers.messages import folded_messages
from llmgate.providers.registry import AdapterCatalog
from llmgate.secrets import keys

HF_ROUTER_URL = "https://router.huggingface.co/v1"
MIN_TEMPERATURE = 0.01


def parse_generation(raw: str) -> str:
    """
    The router answers in OpenAI shape; older inference endpoints return
    [{"generated_text": ...}] or {"generated_text": ...}. Anything else is taken as text.
    """
    try:
        data = json.loads(raw)
    except ValueError:
        return raw.strip()

    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") if isinstance(choices[0], dict) else None
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"].strip()
        if isinstance(data.get("generated_text"), str):
            return data["generated_text"].strip()
    if isinstance(data, list) and data and isinstance(data[0], dict):
        text = data[0].get("generated_text")
        if isinstance(text, str):
            return text.strip()
    return raw.strip()


@AdapterCatalog.register("huggingface")
class HuggingFaceAdapter(HTTPBackend):
    descriptor = CapabilityDescriptor(
        id="huggingface",
        display_name="HuggingFace",
        supports_vision=False,
        supports_streaming=False,
        supports_tools=False,
        available_models=(
            "mistralai/Mistral-7B-Instruct-v0.2",
            "meta-llama/Llama-2-7b-chat-hf",
            "meta-llama/Meta-Llama-3-8B-Instruct",
            "microsoft/Phi-3-mini-4k-instruct",
            "tiiuae/falcon-7b-instruct",
            "HuggingFaceH4/zephyr-7b-beta",
        ),
    )

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = HF_ROUTER_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self.base_url = base_url.rstrip("/")

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "HuggingFaceAdapter":
        cfg = provider_cfg or {}
        return cls(secrets, base_url=cfg.get("base_url") or HF_ROUTER_URL, client=client, timeout=cfg.get("timeout"))

    def is_configured(self) -> bool:
        return bool(self.secrets.load(keys.HUGGINGFACE_TOKEN))

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        token = self.secrets.load(keys.HUGGINGFACE_TOKEN)
        if not token:
            raise MissingCredential(self.descriptor.id)

        body = {
            "model": settings.model_name,
            "messages": folded_messages(text, history, settings),
            "max_tokens": settings.max_tokens,
            # Some hosted models reject a temperature of exactly 0
            "temperature": max(settings.temperature, MIN_TEMPERATURE),
            "top_p": settings.top_p,
            "stream": False,
        }
        headers = {"content-type": "application/json", "authorization": f"Bearer {token}"}
        start = time.monotonic()
        try:
            async with self._session() as client:
                resp = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=body)
                if resp.status_code == 503:
                    self._raise_if_loading(resp)
                await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                raw = resp.text
        except httpx.TransportError as e:
            raise network_failure(self.descriptor.id, e) from e
        latency = (time.monotonic() - start) * 1000

        content = parse_generation(raw)
        if not content:
            raise InvalidResponse(self.descriptor.id, "empty response")
        return Response(
            content=content,
            latency_ms=latency,
            model=settings.model_name,
            provider_id=self.descriptor.id,
        )

    def _raise_if_loading(self, resp: httpx.Response) -> None:
        try:
            data = resp.json()
        except ValueError:
            return
        if isinstance(data, dict) and isinstance(data.get("estimated_time"), (int, float)):
            wait = int(data["estimated_time"])
            raise ServerError(
                503,
                f"Model is loading. Estimated wait: {wait}s. Try again shortly.",
                provider=self.descriptor.id,
            )

    stream_message = as_stream(send_message)
