# src/llmgate/providers/bedrock.py
"""
Bedrock runtime, Anthropic models, streamed as binary event-stream frames.
Requests are SigV4-signed by hand; no AWS SDK involved.
"""
from __future__ import annotations
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from llmgate.core.errors import MissingCredential, ModelUnavailable, ProviderError, RateLimited, ServerError
from llmgate.core.models import CapabilityDescriptor, Content, Message, ModelSettings, Response, StreamChunk, Usage
from llmgate.core.ports import SecretStore
from llmgate.decoders.eventstream import EventStreamDecoder, Frame, decode_chunk_payload
from llmgate.providers.http import HTTPBackend, json_object, network_failure, optional_str, raise_for_status, token_count
from llmgate.providers.messages import split_system
from llmgate.providers.registry import AdapterCatalog
from llmgate.secrets import keys
from llmgate.signing.sigv4 import SigV4Signer

log = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_REGION = "us-east-1"
SERVICE = "bedrock"

# :exception-type header -> HTTP-equivalent status
_EXCEPTION_STATUS = {
    "validationException": 400,
    "accessDeniedException": 403,
    "modelTimeoutException": 504,
    "internalServerException": 500,
    "serviceUnavailableException": 503,
    "modelNotReadyException": 503,
    "modelStreamErrorException": 502,
}


def exception_for_frame(exception_type: str, payload: bytes, *, model: str) -> ProviderError:
    try:
        message = str(json.loads(payload).get("message") or exception_type)
    except (ValueError, AttributeError):
        message = payload.decode("utf-8", "replace") or exception_type
    if exception_type == "throttlingException":
        return RateLimited(provider=SERVICE)
    if exception_type == "resourceNotFoundException":
        return ModelUnavailable(model, provider=SERVICE)
    return ServerError(_EXCEPTION_STATUS.get(exception_type, 0), message, provider=SERVICE)


@AdapterCatalog.register("bedrock")
class BedrockAdapter(HTTPBackend):
    descriptor = CapabilityDescriptor(
        id="bedrock",
        display_name="AWS Bedrock",
        supports_vision=True,
        supports_streaming=True,
        supports_tools=True,
        available_models=(
            "us.anthropic.claude-sonnet-4-20250514-v1:0",
            "us.anthropic.claude-opus-4-20250514-v1:0",
            "anthropic.claude-3-5-sonnet-20241022-v2:0",
            "anthropic.claude-3-haiku-20240307-v1:0",
            "amazon.titan-text-express-v1",
        ),
    )

    def __init__(
        self,
        secrets: SecretStore,
        *,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self._configured_region = region
        self._endpoint = endpoint

    @classmethod
    def create(cls, *, secrets: SecretStore, provider_cfg: Dict[str, Any], client=None) -> "BedrockAdapter":
        cfg = provider_cfg or {}
        return cls(
            secrets,
            region=cfg.get("region"),
            endpoint=cfg.get("base_url"),
            client=client,
            timeout=cfg.get("timeout"),
        )

    @property
    def region(self) -> str:
        return self.secrets.load(keys.AWS_REGION) or self._configured_region or DEFAULT_REGION

    def _credentials(self) -> Tuple[str, str]:
        access_key = self.secrets.load(keys.AWS_ACCESS_KEY)
        secret_key = self.secrets.load(keys.AWS_SECRET_KEY)
        if not access_key or not secret_key:
            raise MissingCredential(self.descriptor.id)
        return access_key, secret_key

    def is_configured(self) -> bool:
        return bool(self.secrets.load(keys.AWS_ACCESS_KEY) and self.secrets.load(keys.AWS_SECRET_KEY))

    def _url(self, model_id: str) -> str:
        base = self._endpoint or f"https://bedrock-runtime.{self.region}.amazonaws.com"
        return f"{base.rstrip('/')}/model/{model_id}/invoke-with-response-stream"

    @staticmethod
    def _body(text: str, history: Sequence[Message], settings: ModelSettings) -> bytes:
        system, turns = split_system(text, history, settings)
        payload: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "messages": [
                {"role": t["role"], "content": [{"type": "text", "text": t["content"]}]} for t in turns
            ],
        }
        if system:
            payload["system"] = system
        return json.dumps(payload).encode("utf-8")

    def _events(self, frame: Frame, model: str) -> List[Dict[str, Any]]:
        headers = frame.decoded_headers()
        if headers.get(":message-type") == "exception":
            raise exception_for_frame(str(headers.get(":exception-type") or ""), frame.payload, model=model)
        if headers.get(":message-type") == "error":
            raise ServerError(0, str(headers.get(":error-message") or "stream error"), provider=self.descriptor.id)
        event = decode_chunk_payload(frame.payload)
        return [event] if event is not None else []

    async def stream_message(
        self, text: str, history: Sequence[Message], settings: ModelSettings
    ) -> AsyncIterator[StreamChunk]:
        access_key, secret_key = self._credentials()
        url = self._url(settings.model_name)
        body = self._body(text, history, settings)
        signer = SigV4Signer(access_key, secret_key, self.region, SERVICE)
        headers = signer.sign("POST", url, body)
        headers["content-type"] = "application/json"
        headers["accept"] = "application/vnd.amazon.eventstream"

        # One decoder per request; nothing carries over between calls
        decoder = EventStreamDecoder(prelude_crc=True)
        input_tokens = 0
        try:
            async with self._session() as client:
                async with client.stream("POST", url, headers=headers, content=body) as resp:
                    await raise_for_status(self.descriptor.id, resp, model=settings.model_name)
                    async for data in resp.aiter_bytes():
                        for frame in decoder.feed(data):
                            for event in self._events(frame, settings.model_name):
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
                                    metrics = json_object(event.get("amazon-bedrock-invocationMetrics"))
                                    output_tokens = token_count(metrics.get("outputTokenCount"))
                                    if output_tokens is not None:
                                        yield Usage(token_count(metrics.get("inputTokenCount")) or input_tokens, output_tokens)
                                elif kind == "error":
                                    message = optional_str(json_object(event.get("error")).get("message"))
                                    raise ServerError(0, message or "stream error", provider=self.descriptor.id)
        except httpx.TransportError as e:
            raise network_failure(self.descriptor.id, e) from e
        finally:
            decoder.reset()

    async def send_message(self, text: str, history: Sequence[Message], settings: ModelSettings) -> Response:
        # Bedrock is only ever spoken to through the stream endpoint
        start = time.monotonic()
        parts: List[str] = []
        usage: Optional[Usage] = None
        stream = self.stream_message(text, history, settings)
        try:
            async for chunk in stream:
                if isinstance(chunk, Content):
                    parts.append(chunk.text)
                else:
                    usage = chunk
        finally:
            await stream.aclose()
        latency = (time.monotonic() - start) * 1000
        return Response(
            content="".join(parts),
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
            latency_ms=latency,
            model=settings.model_name,
            provider_id=self.descriptor.id,
            finish_reason="stop",
        )
