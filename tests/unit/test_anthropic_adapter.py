# tests/unit/test_anthropic_adapter.py

from __future__ import annotations
import json
import sys
from pathlib import Path
import httpx
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmgate.core.errors import InvalidResponse, ModelUnavailable, NetworkFailure, RateLimited, ServerError
from llmgate.core.models import Content, Message, ModelSettings, Usage
from llmgate.providers.anthropic import AnthropicAdapter
from llmgate.secrets import keys
from llmgate.secrets.sources import MemorySecretStore

SETTINGS = ModelSettings(model_name="claude-3-haiku-20240307", system_prompt="Be brief.", max_tokens=100)


def _adapter(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = MemorySecretStore({keys.ANTHROPIC_API_KEY: "sk-ant-test"})
    return AnthropicAdapter(store, client=client)


def _sse(*events) -> bytes:
    out = []
    for e in events:
        out.append(f"event: {e.get('type', 'x')}\ndata: {json.dumps(e)}\n\n")
    return "".join(out).encode()


@pytest.mark.asyncio
async def test_send_message_request_and_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
            "usage": {"input_tokens": 12, "output_tokens": 4},
            "stop_reason": "end_turn",
        })

    history = [Message("system", "Extra rule."), Message("user", "hi"), Message("assistant", "hey")]
    resp = await _adapter(handler).send_message("how are you?", history, SETTINGS)

    assert resp.content == "Hello there"
    assert (resp.input_tokens, resp.output_tokens) == (12, 4)
    assert resp.finish_reason == "end_turn"
    assert resp.provider_id == "anthropic"

    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    body = seen["body"]
    assert body["model"] == "claude-3-haiku-20240307"
    assert body["max_tokens"] == 100
    assert body["system"] == "Be brief.\n\nExtra rule."
    assert body["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hey"},
        {"role": "user", "content": "how are you?"},
    ]
    assert body["stream"] is False


@pytest.mark.asyncio
async def test_stream_yields_content_then_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=_sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
            {"type": "content_block_start"},
            {"type": "content_block_delta", "delta": {"text": "Hel"}},
            {"type": "ping"},
            {"type": "content_block_delta", "delta": {"text": "lo"}},
            {"type": "message_delta", "usage": {"output_tokens": 2}},
            {"type": "message_stop"},
            {"type": "content_block_delta", "delta": {"text": "after stop"}},
        ), headers={"content-type": "text/event-stream"})

    chunks = [c async for c in _adapter(handler).stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("Hel"), Content("lo"), Usage(9, 2)]


@pytest.mark.asyncio
async def test_stream_skips_malformed_lines():
    body = b'data: {broken\n\ndata: {"type":"content_block_delta","delta":{"text":"ok"}}\n\n'
    chunks = [c async for c in _adapter(lambda r: httpx.Response(200, content=body)).stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("ok")]


@pytest.mark.asyncio
async def test_stream_error_event_is_terminal():
    def handler(request):
        return httpx.Response(200, content=_sse(
            {"type": "content_block_delta", "delta": {"text": "par"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            {"type": "content_block_delta", "delta": {"text": "never"}},
        ))

    got = []
    with pytest.raises(ServerError) as info:
        async for c in _adapter(handler).stream_message("hi", [], SETTINGS):
            got.append(c)
    assert got == [Content("par")]
    assert info.value.status_code == 529
    assert info.value.retryable


@pytest.mark.asyncio
async def test_stream_rate_limit_error_event():
    def handler(request):
        return httpx.Response(200, content=_sse({"type": "error", "error": {"type": "rate_limit_error", "message": "slow"}}))

    with pytest.raises(RateLimited):
        async for _ in _adapter(handler).stream_message("hi", [], SETTINGS):
            pass


@pytest.mark.asyncio
async def test_429_with_retry_after_header():
    def handler(request):
        return httpx.Response(429, headers={"retry-after": "30"}, json={"error": {"message": "too many"}})

    with pytest.raises(RateLimited) as info:
        await _adapter(handler).send_message("hi", [], SETTINGS)
    assert info.value.retry_after == 30
    assert info.value.provider == "anthropic"


@pytest.mark.asyncio
async def test_429_on_stream_before_any_chunk():
    def handler(request):
        return httpx.Response(429, headers={"retry-after": "30"})

    with pytest.raises(RateLimited) as info:
        async for _ in _adapter(handler).stream_message("hi", [], SETTINGS):
            pass
    assert info.value.retry_after == 30


@pytest.mark.asyncio
async def test_404_is_model_unavailable():
    with pytest.raises(ModelUnavailable) as info:
        await _adapter(lambda r: httpx.Response(404, json={})).send_message("hi", [], SETTINGS)
    assert "claude-3-haiku-20240307" in info.value.message


@pytest.mark.asyncio
async def test_server_error_carries_status_and_message():
    def handler(request):
        return httpx.Response(500, json={"error": {"type": "api_error", "message": "internal"}})

    with pytest.raises(ServerError) as info:
        await _adapter(handler).send_message("hi", [], SETTINGS)
    assert info.value.status_code == 500
    assert "internal" in info.value.message


@pytest.mark.asyncio
async def test_non_json_body_is_invalid_response():
    with pytest.raises(InvalidResponse):
        await _adapter(lambda r: httpx.Response(200, content=b"<html>")).send_message("hi", [], SETTINGS)


@pytest.mark.asyncio
async def test_transport_failure_is_network_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkFailure):
        await _adapter(handler).send_message("hi", [], SETTINGS)


@pytest.mark.asyncio
async def test_stream_skips_events_with_unexpected_shapes():
    def handler(request):
        return httpx.Response(200, content=_sse(
            {"type": "message_start", "message": "not an object"},
            {"type": "content_block_delta", "delta": "oops"},
            {"type": "content_block_delta", "delta": {"text": 7}},
            {"type": "content_block_delta", "delta": {"text": "ok"}},
            {"type": "message_delta", "usage": {"output_tokens": None}},
            {"type": "message_delta", "usage": {"output_tokens": 3}},
        ))

    chunks = [c async for c in _adapter(handler).stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("ok"), Usage(0, 3)]


@pytest.mark.asyncio
async def test_non_object_usage_is_invalid_response():
    def handler(request):
        return httpx.Response(200, json={"content": [{"type": "text", "text": "hi"}], "usage": "n/a"})

    with pytest.raises(InvalidResponse):
        await _adapter(handler).send_message("hi", [], SETTINGS)


@pytest.mark.asyncio
async def test_odd_counts_and_stop_reason_are_dropped():
    def handler(request):
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "hi"}],
            "usage": {"input_tokens": "12", "output_tokens": 4.0},
            "stop_reason": ["end_turn"],
        })

    resp = await _adapter(handler).send_message("hi", [], SETTINGS)
    assert (resp.input_tokens, resp.output_tokens) == (None, 4)
    assert resp.finish_reason is None
