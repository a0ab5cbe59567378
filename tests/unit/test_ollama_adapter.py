# tests/unit/test_ollama_adapter.py

from __future__ import annotations
import json
import sys
from pathlib import Path
import httpx
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmgate.core.errors import InvalidResponse, ModelUnavailable, NetworkFailure, ServerError
from llmgate.core.models import Content, ModelSettings, Usage
from llmgate.providers.ollama import OllamaAdapter
from llmgate.secrets import keys
from llmgate.secrets.sources import MemorySecretStore

SETTINGS = ModelSettings(model_name="llama3", max_tokens=20)


def _adapter(handler, store=None, base_url=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaAdapter(store or MemorySecretStore(), base_url=base_url, client=client)


def _ndjson(*objs) -> bytes:
    return "".join(json.dumps(o) + "\n" for o in objs).encode()


def test_base_url_precedence():
    store = MemorySecretStore()
    assert OllamaAdapter(store).base_url == "http://localhost:11434"
    assert OllamaAdapter(store, base_url="http://box:11434/").base_url == "http://box:11434"
    store.save(keys.OLLAMA_BASE_URL, "http://saved:9999")
    assert OllamaAdapter(store, base_url="http://box:11434").base_url == "http://saved:9999"


def test_always_configured():
    assert OllamaAdapter(MemorySecretStore()).is_configured()


@pytest.mark.asyncio
async def test_stream_yields_pieces_then_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_ndjson(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True,
             "prompt_eval_count": 11, "eval_count": 2},
        ) + b"not json\n")

    chunks = [c async for c in _adapter(handler).stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("Hel"), Content("lo"), Usage(11, 2)]
    assert seen["url"] == "http://localhost:11434/api/chat"
    assert seen["body"]["stream"] is True
    assert seen["body"]["options"]["num_predict"] == 20


@pytest.mark.asyncio
async def test_stream_in_band_error():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"error": "model 'nope' not found"}))

    with pytest.raises(ServerError) as info:
        async for _ in _adapter(handler).stream_message("hi", [], SETTINGS):
            pass
    assert "not found" in info.value.message


@pytest.mark.asyncio
async def test_send_message_reads_counts():
    def handler(request):
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json={
            "message": {"role": "assistant", "content": "full"},
            "done": True, "done_reason": "stop", "prompt_eval_count": 4, "eval_count": 1,
        })

    resp = await _adapter(handler).send_message("hi", [], SETTINGS)
    assert resp.content == "full"
    assert (resp.input_tokens, resp.output_tokens) == (4, 1)


@pytest.mark.asyncio
async def test_list_models_filters_embeddings():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [
            {"name": "llama3:latest", "model": "llama3:latest", "size": 4_700_000_000},
            {"name": "nomic-embed-text:latest", "size": 270_000_000},
            {"name": "phi3:mini", "size": 2_200_000_000},
        ]})

    models = await _adapter(handler).list_models()
    assert [m.name for m in models] == ["llama3:latest", "phi3:mini"]
    assert models[0].formatted_size == "4.7 GB"


@pytest.mark.asyncio
async def test_list_models_bad_shape():
    with pytest.raises(InvalidResponse):
        await _adapter(lambda r: httpx.Response(200, json={"tags": []})).list_models()


@pytest.mark.asyncio
async def test_daemon_not_running_hint():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkFailure) as info:
        await _adapter(handler).send_message("hi", [], SETTINGS)
    assert "Is Ollama running?" in info.value.message
    assert "http://localhost:11434" in info.value.message


@pytest.mark.asyncio
async def test_missing_model_is_model_unavailable():
    with pytest.raises(ModelUnavailable):
        async for _ in _adapter(lambda r: httpx.Response(404, json={"error": "no"})).stream_message("hi", [], SETTINGS):
            pass


@pytest.mark.asyncio
async def test_non_numeric_counts_are_ignored():
    def handler(request):
        if json.loads(request.content)["stream"]:
            return httpx.Response(200, content=_ndjson(
                {"message": "oops", "done": False},
                {"message": {"content": "ok"}, "done": False},
                {"message": {"content": ""}, "done": True, "prompt_eval_count": "x", "eval_count": "y"},
            ))
        return httpx.Response(200, json={
            "message": {"content": "full"}, "done": True,
            "done_reason": 3, "prompt_eval_count": "x", "eval_count": 2,
        })

    adapter = _adapter(handler)
    chunks = [c async for c in adapter.stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("ok")]

    resp = await adapter.send_message("hi", [], SETTINGS)
    assert (resp.input_tokens, resp.output_tokens) == (None, 2)
    assert resp.finish_reason == "stop"


@pytest.mark.asyncio
async def test_list_models_tolerates_odd_size_and_details():
    def handler(request):
        return httpx.Response(200, json={"models": [{"name": "llama3:latest", "size": "big", "details": "n/a"}]})

    models = await _adapter(handler).list_models()
    assert models[0].size is None
    assert models[0].details == {}
