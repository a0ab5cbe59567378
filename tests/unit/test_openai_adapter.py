# tests/unit/test_openai_adapter.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

# Import the module, then monkeypatch its AsyncOpenAI class
import llmgate.providers.openai_adapter as oa  # type: ignore
from llmgate.core.errors import InvalidResponse, ModelUnavailable, NetworkFailure, RateLimited, ServerError
from llmgate.core.models import Content, Message, ModelSettings, Usage
from llmgate.secrets import keys
from llmgate.secrets.sources import MemorySecretStore

SETTINGS = ModelSettings(model_name="gpt-4o-mini", system_prompt="sys", max_tokens=50)


# -------- Fakes to replace the OpenAI SDK --------

class _Obj:
    def __init__(self, **kw):
        self.__dict__.update(kw)


def _response(content):
    return _Obj(
        choices=[_Obj(message=_Obj(content=content), finish_reason="stop")],
        usage=_Obj(prompt_tokens=7, completion_tokens=2),
        model="gpt-4o-mini-2024",
    )


def _chunk(text=None, usage=None):
    choices = [] if text is None else [_Obj(delta=_Obj(content=text))]
    return _Obj(choices=choices, usage=usage)


class _FakeStream:
    def __init__(self, chunks, fail=None):
        self._chunks = list(chunks)
        self._fail = fail
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._chunks:
            return self._chunks.pop(0)
        if self._fail is not None:
            raise self._fail
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


class _FakeCompletions:
    def __init__(self, parent):
        self.parent = parent

    async def create(self, **kwargs):
        self.parent.calls.append(kwargs)
        if self.parent.raise_on_create is not None:
            raise self.parent.raise_on_create
        if kwargs.get("stream"):
            self.parent.stream = _FakeStream(
                [_chunk("he"), _chunk("llo"), _chunk(usage=_Obj(prompt_tokens=7, completion_tokens=2))]
            )
            return self.parent.stream
        return _response("hello world")


class _FakeAsyncOpenAI:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.calls = []
        self.raise_on_create = None
        self.stream = None
        self.chat = _Obj(completions=_FakeCompletions(self))
        _FakeAsyncOpenAI.instances.append(self)

    async def close(self):
        pass


@pytest.fixture
def fake_sdk(monkeypatch):
    _FakeAsyncOpenAI.instances = []
    monkeypatch.setattr(oa, "AsyncOpenAI", _FakeAsyncOpenAI, raising=True)
    return _FakeAsyncOpenAI


class _StatusError(Exception):
    def __init__(self, status_code, message="boom", headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.response = _Obj(headers=headers or {})


def _adapter(cls=oa.OpenAIAdapter, key=keys.OPENAI_API_KEY):
    return cls(MemorySecretStore({key: "sk-test"}))


@pytest.mark.asyncio
async def test_send_message(fake_sdk):
    adapter = _adapter()
    resp = await adapter.send_message("hi", [Message("user", "a"), Message("assistant", "b")], SETTINGS)

    assert resp.content == "hello world"
    assert (resp.input_tokens, resp.output_tokens) == (7, 2)
    assert resp.finish_reason == "stop"

    sdk = fake_sdk.instances[0]
    assert sdk.kwargs["api_key"] == "sk-test"
    assert sdk.kwargs["max_retries"] == 0
    args = sdk.calls[0]
    assert args["messages"][0] == {"role": "system", "content": "sys"}
    assert args["messages"][-1] == {"role": "user", "content": "hi"}
    assert args["max_tokens"] == 50
    assert "stream_options" not in args


@pytest.mark.asyncio
async def test_stream_message_yields_content_and_usage(fake_sdk):
    adapter = _adapter()
    chunks = [c async for c in adapter.stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("he"), Content("llo"), Usage(7, 2)]

    sdk = fake_sdk.instances[0]
    assert sdk.calls[0]["stream_options"] == {"include_usage": True}
    assert sdk.stream.closed


@pytest.mark.asyncio
async def test_client_reused_until_key_changes(fake_sdk):
    store = MemorySecretStore({keys.OPENAI_API_KEY: "sk-1"})
    adapter = oa.OpenAIAdapter(store)
    await adapter.send_message("a", [], SETTINGS)
    await adapter.send_message("b", [], SETTINGS)
    assert len(fake_sdk.instances) == 1

    store.save(keys.OPENAI_API_KEY, "sk-2")
    await adapter.send_message("c", [], SETTINGS)
    assert len(fake_sdk.instances) == 2
    assert fake_sdk.instances[1].kwargs["api_key"] == "sk-2"


@pytest.mark.asyncio
@pytest.mark.parametrize("exc, kind", [
    (_StatusError(429, headers={"retry-after": "30"}), RateLimited),
    (_StatusError(404), ModelUnavailable),
    (_StatusError(503), ServerError),
    (Exception("Request timed out"), NetworkFailure),
    (Exception("something odd"), InvalidResponse),
])
async def test_sdk_errors_are_classified(fake_sdk, exc, kind):
    adapter = _adapter()
    adapter._client().raise_on_create = exc
    with pytest.raises(kind) as info:
        await adapter.send_message("hi", [], SETTINGS)
    assert info.value.provider == "openai"
    if kind is RateLimited:
        assert info.value.retry_after == 30


@pytest.mark.asyncio
async def test_mid_stream_sdk_error_is_classified(fake_sdk):
    adapter = _adapter()
    sdk = adapter._client()

    async def create(**kwargs):
        sdk.stream = _FakeStream([_chunk("par")], fail=_StatusError(500, "upstream"))
        return sdk.stream

    sdk.chat.completions.create = create
    got = []
    with pytest.raises(ServerError):
        async for c in adapter.stream_message("hi", [], SETTINGS):
            got.append(c)
    assert got == [Content("par")]
    assert sdk.stream.closed


@pytest.mark.asyncio
async def test_grok_uses_xai_endpoint_and_single_chunk_stream(fake_sdk):
    adapter = _adapter(oa.GrokAdapter, keys.GROK_API_KEY)
    assert adapter.descriptor.id == "grok"
    assert not adapter.descriptor.supports_streaming

    chunks = [c async for c in adapter.stream_message("hi", [], SETTINGS)]
    assert chunks == [Content("hello world")]

    sdk = fake_sdk.instances[0]
    assert sdk.kwargs["base_url"] == "https://api.x.ai/v1"
    assert sdk.calls[0]["stream"] is False


def test_grok_and_openai_keys_are_separate():
    store = MemorySecretStore({keys.OPENAI_API_KEY: "sk-openai"})
    assert oa.OpenAIAdapter(store).is_configured()
    assert not oa.GrokAdapter(store).is_configured()
