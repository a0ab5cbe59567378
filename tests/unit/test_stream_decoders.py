# tests/unit/test_stream_decoders.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmgate.decoders.sse import SSEDecoder, iter_sse_events
from llmgate.decoders.ndjson import NDJSONDecoder, iter_ndjson


async def _lines(items):
    for item in items:
        yield item


# -------- SSE --------

def test_sse_data_line_decodes():
    d = SSEDecoder()
    assert d.decode('data: {"type":"ping"}') == {"type": "ping"}
    # no space after the colon is also valid
    assert d.decode('data:{"a":1}') == {"a": 1}


def test_sse_ignores_non_data_lines():
    d = SSEDecoder()
    assert d.decode("event: content_block_delta") is None
    assert d.decode(": keep-alive") is None
    assert d.decode("") is None
    assert d.decode("id: 7") is None


def test_sse_done_sentinel_is_terminal():
    d = SSEDecoder()
    assert d.decode("data: [DONE]") is None
    assert d.done
    # nothing after [DONE] is decoded
    assert d.decode('data: {"type":"late"}') is None


def test_sse_malformed_payload_skipped():
    d = SSEDecoder()
    assert d.decode("data: {not json") is None
    assert d.decode('data: ["list", "not object"]') is None
    assert not d.done
    assert d.decode('data: {"ok": true}') == {"ok": True}


@pytest.mark.asyncio
async def test_iter_sse_events_stops_at_done():
    lines = [
        "event: message_start",
        'data: {"type":"message_start"}',
        "",
        "data: garbage",
        'data: {"type":"content_block_delta","delta":{"text":"hi"}}',
        "data: [DONE]",
        'data: {"type":"never"}',
    ]
    events = [e async for e in iter_sse_events(_lines(lines))]
    assert [e["type"] for e in events] == ["message_start", "content_block_delta"]


# -------- NDJSON --------

def test_ndjson_each_line_is_an_object():
    d = NDJSONDecoder()
    assert d.decode('{"message":{"content":"He"},"done":false}\n') == {"message": {"content": "He"}, "done": False}
    assert not d.done


def test_ndjson_terminal_object_is_returned_and_flags_done():
    d = NDJSONDecoder()
    last = d.decode('{"done":true,"eval_count":5,"prompt_eval_count":3}')
    assert last["eval_count"] == 5
    assert d.done
    assert d.decode('{"message":{"content":"late"}}') is None


def test_ndjson_skips_blank_and_malformed_lines():
    d = NDJSONDecoder()
    assert d.decode("") is None
    assert d.decode("   ") is None
    assert d.decode("{oops") is None
    assert d.decode("42") is None
    assert not d.done


@pytest.mark.asyncio
async def test_iter_ndjson_stops_after_done():
    lines = [
        '{"message":{"content":"Hel"},"done":false}',
        "not json",
        '{"message":{"content":"lo"},"done":false}',
        '{"done":true,"eval_count":2}',
        '{"message":{"content":"ignored"}}',
    ]
    objs = [o async for o in iter_ndjson(_lines(lines))]
    assert len(objs) == 3
    assert objs[-1]["done"] is True
