from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

log = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """
    Server-sent events, one text line at a time.
    Only `data:` lines matter; their payload is JSON. `[DONE]` ends the stream.
    Line reassembly is the caller's job: this only ever sees whole lines.
    """

    def __init__(self) -> None:
        self.done = False

    def decode(self, line: str) -> Optional[Dict[str, Any]]:
        if self.done:
            return None
        line = line.rstrip("\r\n")
        if not line.startswith("data:"):
            return None  # event:, id:, retry:, comments, blank separators
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None
        try:
            obj = json.loads(data)
        except ValueError:
            log.debug("Skipping malformed SSE payload: %.80s", data)
            return None
        return obj if isinstance(obj, dict) else None


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.decode(line)
        if decoder.done:
            return
        if event is not None:
            yield event
