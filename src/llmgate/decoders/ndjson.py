from __future__ import annotations
import json
from typing import Any, AsyncIterator, Dict, Optional


class NDJSONDecoder:
    """
    Newline-delimited JSON: every line is a standalone object.
    Empty and malformed lines are skipped. `"done": true` is terminal; the
    terminal object itself is still returned (it carries the usage counts).
    """

    def __init__(self) -> None:
        self.done = False

    def decode(self, line: str) -> Optional[Dict[str, Any]]:
        if self.done:
            return None
        line = line.strip()
        if not line:
            return None
        try:
            obj = json.loads(line)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None
        if obj.get("done") is True:
            self.done = True
        return obj


async def iter_ndjson(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    decoder = NDJSONDecoder()
    async for line in lines:
        obj = decoder.decode(line)
        if obj is not None:
            yield obj
        if decoder.done:
            return
