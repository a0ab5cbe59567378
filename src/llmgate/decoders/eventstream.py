"""
Binary length-prefixed event framing (the signed cloud backend's streaming body).

Frame layout:

    [total length: u32 BE][header length: u32 BE][headers][payload][checksum: u32]

With ``prelude_crc=True`` a 4-byte prelude checksum sits between the header
length and the headers, which is how the frames appear on the wire from
AWS. Everything else is identical.
"""
from __future__ import annotations
import base64
import binascii
import json
import logging
import struct
import uuid
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

log = logging.getLogger(__name__)

MIN_FRAME_LENGTH = 16
_U32 = struct.Struct(">I")


@dataclass(frozen=True)
class Frame:
    headers: bytes
    payload: bytes

    def decoded_headers(self) -> Dict[str, Any]:
        return decode_headers(self.headers)


class EventStreamDecoder:
    """
    Incremental decoder: feed arbitrary byte slices, get back complete frames.
    Holds nothing but the unconsumed tail of the current frame.
    """

    def __init__(self, *, prelude_crc: bool = False):
        self._buffer = bytearray()
        self._prelude = 12 if prelude_crc else 8

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> List[Frame]:
        self._buffer.extend(data)
        frames: List[Frame] = []
        buf = self._buffer

        while len(buf) >= 8:
            total_length = _U32.unpack_from(buf, 0)[0]
            header_length = _U32.unpack_from(buf, 4)[0]

            if total_length < MIN_FRAME_LENGTH:
                # Corrupt prefix: slide one byte and look again
                del buf[0]
                continue

            if len(buf) < total_length:
                break

            frame = bytes(buf[:total_length])
            del buf[:total_length]

            payload_offset = self._prelude + header_length
            payload_length = total_length - payload_offset - 4
            if payload_length <= 0:
                continue
            frames.append(Frame(
                headers=frame[self._prelude:payload_offset],
                payload=frame[payload_offset:payload_offset + payload_length],
            ))

        return frames


def encode_frame(payload: bytes, headers: bytes = b"", *, prelude_crc: bool = False) -> bytes:
    """Build one frame; the inverse of EventStreamDecoder.feed for a single frame."""
    prelude_len = 12 if prelude_crc else 8
    total = prelude_len + len(headers) + len(payload) + 4
    prelude = _U32.pack(total) + _U32.pack(len(headers))
    if prelude_crc:
        prelude += _U32.pack(zlib.crc32(prelude) & 0xFFFFFFFF)
    body = prelude + headers + payload
    return body + _U32.pack(zlib.crc32(body) & 0xFFFFFFFF)


# Header value type tags
_BOOL_TRUE, _BOOL_FALSE, _BYTE, _SHORT, _INT, _LONG, _BYTES, _STRING, _TIMESTAMP, _UUID = range(10)


def decode_headers(raw: bytes) -> Dict[str, Any]:
    headers: Dict[str, Any] = {}
    pos = 0
    try:
        while pos < len(raw):
            name_len = raw[pos]
            pos += 1
            name = raw[pos:pos + name_len].decode("utf-8")
            pos += name_len
            kind = raw[pos]
            pos += 1
            if kind == _BOOL_TRUE:
                value: Any = True
            elif kind == _BOOL_FALSE:
                value = False
            elif kind == _BYTE:
                value = struct.unpack_from(">b", raw, pos)[0]
                pos += 1
            elif kind == _SHORT:
                value = struct.unpack_from(">h", raw, pos)[0]
                pos += 2
            elif kind == _INT:
                value = struct.unpack_from(">i", raw, pos)[0]
                pos += 4
            elif kind in (_LONG, _TIMESTAMP):
                value = struct.unpack_from(">q", raw, pos)[0]
                pos += 8
            elif kind in (_BYTES, _STRING):
                length = struct.unpack_from(">H", raw, pos)[0]
                pos += 2
                value = raw[pos:pos + length]
                if kind == _STRING:
                    value = value.decode("utf-8")
                pos += length
            elif kind == _UUID:
                value = str(uuid.UUID(bytes=raw[pos:pos + 16]))
                pos += 16
            else:
                log.debug("Unknown header type %s for %r; stopping", kind, name)
                break
            headers[name] = value
    except (IndexError, struct.error, UnicodeDecodeError):
        log.debug("Truncated event-stream headers")
    return headers


def encode_headers(headers: Mapping[str, str]) -> bytes:
    out = bytearray()
    for name, value in headers.items():
        name_b = name.encode("utf-8")
        value_b = value.encode("utf-8")
        out += bytes([len(name_b)]) + name_b + bytes([_STRING]) + struct.pack(">H", len(value_b)) + value_b
    return bytes(out)


def decode_chunk_payload(payload: bytes) -> Optional[Dict[str, Any]]:
    """
    Unwrap {"bytes": "<base64>"} into the inner JSON event.
    Returns None for anything that isn't that shape.
    """
    try:
        outer = json.loads(payload)
        encoded = outer["bytes"]
        inner = json.loads(base64.b64decode(encoded, validate=True))
    except (ValueError, KeyError, TypeError, binascii.Error):
        return None
    return inner if isinstance(inner, dict) else None
