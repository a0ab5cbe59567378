from __future__ import annotations
from functools import wraps
from typing import Any, AsyncIterator, Awaitable, Callable

from .models import Content, Response, StreamChunk


def as_stream(send_message: Callable[..., Awaitable[Response]]) -> Callable[..., AsyncIterator[StreamChunk]]:
    """
    Wrap a whole-response call into a one-chunk stream.
    Works on the plain function in a class body (stream_message = as_stream(send_message))
    as well as on a bound method.
    """

    @wraps(send_message)
    async def stream_message(*args: Any, **kwargs: Any) -> AsyncIterator[StreamChunk]:
        response = await send_message(*args, **kwargs)
        yield Content(response.content)

    stream_message.__name__ = "stream_message"
    return stream_message
