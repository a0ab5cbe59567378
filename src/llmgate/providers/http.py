# src/llmgate/providers/http.py
"""
httpx plumbing shared by the REST adapters: one place that turns HTTP
statuses and transport failures into llmgate.core.errors kinds.
"""
from __future__ import annotations
import email.utils
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from llmgate.core.errors import (
    InvalidResponse,
    ModelUnavailable,
    NetworkFailure,
    ProviderError,
    RateLimited,
    ServerError,
)

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
CONNECT_TIMEOUT = 10.0


def make_timeout(seconds: Optional[float] = None) -> httpx.Timeout:
    return httpx.Timeout(float(seconds or DEFAULT_TIMEOUT), connect=CONNECT_TIMEOUT)


def parse_retry_after(value: Any) -> Optional[int]:
    """
    Retry-After is either delta-seconds or an HTTP date. Returns whole seconds, never negative.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0, int(value))
    text = str(value).strip()
    if not text:
        return None
    try:
        return max(0, int(float(text)))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0, int(when.timestamp() - time.time()))


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return fallback


def _retry_after_from_body(body: Any) -> Any:
    if not isinstance(body, dict):
        return None
    for key in ("retry-after", "retry_after"):
        if key in body:
            return body[key]
    headers = body.get("headers")
    if isinstance(headers, dict):
        return headers.get("retry-after")
    return None


def error_for_status(
    provider: str,
    status: int,
    text: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    model: Optional[str] = None,
) -> ProviderError:
    """Map one non-2xx response onto an error kind."""
    try:
        body = json.loads(text) if text else None
    except ValueError:
        body = None
    message = _error_message(body, text.strip()[:500] or f"HTTP {status}")

    if status == 429:
        retry_after = parse_retry_after((headers or {}).get("retry-after"))
        if retry_after is None:
            retry_after = parse_retry_after(_retry_after_from_body(body))
        return RateLimited(retry_after, provider=provider)
    if status == 404:
        return ModelUnavailable(model or "unknown", provider=provider)
    return ServerError(status, message, provider=provider)


async def raise_for_status(provider: str, response: httpx.Response, *, model: Optional[str] = None) -> None:
    if response.is_success:
        return
    # Streaming responses have not read their body yet
    await response.aread()
    err = error_for_status(provider, response.status_code, response.text, response.headers, model=model)
    log.debug("%s: HTTP %s -> %s", provider, response.status_code, type(err).__name__)
    raise err


def json_body(provider: str, response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise InvalidResponse(provider, f"body is not JSON ({e})") from e
    if not isinstance(data, dict):
        raise InvalidResponse(provider, "expected a JSON object")
    return data


def json_object(value: Any) -> Dict[str, Any]:
    """`value` when it is a JSON object, otherwise an empty one."""
    return value if isinstance(value, dict) else {}


def token_count(value: Any) -> Optional[int]:
    """A usage counter from a response body; anything but a whole number counts as absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def network_failure(provider: str, exc: Exception, *, hint: Optional[str] = None) -> NetworkFailure:
    if isinstance(exc, httpx.TimeoutException):
        detail = "request timed out"
    else:
        detail = str(exc) or type(exc).__name__
    return NetworkFailure(hint or detail, provider=provider)


class HTTPBackend:
    """
    Base for adapters that talk plain HTTP. Uses the injected AsyncClient when
    one is given (shared pool, tests) and a short-lived one otherwise.
    """

    def __init__(self, *, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._client = client
        self.timeout = make_timeout(timeout)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client
