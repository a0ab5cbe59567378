from __future__ import annotations
from typing import Optional


class ProviderError(Exception):
    """Base class for provider-level failures."""

    retryable = False

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ProviderClientError(ProviderError):
    """
    Non-retryable: caller/config issue (missing key, unknown model,
    unparseable reply, unsupported capability). The fix is change input/config, not retry.
    """


class ProviderTransientError(ProviderError):
    """
    Retryable: rate limits, timeouts, connection failures.
    Retrying with backoff is appropriate.
    """

    retryable = True


class MissingCredential(ProviderClientError):
    def __init__(self, provider: str):
        super().__init__(f"{provider} API key not configured.", provider=provider)


class InvalidResponse(ProviderClientError):
    def __init__(self, provider: str, detail: str):
        super().__init__(f"{provider} returned an invalid response: {detail}", provider=provider)
        self.detail = detail


class ModelUnavailable(ProviderClientError):
    def __init__(self, model: str, *, provider: Optional[str] = None):
        super().__init__(f'Model "{model}" is not available.', provider=provider)
        self.model = model


class UnsupportedFeature(ProviderClientError):
    def __init__(self, feature: str, *, provider: Optional[str] = None):
        super().__init__(f"This provider does not support {feature}.", provider=provider)
        self.feature = feature


class NetworkFailure(ProviderTransientError):
    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(f"Network error: {message}", provider=provider)


class RateLimited(ProviderTransientError):
    def __init__(self, retry_after: Optional[int] = None, *, provider: Optional[str] = None):
        if retry_after is not None:
            msg = f"Rate limited. Try again in {retry_after} seconds."
        else:
            msg = "Rate limited. Please try again later."
        super().__init__(msg, provider=provider)
        self.retry_after = retry_after


class ServerError(ProviderError):
    """
    Backend answered with a failure status (or an in-band error event, status 0).
    5xx is worth another attempt; everything else is not.
    """

    def __init__(self, status_code: int, message: str, *, provider: Optional[str] = None):
        super().__init__(f"Server error ({status_code}): {message}", provider=provider)
        self.status_code = status_code
        self.detail = message

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500
