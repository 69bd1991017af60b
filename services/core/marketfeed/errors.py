"""Error taxonomy shared by sources, the poller, storage and the API."""

from __future__ import annotations


class MarketFeedError(Exception):
    """Base class for all market feed errors."""
    pass


class RateLimited(MarketFeedError):
    """Source rejected the request because of rate limiting. Retry with backoff."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(MarketFeedError):
    """Transport failure or server-side error. Retryable, no backoff change."""
    pass


class Unauthorized(MarketFeedError):
    """Credentials rejected. Not retried automatically."""
    pass


class InvalidRequest(MarketFeedError):
    """Malformed request or configuration error."""
    pass


class StorageUnavailable(MarketFeedError):
    """Time-series store could not complete a transaction or read."""
    pass


class NoData(MarketFeedError):
    """Benign empty result."""
    pass


def error_for_status(status: int, text: str = "") -> MarketFeedError:
    """Map an HTTP status code to the matching error kind."""
    detail = f"HTTP {status}: {text[:200]}" if text else f"HTTP {status}"
    if status == 429:
        return RateLimited(detail)
    if status in (401, 403):
        return Unauthorized(detail)
    if 400 <= status < 500:
        return InvalidRequest(detail)
    return NetworkError(detail)
