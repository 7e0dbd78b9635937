"""Error taxonomy for external calls.

Every error carries the outcome label the adaptive rate limiter uses to
adjust its pacing, and whether the failing request may be reissued.
"""

import requests


class DirectoryError(RuntimeError):
    """Base error for the physician directory engine."""

    outcome = "other_error"
    retryable = False


class TransientNetworkError(DirectoryError):
    """Timeout or connection reset."""

    outcome = "other_error"
    retryable = True


class RateLimitedError(DirectoryError):
    """Upstream explicitly asked us to slow down (HTTP 429, OVER_QUERY_LIMIT)."""

    outcome = "rate_limited"
    retryable = True


class ServerError(DirectoryError):
    """Upstream 5xx."""

    outcome = "server_error"
    retryable = True

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class BlockedError(DirectoryError):
    """Anti-automation page or challenge returned instead of content."""

    outcome = "blocked"
    retryable = True


class PermanentNotFoundError(DirectoryError):
    """Entity is absent upstream. Terminal, not fatal."""

    outcome = "other_error"
    retryable = False


class MalformedResponseError(DirectoryError):
    """Response did not have the expected shape."""

    outcome = "other_error"
    retryable = False


def classify_status(status_code: int, context: str = ""):
    """Raise the taxonomy error for a non-2xx HTTP status, if any."""
    if status_code == 429:
        raise RateLimitedError(f"{context}Rate limited (HTTP 429)")
    if status_code == 404:
        raise PermanentNotFoundError(f"{context}Not found (HTTP 404)")
    if status_code == 403:
        raise BlockedError(f"{context}Forbidden (HTTP 403)")
    if status_code >= 500:
        raise ServerError(f"{context}Server error (HTTP {status_code})", status_code)
    if status_code >= 400:
        raise DirectoryError(f"{context}HTTP {status_code}")


def from_request_exception(exc: requests.RequestException, context: str = "") -> DirectoryError:
    """Map a requests exception onto the taxonomy."""
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return TransientNetworkError(f"{context}{exc}")
    return DirectoryError(f"{context}{exc}")


__all__ = [
    "DirectoryError",
    "TransientNetworkError",
    "RateLimitedError",
    "ServerError",
    "BlockedError",
    "PermanentNotFoundError",
    "MalformedResponseError",
    "classify_status",
    "from_request_exception",
]
