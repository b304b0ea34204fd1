"""Transport errors raised by the Anthropic client.

The runner turns every ApiError into a terminal TurnFailed event; the
``kind`` attribute is what callers see.
"""

from __future__ import annotations


class ApiError(Exception):
    """Base class for failures talking to the Messages API."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RateLimited(ApiError):
    kind = "rate_limited"

    def __init__(self, retry_after: float | None = None) -> None:
        msg = "Rate limited by the API"
        if retry_after is not None:
            msg += f" (retry after {retry_after:g}s)"
        super().__init__(msg)
        self.retry_after = retry_after


class Overloaded(ApiError):
    kind = "overloaded"

    def __init__(self) -> None:
        super().__init__("The API is temporarily overloaded")


class HTTPError(ApiError):
    kind = "http"

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body}")
        self.status = status
        self.body = body


class TransportError(ApiError):
    kind = "transport"


class StreamError(ApiError):
    """Error event delivered inside an otherwise successful stream."""

    kind = "stream"

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a retry-after header, or None when absent/unparsable."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
