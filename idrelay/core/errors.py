from __future__ import annotations

from typing import Optional

_DETAIL_BODY_LIMIT = 2000


def _snippet(body: bytes, limit: int = _DETAIL_BODY_LIMIT) -> str:
    text = (body or b"").decode("utf-8", errors="replace")
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class RelayError(Exception):
    """
    Base exception for all relay failures.

    Each subclass maps to the HTTP status returned to the caller.
    """

    http_status: int = 500
    default_message: str = "relay failure"

    def __init__(self, message: Optional[str] = None, *, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class MethodNotAllowed(RelayError):
    """
    Raised when the inbound method is not the submission method.
    """

    http_status = 405
    default_message = "method not allowed"


class InvalidRequest(RelayError):
    """
    Raised when the inbound body is malformed or misses required fields.
    """

    http_status = 400
    default_message = "invalid request"


class ServiceUnavailable(RelayError):
    """
    Raised when the availability pre-check reports the upstream down.
    """

    http_status = 503
    default_message = "identification service is unavailable, please retry later"


class DownloadError(RelayError):
    """
    Raised when the image could not be fetched.
    """

    http_status = 500
    default_message = "failed to download image"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        self.status = status
        self.cause = cause
        if status is not None:
            details = f"image host returned status {status}"
        elif cause is not None:
            details = str(cause)
        else:
            details = None
        super().__init__(message, details=details)


class PayloadError(RelayError):
    """
    Raised when the multipart body cannot be assembled.
    """

    http_status = 500
    default_message = "failed to build upstream payload"


class TransientUpstreamFailure(RelayError):
    """
    A retryable upstream failure (network error, 5xx, rate limiting).

    Only escapes the upstream client wrapped in an UpstreamError.
    """

    http_status = 502
    default_message = "transient upstream failure"

    def __init__(
        self,
        *,
        status: Optional[int] = None,
        body: bytes = b"",
        cause: Optional[BaseException] = None,
    ):
        self.status = status
        self.body = body
        self.cause = cause
        if status is not None:
            details = f"upstream status {status}: {_snippet(body)}"
        else:
            details = f"network error: {cause}"
        super().__init__(details=details)


class UpstreamError(RelayError):
    """
    Non-2xx final result from the upstream, after retries.

    Non-retryable 4xx statuses are mirrored with the raw upstream body as
    details. Everything else is reported as 502 with the last status and body.
    """

    default_message = "identification API error"

    def __init__(self, status: Optional[int], body: bytes = b"", *, attempts: int = 1):
        self.status = status
        self.body = body
        self.attempts = attempts
        if status is not None and 400 <= status < 500 and status != 429:
            self.http_status = status
            details = (body or b"").decode("utf-8", errors="replace") or None
        elif status is not None:
            self.http_status = 502
            details = f"upstream status {status}: {_snippet(body)}"
        else:
            self.http_status = 502
            details = _snippet(body) or None
        super().__init__(details=details)


class RequestCancelled(RelayError):
    """
    Raised when the inbound caller went away mid-pipeline.
    """

    http_status = 499
    default_message = "request cancelled by client"
