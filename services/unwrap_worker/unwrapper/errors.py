from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Closed set of reasons a resolution attempt can fail."""

    MALFORMED_PAYLOAD = "malformed_payload"
    NO_REDIRECT = "no_redirect"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    NOT_WRAPPED = "not_wrapped"
    BLOCKED_BY_POLICY = "blocked_by_policy"


class ResolutionError(Exception):
    kind: FailureKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DecodeError(ResolutionError):
    """A wrapped link could not be turned into a destination URL."""


class MalformedPayloadError(DecodeError):
    kind = FailureKind.MALFORMED_PAYLOAD


class NotWrappedError(DecodeError):
    kind = FailureKind.NOT_WRAPPED


class NoRedirectError(DecodeError):
    kind = FailureKind.NO_REDIRECT


class TooManyRedirectsError(DecodeError):
    kind = FailureKind.TOO_MANY_REDIRECTS


class FetchTimeoutError(DecodeError):
    kind = FailureKind.TIMEOUT


class FetchConnectionError(DecodeError):
    kind = FailureKind.CONNECTION


class HttpStatusError(DecodeError):
    kind = FailureKind.HTTP_STATUS

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {status_code} when fetching wrapped link")
        self.status_code = status_code


class UnsafeUrlError(ResolutionError, ValueError):
    """Outbound URL rejected by the SSRF guard. Never retried."""

    kind = FailureKind.BLOCKED_BY_POLICY

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"SSRF blocked ({reason}): {detail}" if detail else f"SSRF blocked ({reason})")
        self.reason = reason
        self.detail = detail


class StaleRetryStateError(Exception):
    """The stored retry state changed between read and write."""


class RetryStateClosedError(Exception):
    """The article already reached a terminal state; no further transitions."""
