"""Error taxonomy for the relay and the JSON error body shape returned to callers."""

from __future__ import annotations

from typing import Any, Dict, Optional


def error_body(message: str, status: int, error_type: str) -> Dict[str, Any]:
    """Build the caller-facing error payload."""
    return {"error": {"message": message, "status": status, "type": error_type}}


class RelayError(Exception):
    """Base class for every failure the relay knows how to report."""

    default_status = 500

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status if status is not None else self.default_status

    def to_body(self) -> Dict[str, Any]:
        return error_body(self.message, self.status, type(self).__name__)


class UpstreamConnectionError(RelayError):
    """Upstream unreachable, refused, or the transport failed mid-request."""


class UpstreamError(RelayError):
    """Upstream answered, but with a failure status or an error payload."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message, status)

    def __repr__(self) -> str:
        return f"UpstreamError(status={self.status}, message={self.message!r})"


class StallError(RelayError):
    """No bytes arrived within the configured window."""

    default_status = 504

    def __init__(self, timeout_s: float, *, initial: bool) -> None:
        phase = "before first chunk" if initial else "mid-stream"
        super().__init__(f"upstream stalled {phase} (no data for {timeout_s:.1f}s)")
        self.timeout_s = timeout_s
        self.initial = initial


class ParseError(RelayError):
    """A streamed chunk could not be decoded. Recoverable: the chunk is dropped."""


class ExhaustedRetriesError(RelayError):
    """Every permitted attempt failed."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        status = None
        if isinstance(last_error, UpstreamError):
            status = last_error.status
        super().__init__(message, status)
        self.last_error = last_error
