"""Error taxonomy for remote calls and local record operations.

Remote failures are classified exactly once, at the client boundary, into a
``RemoteError``. Everything downstream branches on ``RemoteError.kind`` and
never inspects transport exceptions or message text again.
"""

from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


# Kinds that concern the whole sync session rather than a single record
SESSION_LEVEL_KINDS = {ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.AUTH}


class RemoteError(Exception):
    """A classified failure from the remote service."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.timed_out = timed_out

    @property
    def retryable(self) -> bool:
        if self.kind in (ErrorKind.NETWORK, ErrorKind.RATE_LIMITED):
            return True
        return self.status_code is not None and self.status_code >= 500

    @property
    def is_timeout(self) -> bool:
        """Client-side timeout or gateway timeout from the remote."""
        return self.timed_out or self.status_code == 504

    @property
    def session_level(self) -> bool:
        return self.kind in SESSION_LEVEL_KINDS

    def __repr__(self) -> str:
        return f"RemoteError(kind={self.kind.value!r}, status={self.status_code}, message={self.message!r})"


class ImportPausedError(Exception):
    """Bulk import hit its failure ceiling; progress is kept and it resumes next tick."""

    def __init__(self, message: str, cause: Optional[RemoteError] = None):
        super().__init__(message)
        self.cause = cause


class RecordNotFoundError(LookupError):
    """No local record matches the given client, remote or external id."""


class RecordTrashedError(Exception):
    """The record is in the trash and must be restored before editing."""


_STATUS_KINDS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.VALIDATION,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _response_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"


def classify_error(exc: BaseException) -> RemoteError:
    """Map a transport or HTTP exception to a ``RemoteError``."""
    if isinstance(exc, RemoteError):
        return exc

    if isinstance(exc, httpx.TimeoutException):
        return RemoteError(ErrorKind.NETWORK, f"Request timed out: {exc}", timed_out=True)

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code
        kind = _STATUS_KINDS.get(status, ErrorKind.UNKNOWN)
        return RemoteError(
            kind,
            _response_message(response),
            status_code=status,
            retry_after=_parse_retry_after(response) if status in (429, 503) else None,
        )

    if isinstance(exc, httpx.TransportError):
        return RemoteError(ErrorKind.NETWORK, f"Network error: {exc}")

    return RemoteError(ErrorKind.UNKNOWN, str(exc) or exc.__class__.__name__)


def describe_error(error: RemoteError) -> str:
    """User-facing message for the status object."""
    if error.kind is ErrorKind.NETWORK:
        return "Network connection issue. Will retry automatically."
    if error.kind is ErrorKind.AUTH:
        return "Authentication failed. Please check your API key in settings."
    if error.kind is ErrorKind.RATE_LIMITED:
        return "Rate limited by the remote service. Will retry shortly."
    if error.kind is ErrorKind.NOT_FOUND:
        return "Remote record or database not found."
    if error.kind is ErrorKind.VALIDATION:
        return f"Remote rejected the data: {error.message}"
    return error.message or "An unknown error occurred."
