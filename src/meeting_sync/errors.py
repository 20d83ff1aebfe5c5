"""Error taxonomy for meeting-sync.

Every failure the sync core can observe is mapped onto one of five
``ErrorType`` categories.  Exceptions raised by this package carry their
category and whether retrying could help; foreign exceptions (``OSError``,
``requests`` errors, pydantic validation errors) are classified by
``classify_error()``.

Propagation policy:

* Per-document failures are caught by the engine, converted to a
  ``DocumentError`` record and appended to the run's result.
* Run-level failures (connection, fetch, commit) propagate to the caller.
"""

from __future__ import annotations

import re
from enum import Enum

import requests
from pydantic import ValidationError


class ErrorType(str, Enum):
    """Coarse failure categories reported to the user."""

    NETWORK = "network"
    REMOTE_API = "remote_api"
    VALIDATION = "validation"
    FILE_SYSTEM = "file_system"
    UNKNOWN = "unknown"


class MeetingSyncError(Exception):
    """Base class for all errors raised by meeting-sync."""

    error_type: ErrorType = ErrorType.UNKNOWN
    retryable: bool = False


class NetworkError(MeetingSyncError):
    """The remote service could not be reached."""

    error_type = ErrorType.NETWORK
    retryable = True


class RemoteAPIError(MeetingSyncError):
    """The remote service answered with a non-2xx status.

    429 and 5xx responses are retryable; 401, 403 and every other 4xx
    status are not.
    """

    error_type = ErrorType.REMOTE_API

    def __init__(
        self,
        status_code: int,
        message: str = "",
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(
            message or f"Remote API returned HTTP {status_code}"
        )

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code == 429 or self.status_code >= 500


class DocumentValidationError(MeetingSyncError):
    """A remote payload could not be decoded into a ``RemoteDocument``."""

    error_type = ErrorType.VALIDATION

    def __init__(
        self,
        message: str,
        remote_id: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        self.remote_id = remote_id
        self.errors = errors or []
        super().__init__(message)


class FileSystemError(MeetingSyncError):
    """A local store operation failed (missing path, permissions, collision)."""

    error_type = ErrorType.FILE_SYSTEM

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class LockTimeoutError(FileSystemError):
    """A path lock could not be acquired in time.  Transient."""

    retryable = True


class SyncBusyError(MeetingSyncError):
    """A sync run was requested while another one is active."""


class SyncCancelledError(MeetingSyncError):
    """The run observed a cancellation request.

    ``result`` holds whatever was accumulated before the cancellation.
    """

    def __init__(self, message: str = "Sync cancelled", result=None) -> None:
        self.result = result
        super().__init__(message)


class StateTransactionError(MeetingSyncError):
    """Misuse of the state store's transaction API."""


class StateInvariantError(MeetingSyncError):
    """A state mutation would break the one-path-per-id invariant."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_STATUS_PATTERN = re.compile(r"\b([45]\d{2})\b")


def classify_error(exc: BaseException) -> ErrorType:
    """Map any exception onto an ``ErrorType``."""
    match exc:
        case MeetingSyncError():
            return exc.error_type
        case requests.ConnectionError() | requests.Timeout():
            return ErrorType.NETWORK
        case requests.HTTPError():
            return ErrorType.REMOTE_API
        case ValidationError():
            return ErrorType.VALIDATION
        case OSError():
            return ErrorType.FILE_SYSTEM
        case _:
            return ErrorType.UNKNOWN


def status_code_of(exc: BaseException) -> int | None:
    """Best-effort HTTP status code for *exc*."""
    if isinstance(exc, RemoteAPIError):
        return exc.status_code
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None):
        return int(response.status_code)
    match = _STATUS_PATTERN.search(str(exc))
    return int(match.group(1)) if match else None


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` if repeating the failed operation could succeed."""
    if isinstance(exc, MeetingSyncError):
        return bool(exc.retryable)
    error_type = classify_error(exc)
    if error_type is ErrorType.NETWORK:
        return True
    if error_type is ErrorType.REMOTE_API:
        code = status_code_of(exc)
        return code is not None and (code == 429 or code >= 500)
    return False


def user_message(exc: BaseException) -> str:
    """Short, user-facing description of *exc*."""
    error_type = classify_error(exc)
    text = str(exc)

    match error_type:
        case ErrorType.NETWORK:
            return "Connection failed. Check your network connection and try again."
        case ErrorType.REMOTE_API:
            code = status_code_of(exc)
            if code == 401:
                return "Authentication failed. Check your API key."
            if code == 403:
                return "Access denied. Check your account permissions."
            if code == 429:
                return "Rate limit exceeded. Try again later."
            if code is not None and code >= 500:
                return "Server error. Try again later."
            return "Remote API error. Check your settings and try again."
        case ErrorType.VALIDATION:
            return f"Invalid document data: {text}"
        case ErrorType.FILE_SYSTEM:
            if isinstance(exc, FileNotFoundError):
                return "File or folder not found. Check your vault structure."
            if isinstance(exc, PermissionError):
                return "Permission denied. Check file permissions."
            return f"File system error: {text}"
        case _:
            short = text[:100]
            suffix = "..." if len(text) > 100 else ""
            return f"Unexpected error: {short}{suffix}"
