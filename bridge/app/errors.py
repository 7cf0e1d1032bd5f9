"""Error taxonomy for the bridge API.

Every failure that reaches the HTTP layer is rendered as the same envelope:

    {"success": false, "message": "...", "error": "..."}

Operations raise one of the ``BridgeError`` subclasses below; raw stdlib
exceptions are classified by ``classify_error`` so callers never see a
Python traceback.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class BridgeError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_envelope(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "error": self.detail if self.detail is not None else self.error_code,
        }


class ValidationError(BridgeError):
    """A required field is missing or a value is unusable."""

    status_code = 400
    error_code = "INVALID_INPUT"


class AccessDenied(BridgeError):
    """Path escapes its workspace, or the bearer token is wrong."""

    status_code = 403
    error_code = "ACCESS_DENIED"


class NotFound(BridgeError):
    status_code = 404
    error_code = "NOT_FOUND"


class StorageError(BridgeError):
    status_code = 500
    error_code = "IO_ERROR"


# ---------------------------------------------------------------------------
# Classification of stdlib exceptions
# ---------------------------------------------------------------------------

_ERROR_MAP: dict[type[BaseException], type[BridgeError]] = {
    FileNotFoundError: NotFound,
    NotADirectoryError: ValidationError,
    IsADirectoryError: ValidationError,
    FileExistsError: ValidationError,
    PermissionError: AccessDenied,
}


def classify_error(exc: BaseException, message: str | None = None) -> BridgeError:
    """Map an arbitrary exception to a ``BridgeError``.

    ``message`` is the human summary for the envelope; the original
    exception text is kept as the ``error`` detail.
    """
    if isinstance(exc, BridgeError):
        return exc
    for exc_type, bridge_type in _ERROR_MAP.items():
        if isinstance(exc, exc_type):
            return bridge_type(message or _describe(exc), _describe(exc))
    if isinstance(exc, OSError):
        return StorageError(message or "Storage operation failed", _describe(exc))
    return BridgeError(message or "Internal server error", str(exc))


@contextmanager
def translate_errors(message: str) -> Iterator[None]:
    """Re-raise anything that is not already a ``BridgeError`` as one."""
    try:
        yield
    except BridgeError:
        raise
    except Exception as e:
        raise classify_error(e, message) from e


def _describe(exc: BaseException) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        if exc.filename:
            return f"{exc.strerror}: {exc.filename}"
        return exc.strerror
    return str(exc)
