# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.errors",
#   "purpose": "Transfer failure taxonomy and exception classification",
#   "sections": [
#     {"id": "errorkind", "name": "ErrorKind", "anchor": "class-errorkind", "kind": "enum"},
#     {"id": "transferfailure", "name": "TransferFailure", "anchor": "class-transferfailure", "kind": "dataclass"},
#     {"id": "classify-exception", "name": "classify_exception", "anchor": "function-classify-exception", "kind": "function"},
#     {"id": "classify-status", "name": "classify_status", "anchor": "function-classify-status", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Transfer failure taxonomy.

Failures never travel as exceptions past the download state machine. The
transfer client converts whatever went wrong into a :class:`TransferFailure`
carrying an :class:`ErrorKind`, and the state machine matches on the kind:

    NOT_MODIFIED    304 on a conditional fetch      → Skipped
    NOT_FOUND       404                             → Skipped (pages stop the watcher)
    PATH_TOO_LONG   destination name rejected       → Skipped
    IO_FATAL        directory missing / no access   → stop watcher, Skipped
    CORRUPT         unstable size or hash mismatch  → rotate, retry
    TRANSIENT       network, timeout, other status  → rotate, retry
    ABORTED         cancelled by the watcher        → RetryLater
"""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

__all__ = [
    "ErrorKind",
    "TransferAborted",
    "TransferFailure",
    "classify_exception",
    "classify_status",
    "failure_from_exception",
]

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_MODIFIED = "not_modified"
    NOT_FOUND = "not_found"
    PATH_TOO_LONG = "path_too_long"
    CORRUPT = "corrupt"
    TRANSIENT = "transient"
    IO_FATAL = "io_fatal"
    ABORTED = "aborted"

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorKind.CORRUPT, ErrorKind.TRANSIENT)


class TransferAborted(Exception):
    """Raised inside a transfer when its abort callback has been invoked."""


@dataclass(frozen=True)
class TransferFailure:
    """Why one transfer attempt ended without completing.

    Attributes:
        kind: Classified failure kind
        message: Human readable description for logs
        status_code: HTTP status when the failure came from a response
        exception: Original exception, if any
    """

    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    exception: Optional[BaseException] = None


def classify_status(status_code: int) -> Optional[ErrorKind]:
    """Map an HTTP status to a failure kind (``None`` for success statuses)."""
    if status_code == 304:
        return ErrorKind.NOT_MODIFIED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code >= 400:
        return ErrorKind.TRANSIENT
    return None


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify an exception raised while requesting or storing a transfer.

    Args:
        exc: Exception from httpx, the file system or the abort machinery

    Returns:
        The matching :class:`ErrorKind`; anything unrecognised is TRANSIENT
    """
    if isinstance(exc, TransferAborted):
        return ErrorKind.ABORTED
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code) or ErrorKind.TRANSIENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, OSError):
        if exc.errno == errno.ENAMETOOLONG:
            return ErrorKind.PATH_TOO_LONG
        if isinstance(exc, (FileNotFoundError, NotADirectoryError, PermissionError)):
            return ErrorKind.IO_FATAL
        return ErrorKind.TRANSIENT
    return ErrorKind.TRANSIENT


def failure_from_exception(exc: BaseException) -> TransferFailure:
    kind = classify_exception(exc)
    status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
    return TransferFailure(kind=kind, message=str(exc) or type(exc).__name__, status_code=status, exception=exc)
