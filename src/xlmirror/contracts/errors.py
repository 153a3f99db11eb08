"""Error hierarchy shared by the store, the mirror and the CLI.

Each error carries an ``ERR_*`` code that the dispatcher turns into an
envelope and exit code.  Where a builtin exception means the same thing the
error also subclasses it, so ``except ConnectionError`` or
``except TimeoutError`` keep working for callers that do not know this
package.
"""

from __future__ import annotations

from typing import Any


class XlMirrorError(Exception):
    """Base class for all errors raised by xlmirror."""

    code = "ERR_INTERNAL"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class AccessError(XlMirrorError, PermissionError):
    """The workbook is locked, read-only, or the process lacks permission."""

    code = "ERR_ACCESS_DENIED"


class FormatError(XlMirrorError):
    """The workbook package is structurally invalid."""

    code = "ERR_WORKBOOK_CORRUPT"


class NotFoundError(XlMirrorError, LookupError):
    """A workbook, sheet, row or table required by an operation is missing."""

    code = "ERR_NOT_FOUND"


class MirrorConnectionError(XlMirrorError, ConnectionError):
    """The database is unreachable or rejected the credentials."""

    code = "ERR_DB_CONNECTION"


class ConnectionLostError(XlMirrorError, ConnectionError):
    """The connection dropped while a statement was running; it may have committed."""

    code = "ERR_DB_CONNECTION_LOST"


class QueryError(XlMirrorError):
    """A statement failed: malformed SQL, constraint violation, missing table."""

    code = "ERR_DB_QUERY"


class OperationTimeoutError(XlMirrorError, TimeoutError):
    """An operation exceeded its time limit."""

    code = "ERR_TIMEOUT"


class InputValidationError(XlMirrorError, ValueError):
    """Caller-supplied row index, reference or schema is invalid."""

    code = "ERR_VALIDATION"


# Transient failures worth retrying for idempotent calls.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (MirrorConnectionError, ConnectionLostError, OperationTimeoutError)

# Failures raised before a statement ran; the only ones an insert may retry.
NOT_EXECUTED_ERRORS: tuple[type[Exception], ...] = (MirrorConnectionError,)
