"""Pydantic models and error types shared across the package."""

from xlmirror.contracts.common import (
    ChangeRecord,
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
    WarningDetail,
)
from xlmirror.contracts.errors import (
    AccessError,
    ConnectionLostError,
    FormatError,
    InputValidationError,
    MirrorConnectionError,
    NotFoundError,
    OperationTimeoutError,
    QueryError,
    XlMirrorError,
)
from xlmirror.contracts.mirror import ConnectionProfile, MirrorConfig
from xlmirror.contracts.records import ENTRY_SCHEMA, FieldSpec, Record, RecordSchema
from xlmirror.contracts.results import MutationResult, RowFailure, SheetRow, SyncSummary

__all__ = [
    "AccessError",
    "ChangeRecord",
    "ConnectionLostError",
    "ConnectionProfile",
    "ENTRY_SCHEMA",
    "ErrorDetail",
    "FieldSpec",
    "FormatError",
    "InputValidationError",
    "Metrics",
    "MirrorConfig",
    "MirrorConnectionError",
    "MutationResult",
    "NotFoundError",
    "OperationTimeoutError",
    "QueryError",
    "Record",
    "RecordSchema",
    "ResponseEnvelope",
    "RowFailure",
    "SheetRow",
    "SyncSummary",
    "Target",
    "WarningDetail",
    "XlMirrorError",
]
