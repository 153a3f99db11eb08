"""Response envelope helpers and exit code mapping."""

from __future__ import annotations

import sys
from typing import Any

import orjson

from xlmirror.contracts.common import (
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
    WarningDetail,
)
from xlmirror.contracts.errors import XlMirrorError

# Exit code mapping
EXIT_CODES = {
    "success": 0,
    "validation": 10,
    "conflict": 40,
    "io": 50,
    "database": 60,
    "timeout": 70,
    "internal": 90,
}

VALIDATION_CODE_MARKERS = (
    "VALIDATION",
    "INVALID",
    "USAGE",
    "NOT_CONFIGURED",
    "DISABLED",
)

IO_CODE_MARKERS = (
    "ACCESS_DENIED",
    "CORRUPT",
    "FILE_EXISTS",
)


def success_envelope(
    command: str,
    result: Any,
    *,
    target: Target | None = None,
    changes: list | None = None,
    warnings: list[WarningDetail] | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=True,
        command=command,
        target=target or Target(),
        result=result,
        changes=changes or [],
        warnings=warnings or [],
        metrics=Metrics(duration_ms=duration_ms),
    )


def error_envelope(
    command: str,
    code: str,
    message: str,
    *,
    target: Target | None = None,
    details: dict | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=False,
        command=command,
        target=target or Target(),
        errors=[ErrorDetail(code=code, message=message, details=details)],
        metrics=Metrics(duration_ms=duration_ms),
    )


def envelope_for_error(
    command: str,
    exc: Exception,
    *,
    target: Target | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    """Error envelope for an exception; unknown exceptions become ``ERR_INTERNAL``."""
    if isinstance(exc, XlMirrorError):
        return error_envelope(
            command,
            exc.code,
            exc.message,
            target=target,
            details=exc.details or None,
            duration_ms=duration_ms,
        )
    return error_envelope(
        command,
        "ERR_INTERNAL",
        f"{type(exc).__name__}: {exc}",
        target=target,
        duration_ms=duration_ms,
    )


def output_json(envelope: ResponseEnvelope) -> str:
    """Serialize envelope to JSON string using orjson."""
    data = envelope.model_dump(mode="json")
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


def print_response(envelope: ResponseEnvelope) -> None:
    """Print response as JSON to stdout."""
    sys.stdout.write(output_json(envelope) + "\n")


def exit_code_for(envelope: ResponseEnvelope) -> int:
    """Determine exit code from the first error code of the envelope."""
    if envelope.ok:
        return EXIT_CODES["success"]
    if not envelope.errors:
        return EXIT_CODES["internal"]
    code = envelope.errors[0].code.upper()
    if "LOCK" in code or "CONFLICT" in code:
        return EXIT_CODES["conflict"]
    if "TIMEOUT" in code:
        return EXIT_CODES["timeout"]
    if code.startswith("ERR_DB"):
        return EXIT_CODES["database"]
    if any(marker in code for marker in VALIDATION_CODE_MARKERS):
        return EXIT_CODES["validation"]
    if code.endswith("NOT_FOUND") or any(marker in code for marker in IO_CODE_MARKERS):
        return EXIT_CODES["io"]
    if code.startswith("ERR_IO"):
        return EXIT_CODES["io"]
    return EXIT_CODES["internal"]
