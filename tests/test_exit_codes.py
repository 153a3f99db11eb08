"""Exit code mapping regression tests."""

import pytest

from xlmirror.contracts.errors import (
    AccessError,
    ConnectionLostError,
    FormatError,
    InputValidationError,
    MirrorConnectionError,
    NotFoundError,
    OperationTimeoutError,
    QueryError,
)
from xlmirror.engine.dispatcher import envelope_for_error, error_envelope, exit_code_for, success_envelope


def test_exit_code_success():
    assert exit_code_for(success_envelope("x", {})) == 0


def test_exit_code_validation_class():
    env = error_envelope("x", "ERR_VALIDATION", "bad row index")
    assert exit_code_for(env) == 10


def test_exit_code_not_configured_is_validation():
    env = error_envelope("x", "ERR_MIRROR_NOT_CONFIGURED", "no mirror")
    assert exit_code_for(env) == 10


def test_exit_code_conflict_class():
    env = error_envelope("x", "ERR_LOCKED", "held")
    assert exit_code_for(env) == 40


def test_exit_code_io_class():
    env = error_envelope("x", "ERR_WORKBOOK_NOT_FOUND", "missing")
    assert exit_code_for(env) == 50


def test_exit_code_database_class():
    env = error_envelope("x", "ERR_DB_QUERY", "syntax")
    assert exit_code_for(env) == 60


def test_exit_code_timeout_class():
    env = error_envelope("x", "ERR_TIMEOUT", "slow")
    assert exit_code_for(env) == 70


def test_exit_code_internal_fallback():
    env = error_envelope("x", "ERR_SOMETHING_ODD", "unknown")
    assert exit_code_for(env) == 90


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (InputValidationError("bad"), 10),
        (AccessError("read-only"), 50),
        (AccessError("held", code="ERR_LOCKED"), 40),
        (FormatError("not a zip"), 50),
        (NotFoundError("gone"), 50),
        (MirrorConnectionError("refused"), 60),
        (ConnectionLostError("dropped"), 60),
        (QueryError("no such table"), 60),
        (OperationTimeoutError("slow"), 70),
        (RuntimeError("boom"), 90),
    ],
)
def test_envelope_for_error(exc: Exception, expected: int):
    env = envelope_for_error("cmd", exc)
    assert env.ok is False
    assert exit_code_for(env) == expected


def test_unknown_exception_message():
    env = envelope_for_error("cmd", KeyError("k"))
    assert env.errors[0].code == "ERR_INTERNAL"
    assert env.errors[0].message.startswith("KeyError")
