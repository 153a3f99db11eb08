"""Tests for A1 cell reference conversion."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from xlmirror.contracts.errors import InputValidationError
from xlmirror.engine.cells import MAX_COLUMNS, column_letters, parse_reference, to_reference


@pytest.mark.parametrize(
    ("col0", "row1", "expected"),
    [
        (0, 1, "A1"),
        (25, 1, "Z1"),
        (26, 3, "AA3"),
        (51, 10, "AZ10"),
        (52, 2, "BA2"),
        (701, 5, "ZZ5"),
        (702, 1, "AAA1"),
    ],
)
def test_to_reference(col0: int, row1: int, expected: str):
    assert to_reference(col0, row1) == expected
    assert parse_reference(expected) == (col0, row1)


def test_absolute_markers_ignored():
    assert parse_reference("$B$7") == (1, 7)


@pytest.mark.parametrize("bad", ["", "7", "A0", "A", "1A", "A-1", "!!"])
def test_parse_rejects_garbage(bad: str):
    with pytest.raises(InputValidationError):
        parse_reference(bad)


@pytest.mark.parametrize(("col0", "row1"), [(-1, 1), (0, 0), (MAX_COLUMNS, 1), (0, -3)])
def test_to_reference_rejects_out_of_range(col0: int, row1: int):
    with pytest.raises(InputValidationError):
        to_reference(col0, row1)


def test_column_letters_rejects_bool():
    with pytest.raises(InputValidationError):
        column_letters(True)


@given(st.integers(0, MAX_COLUMNS - 1), st.integers(1, 1_048_576))
def test_reference_round_trip(col0: int, row1: int):
    assert parse_reference(to_reference(col0, row1)) == (col0, row1)
