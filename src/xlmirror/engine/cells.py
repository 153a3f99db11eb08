"""Cell reference conversion between (column, row) integers and ``A1`` notation."""

from __future__ import annotations

from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.utils.cell import coordinate_from_string
from openpyxl.utils.exceptions import CellCoordinatesException

from xlmirror.contracts.errors import InputValidationError

MAX_COLUMNS = 18278  # ZZZ


def column_letters(col0: int) -> str:
    """Bijective base-26 letters for a zero-based column index (0 -> A, 26 -> AA)."""
    if isinstance(col0, bool) or not isinstance(col0, int) or not 0 <= col0 < MAX_COLUMNS:
        raise InputValidationError(
            f"Column index must be in [0, {MAX_COLUMNS}), got {col0!r}",
            details={"column": col0},
        )
    return get_column_letter(col0 + 1)


def to_reference(col0: int, row1: int) -> str:
    """Cell reference for a zero-based column and one-based row, e.g. ``(701, 5) -> ZZ5``."""
    if isinstance(row1, bool) or not isinstance(row1, int) or row1 < 1:
        raise InputValidationError(
            f"Row index must be >= 1, got {row1!r}",
            details={"row": row1},
        )
    return f"{column_letters(col0)}{row1}"


def parse_reference(ref: str) -> tuple[int, int]:
    """Inverse of :func:`to_reference`: ``"AA3" -> (26, 3)``."""
    try:
        letters, row = coordinate_from_string(ref.replace("$", ""))
        return column_index_from_string(letters) - 1, row
    except (CellCoordinatesException, ValueError, AttributeError) as exc:
        raise InputValidationError(
            f"Invalid cell reference: {ref!r}", details={"reference": ref}
        ) from exc


def column_of(ref: str) -> int:
    """Zero-based column of a cell reference."""
    return parse_reference(ref)[0]
