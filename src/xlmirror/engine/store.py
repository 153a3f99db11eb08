"""Row store: sheet and row operations against one workbook file.

Every call opens the package, applies one change, saves and closes it.
Mutations hold the workbook's sidecar lock for that one logical operation;
a read followed by a separate write is not serialized.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

import portalocker

from xlmirror.contracts.errors import AccessError, InputValidationError, NotFoundError
from xlmirror.contracts.records import ID_HEADER, RecordSchema
from xlmirror.contracts.results import SheetRow
from xlmirror.engine.package import SheetGrid, WorkbookPackage
from xlmirror.engine.strings import check_text
from xlmirror.io.fileops import WorkbookLock
from xlmirror.observe.logging import get_logger

log = get_logger(__name__)

HEADER_ROW = 1


def header_for(schema: RecordSchema | Sequence[str]) -> list[str]:
    names = schema.names if isinstance(schema, RecordSchema) else list(schema)
    return [ID_HEADER, *names]


def is_header_row(values: Sequence[str]) -> bool:
    """Row 1 is a header when its first cell is the identifier column title."""
    return bool(values) and values[0].strip().casefold() == ID_HEADER.casefold()


def _cells(values: Sequence[object]) -> list[str]:
    return [check_text("" if v is None else str(v)) for v in values]


def _check_index(row_index: int) -> None:
    if isinstance(row_index, bool) or not isinstance(row_index, int) or row_index < 1:
        raise InputValidationError(f"Row index must be >= 1, got {row_index!r}", details={"row": row_index})


@contextmanager
def _locked(path: str | Path, timeout: float = 0) -> Iterator[None]:
    try:
        with WorkbookLock(path, timeout=timeout):
            yield
    except portalocker.LockException as exc:
        raise AccessError(
            f"Workbook is locked by another process: {path}",
            code="ERR_LOCKED",
            details={"file": str(path)},
        ) from exc
    except FileNotFoundError as exc:
        raise NotFoundError(
            f"Directory not found for workbook: {path}",
            code="ERR_WORKBOOK_NOT_FOUND",
            details={"file": str(path)},
        ) from exc


def _open_sheet(path: str | Path, sheet: str) -> tuple[WorkbookPackage, SheetGrid]:
    pkg = WorkbookPackage.open(path)
    entry = pkg.find_sheet(sheet)
    if entry is None:
        raise NotFoundError(
            f"Sheet not found: {sheet}",
            code="ERR_SHEET_NOT_FOUND",
            details={"file": str(path), "sheet": sheet, "available": pkg.sheet_names()},
        )
    return pkg, pkg.grid(entry)


# ---------------------------------------------------------------------------
# Sheets
# ---------------------------------------------------------------------------


def list_sheets(path: str | Path) -> list[str]:
    return WorkbookPackage.open(path).sheet_names()


def ensure_sheet(path: str | Path, sheet: str) -> bool:
    """Create the workbook or the sheet if missing. Returns True when something was created."""
    with _locked(path):
        if not Path(path).exists():
            WorkbookPackage.create(path, sheet)
            log.info("workbook.created", file=str(path), sheet=sheet)
            return True
        pkg = WorkbookPackage.open(path)
        if pkg.find_sheet(sheet) is not None:
            return False
        pkg.add_sheet(sheet)
        pkg.save()
        log.info("sheet.created", file=str(path), sheet=sheet)
        return True


def ensure_header_row(path: str | Path, sheet: str, schema: RecordSchema | Sequence[str]) -> bool:
    """Make row 1 equal ``["Id", *schema]``. Returns True when the sheet changed.

    A missing row 1 gets the header; an ``Id``-led header of another schema
    is replaced in place; a data row in position 1 pushes every row down.
    """
    headers = header_for(schema)
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        first = grid.get(HEADER_ROW)
        if first is not None and first[1:] == headers[1:]:
            return False
        if first is None:
            action = "inserted"
        elif is_header_row(first):
            action = "replaced"
        else:
            grid.shift_down()
            action = "shifted"
        grid.set_row(HEADER_ROW, headers)
        pkg.save()
    log.info("header.written", file=str(path), sheet=sheet, action=action)
    return True


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


def read_rows(path: str | Path, sheet: str) -> list[list[str]]:
    """All rows including the header, in storage order, shared strings resolved."""
    return [row.values for row in read_indexed_rows(path, sheet)]


def read_indexed_rows(path: str | Path, sheet: str) -> list[SheetRow]:
    _, grid = _open_sheet(path, sheet)
    return grid.rows()


def read_data_rows(path: str | Path, sheet: str) -> list[SheetRow]:
    """Rows after the header (row 1 is skipped only when it is a header)."""
    rows = read_indexed_rows(path, sheet)
    return [r for r in rows if not (r.index == HEADER_ROW and is_header_row(r.values))]


def get_row(path: str | Path, sheet: str, row_index: int) -> list[str] | None:
    _check_index(row_index)
    _, grid = _open_sheet(path, sheet)
    return grid.get(row_index)


def add_row(path: str | Path, sheet: str, values: Sequence[object]) -> int:
    """Append a row after the highest index ever used. Returns its index."""
    cells = _cells(values)
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        index = grid.next_index()
        grid.set_row(index, cells)
        pkg.save()
    log.info("row.added", file=str(path), sheet=sheet, row=index)
    return index


def append_rows(path: str | Path, sheet: str, rows: Sequence[Sequence[object]]) -> list[int]:
    """Append several rows in one save. Returns their indices in order."""
    if not rows:
        return []
    prepared = [_cells(values) for values in rows]
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        indices: list[int] = []
        for cells in prepared:
            index = grid.next_index()
            grid.set_row(index, cells)
            indices.append(index)
        pkg.save()
    log.info("rows.appended", file=str(path), sheet=sheet, rows=len(indices), first=indices[0])
    return indices


def update_row(path: str | Path, sheet: str, row_index: int, values: Sequence[object]) -> bool:
    """Replace every cell of ``row_index``. False when the row does not exist."""
    _check_index(row_index)
    cells = _cells(values)
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        if grid.get(row_index) is None:
            return False
        grid.set_row(row_index, cells)
        pkg.save()
    log.info("row.updated", file=str(path), sheet=sheet, row=row_index)
    return True


def delete_row(path: str | Path, sheet: str, row_index: int) -> bool:
    """Remove ``row_index`` without renumbering. False when the row does not exist."""
    _check_index(row_index)
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        if not grid.remove_row(row_index):
            return False
        pkg.save()
    log.info("row.deleted", file=str(path), sheet=sheet, row=row_index)
    return True


def replace_data_rows(path: str | Path, sheet: str, rows: Sequence[Sequence[object]]) -> list[int]:
    """Drop every data row (header kept) and append ``rows`` in a single save."""
    prepared = [_cells(values) for values in rows]
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        removed = 0
        for row in grid.rows():
            if row.index == HEADER_ROW and is_header_row(row.values):
                continue
            grid.remove_row(row.index)
            removed += 1
        indices: list[int] = []
        for cells in prepared:
            index = grid.next_index()
            grid.set_row(index, cells)
            indices.append(index)
        grid.modified = True
        pkg.save()
    log.info("rows.replaced", file=str(path), sheet=sheet, removed=removed, added=len(indices))
    return indices


def set_identifiers(path: str | Path, sheet: str, identifiers: Mapping[int, object]) -> int:
    """Rewrite column 1 of several rows in one save. Returns how many rows were found."""
    if not identifiers:
        return 0
    for row_index in identifiers:
        _check_index(row_index)
    updated = 0
    with _locked(path):
        pkg, grid = _open_sheet(path, sheet)
        for row_index, identifier in identifiers.items():
            values = grid.get(row_index)
            if values is None:
                continue
            values = values or [""]
            values[0] = "" if identifier is None else str(identifier)
            grid.set_row(row_index, values)
            updated += 1
        if updated:
            pkg.save()
    log.info("identifiers.written", file=str(path), sheet=sheet, rows=updated)
    return updated


def search_rows(path: str | Path, sheet: str, keyword: str) -> list[SheetRow]:
    """Data rows with a cell containing ``keyword`` (case-insensitive)."""
    needle = keyword.casefold()
    return [
        row
        for row in read_data_rows(path, sheet)
        if any(needle in value.casefold() for value in row.values)
    ]
