"""Bulk import and export files (comma-separated, double-quote escaping)."""

from __future__ import annotations

import csv
from collections.abc import Iterable, Iterator
from io import StringIO
from pathlib import Path

from xlmirror.contracts.errors import NotFoundError
from xlmirror.contracts.records import ID_HEADER, RecordSchema
from xlmirror.io.fileops import atomic_write, read_text_safe


def _reader(source: Iterable[str]) -> Iterator[list[str]]:
    return csv.reader(source, delimiter=",", quotechar='"', doublequote=True, skipinitialspace=True)


def split_csv_line(line: str) -> list[str]:
    """Split one line: quotes may wrap commas, ``""`` is a literal quote, fields are trimmed."""
    if not line.strip():
        return []
    row = next(_reader([line]), [])
    return [field.strip() for field in row]


def is_header_line(fields: list[str], schema: RecordSchema) -> bool:
    """True when ``fields`` spell the schema names (optionally Id-led), ignoring case."""
    folded = [f.casefold() for f in fields]
    names = [n.casefold() for n in schema.names]
    return folded == names or folded == [ID_HEADER.casefold(), *names]


def read_import_rows(path: str | Path, schema: RecordSchema) -> list[tuple[int, list[str]]]:
    """Data rows of an import file as ``(line number, fields)``.

    Blank lines are skipped, as is a first line that repeats the field names.
    """
    p = Path(path)
    if not p.is_file():
        raise NotFoundError(f"Import file not found: {p}", code="ERR_FILE_NOT_FOUND", details={"file": str(p)})
    reader = _reader(StringIO(read_text_safe(p), newline=""))
    rows: list[tuple[int, list[str]]] = []
    first = True
    for raw in reader:
        fields = [field.strip() for field in raw]
        if not any(fields):
            continue
        if first:
            first = False
            if is_header_line(fields, schema):
                continue
        rows.append((reader.line_num, fields))
    return rows


def render_csv(rows: list[list[str]]) -> str:
    """Comma-separated text; fields holding commas, quotes or newlines are quoted."""
    buf = StringIO(newline="")
    writer = csv.writer(buf, delimiter=",", quotechar='"', doublequote=True, lineterminator="\n")
    writer.writerows(rows)
    return buf.getvalue()


def write_export_rows(path: str | Path, schema: RecordSchema, rows: list[list[str]]) -> int:
    """Write ``["Id", *names]`` then ``rows`` to ``path`` atomically. Returns the data row count."""
    atomic_write(path, render_csv([schema.headers, *rows]).encode("utf-8"))
    return len(rows)
