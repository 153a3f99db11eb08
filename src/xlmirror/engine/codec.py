"""Record codec: typed records to and from ordered cell texts."""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date, datetime

from xlmirror.contracts.records import Record, RecordSchema

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%m/%d/%Y",
)

_NON_NUMERIC = re.compile(r"[^0-9-]")


def parse_int(text: str | int | None) -> int:
    """Best-effort integer: plain parse, else keep digits and '-', else 0. Never raises."""
    if isinstance(text, int) and not isinstance(text, bool):
        return text
    if text is None:
        return 0
    raw = str(text).strip()
    try:
        return int(raw)
    except ValueError:
        pass
    cleaned = _NON_NUMERIC.sub("", raw)
    # A '-' is only meaningful as a leading sign
    if cleaned.startswith("-"):
        cleaned = "-" + cleaned[1:].replace("-", "")
    else:
        cleaned = cleaned.replace("-", "")
    try:
        return int(cleaned)
    except ValueError:
        return 0


def parse_date(text: str | None) -> date | None:
    """Parse the date spellings found in shop-floor sheets; None when unparseable.

    ``strptime`` accepts unpadded day and month numbers, so ``2024-1-5`` and
    ``5.1.2024`` are covered by the padded formats.
    """
    if not text:
        return None
    raw = text.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        return None


def encode(record: Record, schema: RecordSchema) -> list[str]:
    """Field texts in schema order; integers through ``str``."""
    out: list[str] = []
    for spec in schema.fields:
        value = record.values.get(spec.name, spec.default)
        out.append(str(value))
    return out


def decode(fields: Sequence[str], schema: RecordSchema) -> Record:
    """Positional decode; missing trailing fields take their defaults. Never raises on content."""
    values: dict[str, str | int] = {}
    for i, spec in enumerate(schema.fields):
        raw = fields[i] if i < len(fields) else None
        if spec.kind == "integer":
            values[spec.name] = parse_int(raw)
        else:
            values[spec.name] = "" if raw is None else str(raw)
    return Record(values=values)


def to_row(identifier: int | str | None, record: Record, schema: RecordSchema) -> list[str]:
    """Sheet row for a record: identifier in column 1, fields after it."""
    return ["" if identifier is None else str(identifier), *encode(record, schema)]


def from_row(values: Sequence[str], schema: RecordSchema) -> tuple[int | None, Record]:
    """Split a sheet row into its identifier (None when unmirrored) and record."""
    identifier = parse_identifier(values[0] if values else "")
    return identifier, decode(list(values[1:]), schema)


def parse_identifier(text: str) -> int | None:
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None
