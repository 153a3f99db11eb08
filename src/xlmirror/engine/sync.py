"""Sync orchestrator: keeps a sheet and its relational mirror in step.

Single mutations go to the mirror first for add and update (the database
assigns identifiers) and last for delete.  The workbook write always
happens; a mirror failure is logged and reported on the result, never
rolled back.  Bulk operations count per-row failures and keep going, while
setup failures (unreadable workbook, unreachable database) propagate.

Passing ``mirror=None`` means the sheet is not mirrored.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

from xlmirror.adapters import sql_mirror
from xlmirror.contracts.errors import NOT_EXECUTED_ERRORS, TRANSIENT_ERRORS, InputValidationError, XlMirrorError
from xlmirror.contracts.mirror import MirrorConfig
from xlmirror.contracts.records import ENTRY_SCHEMA, Record, RecordSchema
from xlmirror.contracts.results import MutationResult, SyncSummary
from xlmirror.engine import codec, store
from xlmirror.engine.resilience import with_retry, with_timeout
from xlmirror.engine.strings import check_text
from xlmirror.io.csvfile import read_import_rows
from xlmirror.observe.logging import get_logger

T = TypeVar("T")

log = get_logger(__name__)


def _call_mirror(
    mirror: MirrorConfig,
    operation: Callable[[], T],
    description: str,
    *,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
) -> T:
    """Run a mirror call under the config's timeout, retrying transient failures."""
    return with_retry(
        lambda: with_timeout(operation, mirror.timeout_seconds, description=description),
        max_attempts=mirror.retry_attempts,
        initial_delay=mirror.retry_delay,
        retry_on=retry_on,
        description=description,
    )


def _insert(mirror: MirrorConfig, schema: RecordSchema, record: Record) -> int:
    """Mirror insert, retried only when the connection could not be opened.

    After a timeout or a dropped connection the row may already be committed.
    """
    return _call_mirror(
        mirror,
        partial(sql_mirror.insert_record, mirror, schema, record),
        "mirror insert",
        retry_on=NOT_EXECUTED_ERRORS,
    )


def _describe(exc: XlMirrorError) -> str:
    return f"{exc.code}: {exc.message}"


def _is_header(row_index: int, values: list[str]) -> bool:
    return row_index == store.HEADER_ROW and store.is_header_row(values)


def _check_cells(record: Record, schema: RecordSchema) -> list[str]:
    """Encoded fields, refused before any mirror call when the workbook could not store them."""
    return [check_text(text) for text in codec.encode(record, schema)]


def _mirror_upsert(
    mirror: MirrorConfig,
    schema: RecordSchema,
    identifier: int | None,
    record: Record,
    *,
    where: dict[str, Any],
) -> int:
    """Update the mirror row ``identifier``, inserting instead when there is none. Returns the id."""
    if identifier is None:
        return _insert(mirror, schema, record)
    found = _call_mirror(
        mirror,
        partial(sql_mirror.update_record, mirror, schema, identifier, record),
        "mirror update",
    )
    if found:
        return identifier
    log.warning("sync.mirror_row_missing", id=identifier, action="reinsert", **where)
    return _insert(mirror, schema, record)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def prepare_store(
    path: str | Path,
    sheet: str,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> list[str]:
    """Ensure workbook, sheet, header row and (best effort) the mirror table.

    Returns warnings for mirror problems; workbook problems raise.
    """
    store.ensure_sheet(path, sheet)
    store.ensure_header_row(path, sheet, schema)
    warnings: list[str] = []
    if mirror is not None:
        try:
            _call_mirror(mirror, partial(sql_mirror.ensure_schema, mirror, schema), "mirror schema")
        except XlMirrorError as exc:
            log.error("sync.mirror_unavailable", error=_describe(exc))
            warnings.append(_describe(exc))
    return warnings


# ---------------------------------------------------------------------------
# Single mutations
# ---------------------------------------------------------------------------


def add_record(
    path: str | Path,
    sheet: str,
    record: Record,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> MutationResult:
    """Insert into the mirror (to get the identifier), then append the sheet row."""
    _check_cells(record, schema)
    result = MutationResult()
    identifier: int | None = None
    if mirror is not None:
        try:
            identifier = _insert(mirror, schema, record)
            result.mirrored = True
        except XlMirrorError as exc:
            log.error("sync.add_mirror_failed", file=str(path), sheet=sheet, error=_describe(exc))
            result.mirror_error = _describe(exc)
    try:
        result.row_index = store.add_row(path, sheet, codec.to_row(identifier, record, schema))
    except XlMirrorError:
        if identifier is not None:
            log.error("sync.orphaned_mirror_row", file=str(path), sheet=sheet, id=identifier)
        raise
    result.record_id = identifier
    return result


def update_record(
    path: str | Path,
    sheet: str,
    row_index: int,
    record: Record,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> MutationResult:
    """Update the mirror row (inserting if it has none or it vanished), then rewrite the sheet row.

    ``ok`` is False, and the mirror untouched, when ``row_index`` holds no data row.
    """
    fields = _check_cells(record, schema)
    current = store.get_row(path, sheet, row_index)
    if current is None or _is_header(row_index, current):
        return MutationResult(ok=False, row_index=row_index)

    id_text = current[0] if current else ""
    identifier = codec.parse_identifier(id_text)
    result = MutationResult(row_index=row_index, record_id=identifier)
    if mirror is not None:
        try:
            identifier = _mirror_upsert(
                mirror, schema, identifier, record, where={"file": str(path), "sheet": sheet, "row": row_index}
            )
            result.mirrored = True
            result.record_id = identifier
            id_text = str(identifier)
        except XlMirrorError as exc:
            log.error("sync.update_mirror_failed", file=str(path), sheet=sheet, row=row_index, error=_describe(exc))
            result.mirror_error = _describe(exc)
    result.ok = store.update_row(path, sheet, row_index, [id_text, *fields])
    return result


def delete_record(
    path: str | Path,
    sheet: str,
    row_index: int,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> MutationResult:
    """Remove the sheet row, then its mirror row. ``ok`` is False when there is no such data row."""
    current = store.get_row(path, sheet, row_index)
    if current is None or _is_header(row_index, current):
        return MutationResult(ok=False, row_index=row_index)

    identifier = codec.parse_identifier(current[0] if current else "")
    result = MutationResult(row_index=row_index, record_id=identifier)
    if not store.delete_row(path, sheet, row_index):
        result.ok = False
        return result
    if mirror is not None and identifier is not None:
        try:
            found = _call_mirror(
                mirror, partial(sql_mirror.delete_record, mirror, schema, identifier), "mirror delete"
            )
            result.mirrored = True
            if not found:
                log.warning("sync.mirror_row_missing", file=str(path), sheet=sheet, row=row_index, id=identifier)
        except XlMirrorError as exc:
            log.error("sync.delete_mirror_failed", file=str(path), sheet=sheet, row=row_index, error=_describe(exc))
            result.mirror_error = _describe(exc)
    return result


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------


def delete_all_records(
    path: str | Path,
    sheet: str,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> SyncSummary:
    """Clear every data row (header kept) in one save, then delete each mirrored row."""
    summary = SyncSummary(operation="delete_all")
    rows = store.read_data_rows(path, sheet)
    store.replace_data_rows(path, sheet, [])
    for row in rows:
        identifier = codec.parse_identifier(row.values[0] if row.values else "")
        if mirror is None or identifier is None:
            summary.succeeded += 1
            continue
        try:
            _call_mirror(mirror, partial(sql_mirror.delete_record, mirror, schema, identifier), "mirror delete")
            summary.succeeded += 1
        except XlMirrorError as exc:
            summary.record_failure(row.index, exc.code, exc.message)
    log.info("sync.delete_all", file=str(path), sheet=sheet, succeeded=summary.succeeded, failed=summary.failed)
    return summary


def bulk_insert_csv(
    path: str | Path,
    sheet: str,
    csv_path: str | Path,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> SyncSummary:
    """Import a CSV file: one record per line, appended after mirror insertion.

    A line with fewer fields than the schema is counted as a failure and
    skipped; extra trailing fields are ignored.  All accepted rows are
    appended in a single save.
    """
    summary = SyncSummary(operation="import")
    pending: list[list[str]] = []
    for line_no, fields in read_import_rows(csv_path, schema):
        if len(fields) < len(schema):
            summary.record_failure(
                line_no,
                "ERR_VALIDATION",
                f"expected {len(schema)} fields, got {len(fields)}",
            )
            continue
        record = codec.decode(fields[: len(schema)], schema)
        try:
            _check_cells(record, schema)
        except InputValidationError as exc:
            summary.record_failure(line_no, exc.code, exc.message)
            continue
        identifier: int | None = None
        if mirror is not None:
            try:
                identifier = _insert(mirror, schema, record)
            except XlMirrorError as exc:
                summary.record_unmirrored(line_no, exc.code, exc.message)
        pending.append(codec.to_row(identifier, record, schema))

    store.append_rows(path, sheet, pending)
    summary.succeeded = len(pending)
    log.info(
        "sync.import",
        file=str(path),
        sheet=sheet,
        source=str(csv_path),
        succeeded=summary.succeeded,
        failed=summary.failed,
        unmirrored=len(summary.unmirrored),
    )
    return summary


def push_to_mirror(
    path: str | Path,
    sheet: str,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> SyncSummary:
    """Excel to database: insert unmirrored rows, update mirrored ones, write new ids back."""
    if mirror is None:
        raise InputValidationError("push requires a mirror configuration", code="ERR_MIRROR_NOT_CONFIGURED")
    summary = SyncSummary(operation="push")
    _call_mirror(mirror, partial(sql_mirror.ensure_schema, mirror, schema), "mirror schema")
    rows = store.read_data_rows(path, sheet)

    assigned: dict[int, int] = {}
    for row in rows:
        if not any(value.strip() for value in row.values):
            continue
        identifier, record = codec.from_row(row.values, schema)
        try:
            new_id = _mirror_upsert(
                mirror, schema, identifier, record, where={"file": str(path), "sheet": sheet, "row": row.index}
            )
        except XlMirrorError as exc:
            summary.record_failure(row.index, exc.code, exc.message)
            continue
        if new_id != identifier:
            assigned[row.index] = new_id
        summary.succeeded += 1

    store.set_identifiers(path, sheet, assigned)
    log.info(
        "sync.push",
        file=str(path),
        sheet=sheet,
        succeeded=summary.succeeded,
        failed=summary.failed,
        new_ids=len(assigned),
    )
    return summary


def pull_from_mirror(
    path: str | Path,
    sheet: str,
    schema: RecordSchema = ENTRY_SCHEMA,
    mirror: MirrorConfig | None = None,
) -> SyncSummary:
    """Database to Excel: replace every data row with the mirror rows in id order (last writer wins)."""
    if mirror is None:
        raise InputValidationError("pull requires a mirror configuration", code="ERR_MIRROR_NOT_CONFIGURED")
    summary = SyncSummary(operation="pull")
    _call_mirror(mirror, partial(sql_mirror.ensure_schema, mirror, schema), "mirror schema")
    mirrored = _call_mirror(mirror, partial(sql_mirror.read_all, mirror, schema), "mirror read")
    store.ensure_header_row(path, sheet, schema)
    indices = store.replace_data_rows(
        path, sheet, [codec.to_row(record_id, record, schema) for record_id, record in mirrored]
    )
    summary.succeeded = len(indices)
    log.info("sync.pull", file=str(path), sheet=sheet, rows=summary.succeeded)
    return summary


# ---------------------------------------------------------------------------
# Mirror backup
# ---------------------------------------------------------------------------


def dump_mirror(mirror: MirrorConfig, schema: RecordSchema = ENTRY_SCHEMA) -> list[dict[str, Any]]:
    """Every mirror row as ``{"id": ..., "record": {...}}``, for a JSON backup file."""
    rows = _call_mirror(mirror, partial(sql_mirror.read_all, mirror, schema), "mirror read")
    return [{"id": record_id, "record": record.to_dict()} for record_id, record in rows]


def restore_mirror(
    mirror: MirrorConfig,
    payload: list[dict[str, Any]],
    schema: RecordSchema = ENTRY_SCHEMA,
) -> int:
    """Replace the mirror table with rows from :func:`dump_mirror` output."""
    rows: list[tuple[int, Record]] = []
    for position, entry in enumerate(payload):
        try:
            record_id = int(entry["id"])
            values = entry.get("record") or {}
            fields = [str(values.get(name, "")) for name in schema.names]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise InputValidationError(
                f"Backup entry {position} is malformed: {exc}",
                details={"entry": position},
            ) from exc
        rows.append((record_id, codec.decode(fields, schema)))
    _call_mirror(mirror, partial(sql_mirror.ensure_schema, mirror, schema), "mirror schema")
    return _call_mirror(mirror, partial(sql_mirror.restore, mirror, schema, rows), "mirror restore")
