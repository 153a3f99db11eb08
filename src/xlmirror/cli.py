"""Typer CLI application: top-level commands and subcommand groups."""

from __future__ import annotations

import json
import sys
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Annotated, Any, Optional

import orjson
import typer

import xlmirror
from xlmirror.adapters import sql_mirror
from xlmirror.adapters.discovery import discover_connection, start_backing_service
from xlmirror.config.settings import Settings
from xlmirror.contracts.common import ChangeRecord, Target, WarningDetail
from xlmirror.contracts.errors import (
    AccessError,
    InputValidationError,
    MirrorConnectionError,
    NotFoundError,
    QueryError,
    XlMirrorError,
)
from xlmirror.contracts.mirror import MirrorConfig
from xlmirror.contracts.records import Record, RecordSchema
from xlmirror.contracts.results import MutationResult, SheetRow, SyncSummary
from xlmirror.engine import codec, store, sync
from xlmirror.engine.dispatcher import (
    envelope_for_error,
    error_envelope,
    exit_code_for,
    print_response,
    success_envelope,
)
from xlmirror.io.csvfile import write_export_rows
from xlmirror.io.fileops import atomic_write, backup, check_lock, prune_backups, read_text_safe
from xlmirror.observe.logging import Timer, bind_context, configure_logging, get_logger
from xlmirror.observe.monitor import DEFAULT_INTERVAL, LiveMonitor

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# App & subcommand groups
# ---------------------------------------------------------------------------

_MAIN_HELP = """\
Row store inside .xlsx workbooks, optionally mirrored into a SQL database.

**Typical workflow:**

1. `xlm init -f data.xlsx -s Data1`  — create workbook, sheet, header row (and mirror table)
2. `xlm rows add --value Date=2024-03-01 --value Shift=A --value QuantityGood=40`
3. `xlm import --csv entries.csv`  — bulk import, one record per line
4. `xlm sync push` / `xlm sync pull`  — reconcile the sheet with the database

**Every command** returns a JSON `ResponseEnvelope` on stdout:
`{"ok": bool, "command": "...", "result": {...}, "errors": [...], "warnings": [...], "metrics": {"duration_ms": N}}`
Structured logs go to stderr.

**Configuration** is read from `xlmirror.yaml` in the working directory (or `--config`).
Without a `mirror:` section the sheet is not mirrored.

**Exit codes:** 0=success, 10=validation, 40=lock conflict, 50=io, 60=database, 70=timeout, 90=internal
"""

_ROWS_EPILOG = """\
**Examples:**

`xlm rows ls -f data.xlsx -s Data1`

`xlm rows add --value Date=2024-03-01 --value QuantityInput=50`

`xlm rows add --json '{"Date": "2024-03-01", "Shift": "B"}'`

`xlm rows update --row 3 --value QuantityBad=2`  — fields not given keep their values

`xlm rows delete --row 3`  — row indices are never reused

`xlm rows search -k "M-04"`

`xlm rows clear --yes`  — delete every data row, keep the header
"""

_SYNC_EPILOG = """\
**Examples:**

`xlm sync push`  — insert unmirrored rows, update mirrored ones, write new ids back

`xlm sync pull`  — replace the sheet's data rows with the database rows (last writer wins)
"""

_DB_EPILOG = """\
**Examples:**

`xlm db check`  — connectivity and row count

`xlm db backup --out mirror.json` / `xlm db restore --input mirror.json --yes`

`xlm db discover`  — try the configured `discovery.candidates` in order
"""


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(xlmirror.__version__)
        raise typer.Exit()


app = typer.Typer(
    name="xlm",
    help=_MAIN_HELP,
    no_args_is_help=True,
    rich_markup_mode="markdown",
)

rows_app = typer.Typer(
    name="rows", help="List, add, update, delete and search sheet rows.",
    epilog=_ROWS_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
sync_app = typer.Typer(
    name="sync", help="Bulk reconciliation between the sheet and its mirror table.",
    epilog=_SYNC_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
db_app = typer.Typer(
    name="db", help="Mirror database checks, backups and connection discovery.",
    epilog=_DB_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)

app.add_typer(rows_app)
app.add_typer(sync_app)
app.add_typer(db_app)


@app.callback(invoke_without_command=True)
def root(
    ctx: typer.Context,
    config: Annotated[
        Optional[str], typer.Option("--config", "-c", help="Path to xlmirror.yaml (default: ./xlmirror.yaml)")
    ] = None,
    log_level: Annotated[
        Optional[str], typer.Option("--log-level", help="Log level for stderr (overrides the config file)")
    ] = None,
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Print version and exit.", is_eager=True)
    ] = False,
) -> None:
    if version:
        _version_callback(True)
    try:
        settings = Settings.resolve(config)
    except XlMirrorError as exc:
        configure_logging()
        _emit(envelope_for_error("config", exc, target=Target(file=config)))
    configure_logging(log_level or settings.log_level, settings.log_json)
    bind_context(command=ctx.invoked_subcommand)
    ctx.obj = settings


# Type aliases for common options
FilePath = Annotated[Optional[str], typer.Option("--file", "-f", help="Workbook path (default: default_file from config)")]
SheetOpt = Annotated[Optional[str], typer.Option("--sheet", "-s", help="Sheet name (default: default_sheet from config)")]
RowOpt = Annotated[int, typer.Option("--row", "-r", help="1-based row index as shown by 'xlm rows ls'")]
ValueOpt = Annotated[
    Optional[list[str]], typer.Option("--value", help="Field value as NAME=VALUE (repeatable)")
]
JsonValues = Annotated[Optional[str], typer.Option("--json", help="Field values as a JSON object")]
YesFlag = Annotated[bool, typer.Option("--yes", help="Confirm a destructive operation")]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
@dataclass
class _Scope:
    """Resolved workbook, sheet, schema and mirror for one command."""

    settings: Settings
    path: Path
    sheet: str
    schema: RecordSchema
    mirror: MirrorConfig | None

    @property
    def target(self) -> Target:
        return Target(file=str(self.path), sheet=self.sheet, table=self.mirror.table if self.mirror else None)

    def require_mirror(self) -> MirrorConfig:
        if self.mirror is None:
            raise InputValidationError(
                "No mirror configured: add a 'mirror:' section to xlmirror.yaml",
                code="ERR_MIRROR_NOT_CONFIGURED",
            )
        return self.mirror


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _scope(ctx: typer.Context, file: str | None, sheet: str | None) -> _Scope:
    settings = _settings(ctx)
    sheet_name = sheet or settings.default_sheet
    return _Scope(
        settings=settings,
        path=Path(file or settings.default_file),
        sheet=sheet_name,
        schema=settings.record_schema(),
        mirror=settings.mirror_config(sheet_name),
    )


def _emit(envelope, code=None):
    print_response(envelope)
    raise typer.Exit(code if code is not None else exit_code_for(envelope))


def _fail(command: str, exc: XlMirrorError, file: str | None, sheet: str | None = None) -> None:
    _emit(envelope_for_error(command, exc, target=Target(file=file, sheet=sheet)))


def _require_workbook(path: Path) -> None:
    if not path.exists():
        raise NotFoundError(f"Workbook not found: {path}", code="ERR_WORKBOOK_NOT_FOUND", details={"file": str(path)})


def _auto_backup(scope: _Scope) -> list[ChangeRecord]:
    """Back up an existing workbook before a mutation when ``auto_backup`` is on."""
    if not scope.settings.auto_backup or not scope.path.exists():
        return []
    return _backup_changes(scope)


def _backup_changes(scope: _Scope) -> list[ChangeRecord]:
    try:
        copy = backup(scope.path)
        removed = prune_backups(scope.path, scope.settings.backup_retention_days)
    except OSError as exc:
        raise AccessError(f"Cannot back up {scope.path}: {exc}", details={"file": str(scope.path)}) from exc
    changes = [ChangeRecord(type="backup.created", target=copy)]
    changes.extend(ChangeRecord(type="backup.pruned", target=old) for old in removed)
    return changes


def _mirror_warnings(messages: list[str]) -> list[WarningDetail]:
    return [WarningDetail(code="WARN_MIRROR_UNAVAILABLE", message=m) for m in messages]


def _mutation_warnings(outcome: MutationResult) -> list[WarningDetail]:
    if outcome.mirror_error is None:
        return []
    return [WarningDetail(
        code="WARN_MIRROR_FAILED",
        message=f"Workbook updated but the mirror was not: {outcome.mirror_error}",
    )]


def _summary_warnings(summary: SyncSummary) -> list[WarningDetail]:
    warnings: list[WarningDetail] = []
    if summary.failed:
        warnings.append(WarningDetail(
            code="WARN_ROWS_FAILED",
            message=f"{summary.failed} row(s) failed; see result.failures",
        ))
    if summary.unmirrored:
        warnings.append(WarningDetail(
            code="WARN_ROWS_UNMIRRORED",
            message=f"{len(summary.unmirrored)} row(s) written without a mirror id; run 'xlm sync push' later",
        ))
    return warnings


def _row_payload(row: SheetRow, schema: RecordSchema) -> dict[str, Any]:
    fields = row.values[1:]
    return {
        "row": row.index,
        "id": row.identifier,
        "fields": {name: fields[i] if i < len(fields) else "" for i, name in enumerate(schema.names)},
    }


def _field_values(schema: RecordSchema, pairs: list[str] | None, raw_json: str | None) -> dict[str, str]:
    """Merge ``--json`` and ``--value NAME=VALUE`` options into canonical field names."""
    given: dict[str, str] = {}
    if raw_json:
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise InputValidationError(f"--json is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InputValidationError("--json must be an object of field values")
        given.update({str(k): "" if v is None else str(v) for k, v in data.items()})
    for pair in pairs or []:
        name, sep, text = pair.partition("=")
        if not sep or not name.strip():
            raise InputValidationError(f"Expected NAME=VALUE, got {pair!r}")
        given[name.strip()] = text.strip()

    canonical = {name.casefold(): name for name in schema.names}
    resolved: dict[str, str] = {}
    unknown: list[str] = []
    for name, text in given.items():
        field = canonical.get(name.casefold())
        if field is None:
            unknown.append(name)
        else:
            resolved[field] = text
    if unknown:
        raise InputValidationError(
            f"Unknown field(s): {', '.join(sorted(unknown))}",
            details={"unknown": sorted(unknown), "fields": schema.names},
        )
    return resolved


def _date_warnings(schema: RecordSchema, values: dict[str, str]) -> list[WarningDetail]:
    warnings: list[WarningDetail] = []
    for spec in schema.fields:
        text = values.get(spec.name, "")
        if spec.kind == "date" and text and codec.parse_date(text) is None:
            warnings.append(WarningDetail(
                code="WARN_DATE_UNPARSED",
                message=f"'{text}' is not a recognised date; the mirror stores NULL for {spec.name}",
                path=spec.name,
            ))
    return warnings


def _record_from(schema: RecordSchema, values: dict[str, str], base: Record | None = None) -> Record:
    fields = codec.encode(base, schema) if base is not None else [""] * len(schema)
    for i, name in enumerate(schema.names):
        if name in values:
            fields[i] = values[name]
    return codec.decode(fields, schema)


def _data_row(scope: _Scope, row: int) -> list[str]:
    current = store.get_row(scope.path, scope.sheet, row)
    if current is None or (row == store.HEADER_ROW and store.is_header_row(current)):
        raise NotFoundError(
            f"No data row {row} in sheet '{scope.sheet}'",
            code="ERR_ROW_NOT_FOUND",
            details={"row": row},
        )
    return current


# ---------------------------------------------------------------------------
# xlm version
# ---------------------------------------------------------------------------
@app.command()
def version():
    """Print the xlm CLI version.

    Example: `xlm version`
    """
    env = success_envelope("version", {"version": xlmirror.__version__})
    _emit(env)


# ---------------------------------------------------------------------------
# xlm init
# ---------------------------------------------------------------------------
@app.command("init")
def init_cmd(ctx: typer.Context, file: FilePath = None, sheet: SheetOpt = None):
    """Create the workbook, sheet and header row, and the mirror table when configured.

    Safe to run repeatedly. An unreachable mirror is reported as a warning;
    workbook problems are errors.

    Example: `xlm init -f data.xlsx -s Data1`
    """
    with Timer(log, "cli.init") as t:
        try:
            scope = _scope(ctx, file, sheet)
            existed = scope.path.exists()
            warnings = _mirror_warnings(sync.prepare_store(scope.path, scope.sheet, scope.schema, scope.mirror))
            sheets = store.list_sheets(scope.path)
        except XlMirrorError as exc:
            _fail("init", exc, file, sheet)

    result = {
        "file": str(scope.path),
        "sheet": scope.sheet,
        "created": not existed,
        "sheets": sheets,
        "header": scope.schema.headers,
        "mirrored": scope.mirror is not None,
    }
    env = success_envelope("init", result, target=scope.target, warnings=warnings, duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# xlm sheets
# ---------------------------------------------------------------------------
@app.command("sheets")
def sheets_cmd(ctx: typer.Context, file: FilePath = None):
    """List sheet names in workbook order.

    Example: `xlm sheets -f data.xlsx`
    """
    with Timer() as t:
        try:
            scope = _scope(ctx, file, None)
            names = store.list_sheets(scope.path)
        except XlMirrorError as exc:
            _fail("sheets", exc, file)

    env = success_envelope("sheets", {"sheets": names}, target=Target(file=str(scope.path)), duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# xlm rows
# ---------------------------------------------------------------------------
@rows_app.command("ls")
def rows_ls_cmd(
    ctx: typer.Context,
    file: FilePath = None,
    sheet: SheetOpt = None,
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", min=1, help="Return at most N rows")] = None,
):
    """List data rows with their indices and identifiers.

    The header row is never listed. Indices have gaps where rows were deleted.

    Example: `xlm rows ls -f data.xlsx -s Data1 --limit 20`
    """
    with Timer() as t:
        try:
            scope = _scope(ctx, file, sheet)
            rows = store.read_data_rows(scope.path, scope.sheet)
        except XlMirrorError as exc:
            _fail("rows.ls", exc, file, sheet)

    shown = rows[:limit] if limit else rows
    result = {"total": len(rows), "rows": [_row_payload(r, scope.schema) for r in shown]}
    env = success_envelope("rows.ls", result, target=scope.target, duration_ms=t.elapsed_ms)
    _emit(env)


@rows_app.command("search")
def rows_search_cmd(
    ctx: typer.Context,
    keyword: Annotated[str, typer.Option("--keyword", "-k", help="Case-insensitive substring to look for")],
    file: FilePath = None,
    sheet: SheetOpt = None,
):
    """Find data rows where any cell contains the keyword.

    Example: `xlm rows search -k "M-04"`
    """
    with Timer() as t:
        try:
            scope = _scope(ctx, file, sheet)
            rows = store.search_rows(scope.path, scope.sheet, keyword)
        except XlMirrorError as exc:
            _fail("rows.search", exc, file, sheet)

    result = {"keyword": keyword, "matches": len(rows), "rows": [_row_payload(r, scope.schema) for r in rows]}
    env = success_envelope("rows.search", result, target=scope.target, duration_ms=t.elapsed_ms)
    _emit(env)


@rows_app.command("add")
def rows_add_cmd(
    ctx: typer.Context,
    file: FilePath = None,
    sheet: SheetOpt = None,
    value: ValueOpt = None,
    values_json: JsonValues = None,
):
    """Add a record: mirror insert first (for the id), then append the sheet row.

    Omitted fields take their defaults (empty text, 0 for integers).

    Example: `xlm rows add --value Date=2024-03-01 --value Shift=A --value QuantityGood=40`
    """
    with Timer(log, "cli.rows.add") as t:
        try:
            scope = _scope(ctx, file, sheet)
            values = _field_values(scope.schema, value, values_json)
            record = _record_from(scope.schema, values)
            changes = _auto_backup(scope)
            warnings = _mirror_warnings(sync.prepare_store(scope.path, scope.sheet, scope.schema, scope.mirror))
            outcome = sync.add_record(scope.path, scope.sheet, record, scope.schema, scope.mirror)
        except XlMirrorError as exc:
            _fail("rows.add", exc, file, sheet)

    warnings += _date_warnings(scope.schema, values) + _mutation_warnings(outcome)
    changes.append(ChangeRecord(type="row.added", target=f"{scope.sheet}!{outcome.row_index}", after=record.to_dict()))
    env = success_envelope(
        "rows.add", outcome.model_dump(), target=scope.target.model_copy(update={"row": outcome.row_index}),
        changes=changes, warnings=warnings, duration_ms=t.elapsed_ms,
    )
    _emit(env)


@rows_app.command("update")
def rows_update_cmd(
    ctx: typer.Context,
    row: RowOpt,
    file: FilePath = None,
    sheet: SheetOpt = None,
    value: ValueOpt = None,
    values_json: JsonValues = None,
):
    """Change fields of an existing data row; fields not given keep their current values.

    The mirror row is updated (or re-inserted when it is missing) before the sheet.

    Example: `xlm rows update --row 3 --value QuantityBad=2`
    """
    with Timer(log, "cli.rows.update") as t:
        try:
            scope = _scope(ctx, file, sheet)
            values = _field_values(scope.schema, value, values_json)
            if not values:
                raise InputValidationError("Nothing to update: pass --value NAME=VALUE or --json")
            _, before = codec.from_row(_data_row(scope, row), scope.schema)
            record = _record_from(scope.schema, values, base=before)
            changes = _auto_backup(scope)
            outcome = sync.update_record(scope.path, scope.sheet, row, record, scope.schema, scope.mirror)
            if not outcome.ok:
                raise NotFoundError(f"No data row {row} in sheet '{scope.sheet}'", code="ERR_ROW_NOT_FOUND")
        except XlMirrorError as exc:
            _fail("rows.update", exc, file, sheet)

    changes.append(ChangeRecord(
        type="row.updated", target=f"{scope.sheet}!{row}", before=before.to_dict(), after=record.to_dict(),
    ))
    env = success_envelope(
        "rows.update", outcome.model_dump(), target=scope.target.model_copy(update={"row": row}),
        changes=changes, warnings=_date_warnings(scope.schema, values) + _mutation_warnings(outcome),
        duration_ms=t.elapsed_ms,
    )
    _emit(env)


@rows_app.command("delete")
def rows_delete_cmd(
    ctx: typer.Context,
    row: RowOpt,
    file: FilePath = None,
    sheet: SheetOpt = None,
):
    """Delete a data row (its index is never reused), then its mirror row.

    Example: `xlm rows delete --row 3`
    """
    with Timer(log, "cli.rows.delete") as t:
        try:
            scope = _scope(ctx, file, sheet)
            _require_workbook(scope.path)
            changes = _auto_backup(scope)
            outcome = sync.delete_record(scope.path, scope.sheet, row, scope.schema, scope.mirror)
            if not outcome.ok:
                raise NotFoundError(f"No data row {row} in sheet '{scope.sheet}'", code="ERR_ROW_NOT_FOUND")
        except XlMirrorError as exc:
            _fail("rows.delete", exc, file, sheet)

    changes.append(ChangeRecord(type="row.deleted", target=f"{scope.sheet}!{row}"))
    env = success_envelope(
        "rows.delete", outcome.model_dump(), target=scope.target.model_copy(update={"row": row}),
        changes=changes, warnings=_mutation_warnings(outcome), duration_ms=t.elapsed_ms,
    )
    _emit(env)


@rows_app.command("clear")
def rows_clear_cmd(
    ctx: typer.Context,
    file: FilePath = None,
    sheet: SheetOpt = None,
    yes: YesFlag = False,
):
    """Delete every data row (the header stays) and the matching mirror rows.

    Requires `--yes`.

    Example: `xlm rows clear -s Data1 --yes`
    """
    with Timer(log, "cli.rows.clear") as t:
        try:
            if not yes:
                raise InputValidationError("Refusing to delete every row without --yes")
            scope = _scope(ctx, file, sheet)
            _require_workbook(scope.path)
            changes = _auto_backup(scope)
            summary = sync.delete_all_records(scope.path, scope.sheet, scope.schema, scope.mirror)
        except XlMirrorError as exc:
            _fail("rows.clear", exc, file, sheet)

    changes.append(ChangeRecord(type="rows.cleared", target=scope.sheet, impact={"rows": summary.succeeded + summary.failed}))
    env = success_envelope(
        "rows.clear", summary.model_dump(), target=scope.target,
        changes=changes, warnings=_summary_warnings(summary), duration_ms=t.elapsed_ms,
    )
    _emit(env)


# ---------------------------------------------------------------------------
# xlm import / export
# ---------------------------------------------------------------------------
@app.command("import")
def import_cmd(
    ctx: typer.Context,
    csv_path: Annotated[str, typer.Option("--csv", help="Comma-separated file, one record per line")],
    file: FilePath = None,
    sheet: SheetOpt = None,
):
    """Bulk import records from a CSV file.

    Blank lines and a leading header line are skipped. Lines with too few
    fields are reported in `result.failures` and do not stop the import.

    Example: `xlm import --csv entries.csv -s Data1`
    """
    with Timer(log, "cli.import") as t:
        try:
            scope = _scope(ctx, file, sheet)
            if not Path(csv_path).is_file():
                raise NotFoundError(f"Import file not found: {csv_path}", code="ERR_FILE_NOT_FOUND")
            changes = _auto_backup(scope)
            warnings = _mirror_warnings(sync.prepare_store(scope.path, scope.sheet, scope.schema, scope.mirror))
            summary = sync.bulk_insert_csv(scope.path, scope.sheet, csv_path, scope.schema, scope.mirror)
        except XlMirrorError as exc:
            _fail("import", exc, file, sheet)

    changes.append(ChangeRecord(type="rows.imported", target=scope.sheet, impact={"rows": summary.succeeded, "source": csv_path}))
    env = success_envelope(
        "import", summary.model_dump(), target=scope.target,
        changes=changes, warnings=warnings + _summary_warnings(summary), duration_ms=t.elapsed_ms,
    )
    _emit(env)


@app.command("export")
def export_cmd(
    ctx: typer.Context,
    out: Annotated[str, typer.Option("--out", "-o", help="Destination CSV file")],
    file: FilePath = None,
    sheet: SheetOpt = None,
):
    """Write the sheet's rows to a CSV file, header first.

    Example: `xlm export --out entries.csv -s Data1`
    """
    with Timer(log, "cli.export") as t:
        try:
            scope = _scope(ctx, file, sheet)
            rows = store.read_data_rows(scope.path, scope.sheet)
            width = len(scope.schema) + 1
            padded = [(r.values + [""] * width)[:width] for r in rows]
            try:
                written = write_export_rows(out, scope.schema, padded)
            except OSError as exc:
                raise AccessError(f"Cannot write {out}: {exc}", details={"file": out}) from exc
        except XlMirrorError as exc:
            _fail("export", exc, file, sheet)

    env = success_envelope(
        "export", {"out": out, "rows": written}, target=scope.target, duration_ms=t.elapsed_ms,
    )
    _emit(env)


# ---------------------------------------------------------------------------
# xlm sync
# ---------------------------------------------------------------------------
@sync_app.command("push")
def sync_push_cmd(ctx: typer.Context, file: FilePath = None, sheet: SheetOpt = None):
    """Excel to database: insert unmirrored rows, update mirrored ones, write new ids back.

    Example: `xlm sync push -s Data1`
    """
    with Timer(log, "cli.sync.push") as t:
        try:
            scope = _scope(ctx, file, sheet)
            mirror = scope.require_mirror()
            _require_workbook(scope.path)
            changes = _auto_backup(scope)
            summary = sync.push_to_mirror(scope.path, scope.sheet, scope.schema, mirror)
        except XlMirrorError as exc:
            _fail("sync.push", exc, file, sheet)

    env = success_envelope(
        "sync.push", summary.model_dump(), target=scope.target,
        changes=changes, warnings=_summary_warnings(summary), duration_ms=t.elapsed_ms,
    )
    _emit(env)


@sync_app.command("pull")
def sync_pull_cmd(ctx: typer.Context, file: FilePath = None, sheet: SheetOpt = None):
    """Database to Excel: replace every data row with the mirror rows, in id order.

    Rows only present in the workbook are lost; run `xlm sync push` first to keep them.

    Example: `xlm sync pull -s Data1`
    """
    with Timer(log, "cli.sync.pull") as t:
        try:
            scope = _scope(ctx, file, sheet)
            mirror = scope.require_mirror()
            changes = _auto_backup(scope)
            store.ensure_sheet(scope.path, scope.sheet)
            summary = sync.pull_from_mirror(scope.path, scope.sheet, scope.schema, mirror)
        except XlMirrorError as exc:
            _fail("sync.pull", exc, file, sheet)

    changes.append(ChangeRecord(type="rows.replaced", target=scope.sheet, impact={"rows": summary.succeeded}))
    env = success_envelope(
        "sync.pull", summary.model_dump(), target=scope.target,
        changes=changes, duration_ms=t.elapsed_ms,
    )
    _emit(env)


# ---------------------------------------------------------------------------
# xlm backup
# ---------------------------------------------------------------------------
@app.command("backup")
def backup_cmd(ctx: typer.Context, file: FilePath = None):
    """Copy the workbook to a timestamped .bak file and prune expired backups.

    Backups older than `backup_retention_days` are deleted.

    Example: `xlm backup -f data.xlsx`
    """
    with Timer() as t:
        try:
            scope = _scope(ctx, file, None)
            _require_workbook(scope.path)
            changes = _backup_changes(scope)
        except XlMirrorError as exc:
            _fail("backup", exc, file)

    result = {
        "backup": changes[0].target,
        "pruned": [c.target for c in changes[1:]],
    }
    env = success_envelope("backup", result, target=Target(file=str(scope.path)), changes=changes, duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# xlm db
# ---------------------------------------------------------------------------
@db_app.command("check")
def db_check_cmd(ctx: typer.Context, sheet: SheetOpt = None):
    """Check that the mirror database answers and report the table's row count.

    Example: `xlm db check -s Data1`
    """
    warnings: list[WarningDetail] = []
    with Timer(log, "cli.db.check") as t:
        try:
            scope = _scope(ctx, None, sheet)
            mirror = scope.require_mirror()
            sql_mirror.probe(mirror.url)
            try:
                rows: int | None = sql_mirror.count_rows(mirror, scope.schema)
            except QueryError as exc:
                rows = None
                warnings.append(WarningDetail(code="WARN_TABLE_MISSING", message=exc.message))
        except XlMirrorError as exc:
            _fail("db.check", exc, None, sheet)

    result = {"url": sql_mirror.describe_url(mirror.url), "table": mirror.table, "reachable": True, "rows": rows}
    env = success_envelope("db.check", result, target=scope.target, warnings=warnings, duration_ms=t.elapsed_ms)
    _emit(env)


@db_app.command("backup")
def db_backup_cmd(
    ctx: typer.Context,
    out: Annotated[str, typer.Option("--out", "-o", help="Destination JSON file")],
    sheet: SheetOpt = None,
):
    """Dump every mirror row to a JSON file.

    Example: `xlm db backup --out mirror.json`
    """
    with Timer(log, "cli.db.backup") as t:
        try:
            scope = _scope(ctx, None, sheet)
            payload = sync.dump_mirror(scope.require_mirror(), scope.schema)
            try:
                atomic_write(out, orjson.dumps(payload, option=orjson.OPT_INDENT_2))
            except OSError as exc:
                raise AccessError(f"Cannot write {out}: {exc}", details={"file": out}) from exc
        except XlMirrorError as exc:
            _fail("db.backup", exc, None, sheet)

    env = success_envelope("db.backup", {"out": out, "rows": len(payload)}, target=scope.target, duration_ms=t.elapsed_ms)
    _emit(env)


@db_app.command("restore")
def db_restore_cmd(
    ctx: typer.Context,
    source: Annotated[str, typer.Option("--input", "-i", help="JSON file written by 'xlm db backup'")],
    sheet: SheetOpt = None,
    yes: YesFlag = False,
):
    """Replace the mirror table with the rows of a backup file, keeping their ids.

    Requires `--yes`. Run `xlm sync pull` afterwards to refresh the sheet.

    Example: `xlm db restore --input mirror.json --yes`
    """
    with Timer(log, "cli.db.restore") as t:
        try:
            if not yes:
                raise InputValidationError("Refusing to replace the mirror table without --yes")
            scope = _scope(ctx, None, sheet)
            mirror = scope.require_mirror()
            if not Path(source).is_file():
                raise NotFoundError(f"Backup file not found: {source}", code="ERR_FILE_NOT_FOUND")
            try:
                payload = json.loads(read_text_safe(source))
            except json.JSONDecodeError as exc:
                raise InputValidationError(f"Backup file is not valid JSON: {exc}") from exc
            if not isinstance(payload, list):
                raise InputValidationError("Backup file must contain a JSON list of rows")
            written = sync.restore_mirror(mirror, payload, scope.schema)
        except XlMirrorError as exc:
            _fail("db.restore", exc, None, sheet)

    env = success_envelope(
        "db.restore", {"input": source, "rows": written}, target=scope.target,
        changes=[ChangeRecord(type="mirror.restored", target=mirror.table, impact={"rows": written})],
        duration_ms=t.elapsed_ms,
    )
    _emit(env)


@db_app.command("discover")
def db_discover_cmd(ctx: typer.Context):
    """Try the configured connection candidates in order and report the first that works.

    Only runs when `discovery.enabled` is true. With `discovery.start_service`
    the configured service commands are tried once if every candidate fails.
    When `discovery.database` is set it is created if missing.

    Example: `xlm db discover`
    """
    with Timer(log, "cli.db.discover") as t:
        try:
            discovery = _settings(ctx).discovery
            if not discovery.enabled:
                raise InputValidationError(
                    "Connection discovery is disabled: set discovery.enabled in xlmirror.yaml",
                    code="ERR_DISCOVERY_DISABLED",
                )
            starter = partial(start_backing_service, discovery.service_commands) if discovery.start_service else None
            found = discover_connection(
                discovery.candidates,
                start_service=starter,
                settle_seconds=discovery.settle_seconds,
            )
            if found is None:
                raise MirrorConnectionError(
                    f"None of the {len(discovery.candidates)} configured candidate(s) connected",
                    details={"candidates": [c.label() for c in discovery.candidates]},
                )
            if discovery.database:
                sql_mirror.create_database_if_missing(found, discovery.database)
        except XlMirrorError as exc:
            _fail("db.discover", exc, None)

    url = sql_mirror.profile_url(found, discovery.database)
    result = {"profile": found.label(), "url": sql_mirror.describe_url(url), "database": discovery.database}
    env = success_envelope("db.discover", result, duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# xlm monitor
# ---------------------------------------------------------------------------
@app.command("monitor")
def monitor_cmd(
    ctx: typer.Context,
    file: FilePath = None,
    sheet: SheetOpt = None,
    interval: Annotated[float, typer.Option("--interval", min=0.01, help="Seconds between polls")] = DEFAULT_INTERVAL,
    max_refreshes: Annotated[
        Optional[int], typer.Option("--max-refreshes", min=1, help="Stop after N refreshes")
    ] = None,
    duration: Annotated[Optional[float], typer.Option("--duration", min=0, help="Stop after N seconds")] = None,
):
    """Watch the workbook and print one JSON line with the sheet's rows after every change.

    Runs until Ctrl+C, `--max-refreshes` or `--duration`; then prints the usual envelope.

    Example: `xlm monitor -s Data1 --interval 0.5`
    """
    try:
        scope = _scope(ctx, file, sheet)
    except XlMirrorError as exc:
        _fail("monitor", exc, file, sheet)

    def on_change(rows: list[SheetRow]) -> None:
        line = {"event": "refresh", "sheet": scope.sheet, "rows": [_row_payload(r, scope.schema) for r in rows]}
        sys.stdout.write(orjson.dumps(line).decode() + "\n")
        sys.stdout.flush()

    def on_error(exc: Exception) -> None:
        code = exc.code if isinstance(exc, XlMirrorError) else "ERR_INTERNAL"
        sys.stdout.write(orjson.dumps({"event": "error", "code": code, "message": str(exc)}).decode() + "\n")
        sys.stdout.flush()

    deadline = time.monotonic() + duration if duration is not None else None

    def should_stop() -> bool:
        if max_refreshes is not None and monitor.refreshes >= max_refreshes:
            return True
        return deadline is not None and time.monotonic() >= deadline

    monitor = LiveMonitor(
        scope.path, scope.sheet, on_change, on_error=on_error, interval=interval, should_stop=should_stop,
    )
    with Timer() as t:
        refreshes = monitor.run()

    env = success_envelope("monitor", {"refreshes": refreshes}, target=scope.target, duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# xlm lock-status
# ---------------------------------------------------------------------------
@app.command("lock-status")
def lock_status_cmd(ctx: typer.Context, file: FilePath = None):
    """Check if a workbook is locked by another xlm process.

    Example: `xlm lock-status -f data.xlsx`
    """
    path = file or _settings(ctx).default_file
    with Timer() as t:
        result = check_lock(path)

    env = success_envelope("lock_status", result, target=Target(file=path), duration_ms=t.elapsed_ms)
    _emit(env)


# ---------------------------------------------------------------------------
# Entrypoint (for `python -m xlmirror`)
# ---------------------------------------------------------------------------
def main() -> None:
    try:
        app()
    except SystemExit:
        raise
    except Exception as exc:
        # Anything unhandled still becomes a JSON envelope on stdout.
        env = error_envelope(
            "unknown",
            "ERR_INTERNAL",
            str(exc),
        )
        print_response(env)
        raise SystemExit(90) from exc


if __name__ == "__main__":
    main()
