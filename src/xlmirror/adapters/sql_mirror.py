"""Relational mirror: one table per sheet, one row per record (SQLAlchemy Core).

Every call builds a fresh engine without pooling, runs in its own
transaction and disposes the engine, so no connection outlives an
operation.  Failing to connect raises :class:`MirrorConnectionError`; a
failing statement raises :class:`QueryError`, and a connection dropped
mid-statement raises :class:`ConnectionLostError`.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date
from typing import Any, TypeVar

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    Column,
    Date,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import URL, Connection, make_url
from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    InterfaceError,
    NoSuchModuleError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.pool import NullPool

from xlmirror.contracts.errors import (
    ConnectionLostError,
    InputValidationError,
    MirrorConnectionError,
    QueryError,
)
from xlmirror.contracts.mirror import ConnectionProfile, MirrorConfig
from xlmirror.contracts.records import Record, RecordSchema
from xlmirror.engine.codec import parse_date
from xlmirror.observe.logging import get_logger

T = TypeVar("T")

log = get_logger(__name__)

ID_COLUMN = "id"
CREATED_COLUMN = "CreatedAt"
DEFAULT_TABLE = "sheet_data"
MAX_IDENTIFIER = 64

_IDENTIFIER_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize_table_name(raw: str | None) -> str:
    """Letters, digits and underscores only, at most 64 characters; ``sheet_data`` if nothing is left."""
    cleaned = _IDENTIFIER_CHARS.sub("", raw or "")[:MAX_IDENTIFIER]
    return cleaned or DEFAULT_TABLE


def _check_identifier(name: str, what: str) -> str:
    if sanitize_table_name(name) != name:
        raise InputValidationError(
            f"Invalid {what} name {name!r}: use letters, digits and '_' (max {MAX_IDENTIFIER})",
            details={what: name},
        )
    return name


def describe_url(url: str | URL) -> str:
    """URL with the password masked, for logs and envelopes."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<invalid url>"


def profile_url(profile: ConnectionProfile, database: str | None = None) -> URL:
    return URL.create(
        drivername=profile.driver,
        username=profile.user or None,
        password=profile.password.get_secret_value() or None,
        host=profile.host or None,
        port=profile.port,
        database=database if database is not None else profile.database,
    )


def build_table(schema: RecordSchema, name: str) -> Table:
    """Table definition: auto-increment ``id``, one column per field, ``CreatedAt`` timestamp."""
    _check_identifier(name, "table")
    columns: list[Column[Any]] = [
        Column(
            ID_COLUMN,
            BigInteger().with_variant(Integer, "sqlite"),
            primary_key=True,
            autoincrement=True,
        )
    ]
    for spec in schema.fields:
        if spec.kind == "date":
            column_type: Any = Date()
        elif spec.kind == "integer":
            column_type = Integer()
        else:
            column_type = String(spec.length)
        columns.append(Column(spec.name, column_type, nullable=True))
    columns.append(Column(CREATED_COLUMN, TIMESTAMP, server_default=func.current_timestamp()))
    return Table(name, MetaData(), *columns, sqlite_autoincrement=True)


# ---------------------------------------------------------------------------
# Connection handling
# ---------------------------------------------------------------------------


@contextmanager
def _connect(url: str | URL) -> Iterator[Connection]:
    shown = describe_url(url)
    try:
        engine = create_engine(url, poolclass=NullPool)
    except (ArgumentError, NoSuchModuleError, ImportError) as exc:
        raise MirrorConnectionError(
            f"Cannot create database engine for {shown}: {exc}",
            details={"url": shown},
        ) from exc
    try:
        try:
            conn = engine.connect()
        except (OperationalError, InterfaceError, DBAPIError) as exc:
            raise MirrorConnectionError(
                f"Cannot connect to {shown}: {exc.orig or exc}",
                details={"url": shown},
            ) from exc
        with conn:
            yield conn
    finally:
        engine.dispose()


def _execute(url: str | URL, work: Callable[[Connection], T], *, what: str) -> T:
    with _connect(url) as conn:
        try:
            with conn.begin():
                return work(conn)
        except SQLAlchemyError as exc:
            shown = describe_url(url)
            if isinstance(exc, DBAPIError) and exc.connection_invalidated:
                raise ConnectionLostError(
                    f"Connection lost during {what} on {shown}: {exc.orig or exc}",
                    details={"url": shown, "operation": what},
                ) from exc
            raise QueryError(
                f"{what} failed on {shown}: {getattr(exc, 'orig', None) or exc}",
                details={"url": shown, "operation": what},
            ) from exc


def _params(schema: RecordSchema, record: Record) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for spec in schema.fields:
        value = record.values.get(spec.name, spec.default)
        if spec.kind == "date":
            params[spec.name] = parse_date(str(value)) if value != "" else None
        elif spec.kind == "integer":
            params[spec.name] = int(value)
        else:
            params[spec.name] = str(value)
    return params


def _record(schema: RecordSchema, row: Any) -> Record:
    values: dict[str, str | int] = {}
    for spec in schema.fields:
        value = row._mapping[spec.name]
        if spec.kind == "integer":
            values[spec.name] = int(value) if value is not None else 0
        elif isinstance(value, date):
            values[spec.name] = value.isoformat()
        else:
            values[spec.name] = "" if value is None else str(value)
    return Record(values=values)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def probe(url: str | URL) -> None:
    """Minimal connectivity check (``SELECT 1``)."""
    _execute(url, lambda conn: conn.execute(text("SELECT 1")).scalar(), what="probe")


def ensure_schema(config: MirrorConfig, schema: RecordSchema) -> None:
    table = build_table(schema, config.table)
    _execute(config.url, lambda conn: table.create(conn, checkfirst=True), what="create table")
    log.info("mirror.schema_ready", url=describe_url(config.url), table=config.table)


def insert_record(config: MirrorConfig, schema: RecordSchema, record: Record) -> int:
    """Insert one row and return the database-assigned identifier."""
    table = build_table(schema, config.table)

    def work(conn: Connection) -> int:
        result = conn.execute(insert(table).values(**_params(schema, record)))
        return int(result.inserted_primary_key[0])

    new_id = _execute(config.url, work, what="insert")
    log.info("mirror.inserted", table=config.table, id=new_id)
    return new_id


def update_record(config: MirrorConfig, schema: RecordSchema, record_id: int, record: Record) -> bool:
    """Overwrite the fields of row ``record_id``. False when no such row exists."""
    table = build_table(schema, config.table)
    stmt = update(table).where(table.c[ID_COLUMN] == record_id).values(**_params(schema, record))
    changed = _execute(config.url, lambda conn: conn.execute(stmt).rowcount, what="update")
    log.info("mirror.updated", table=config.table, id=record_id, found=changed > 0)
    return changed > 0


def delete_record(config: MirrorConfig, schema: RecordSchema, record_id: int) -> bool:
    table = build_table(schema, config.table)
    stmt = delete(table).where(table.c[ID_COLUMN] == record_id)
    removed = _execute(config.url, lambda conn: conn.execute(stmt).rowcount, what="delete")
    log.info("mirror.deleted", table=config.table, id=record_id, found=removed > 0)
    return removed > 0


def read_all(config: MirrorConfig, schema: RecordSchema) -> list[tuple[int, Record]]:
    """Every mirror row as ``(id, record)``, ordered by id."""
    table = build_table(schema, config.table)
    columns = [table.c[ID_COLUMN], *(table.c[name] for name in schema.names)]
    stmt = select(*columns).order_by(table.c[ID_COLUMN])

    def work(conn: Connection) -> list[tuple[int, Record]]:
        return [(int(row._mapping[ID_COLUMN]), _record(schema, row)) for row in conn.execute(stmt)]

    return _execute(config.url, work, what="read")


def count_rows(config: MirrorConfig, schema: RecordSchema) -> int:
    table = build_table(schema, config.table)
    stmt = select(func.count()).select_from(table)
    return int(_execute(config.url, lambda conn: conn.execute(stmt).scalar() or 0, what="count"))


def restore(config: MirrorConfig, schema: RecordSchema, rows: Sequence[tuple[int, Record]]) -> int:
    """Replace the whole table with ``rows``, keeping their ids. Returns rows written."""
    table = build_table(schema, config.table)

    def work(conn: Connection) -> int:
        conn.execute(delete(table))
        if rows:
            conn.execute(
                insert(table),
                [{ID_COLUMN: record_id, **_params(schema, record)} for record_id, record in rows],
            )
        return len(rows)

    written = _execute(config.url, work, what="restore")
    log.info("mirror.restored", table=config.table, rows=written)
    return written


def create_database_if_missing(profile: ConnectionProfile, database: str) -> None:
    """``CREATE DATABASE IF NOT EXISTS`` with utf8mb4 on MySQL-family servers; no-op elsewhere."""
    _check_identifier(database, "database")
    url = profile_url(profile.model_copy(update={"database": None}))
    if not url.get_backend_name().startswith(("mysql", "mariadb")):
        return
    stmt = text(
        f"CREATE DATABASE IF NOT EXISTS `{database}` "
        "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
    )
    _execute(url, lambda conn: conn.execute(stmt), what="create database")
    log.info("mirror.database_ready", server=profile.label(), database=database)
