"""Render tables as a replayable SQL script.

A dump is best effort: each table is read inside its own savepoint and a table
that cannot be read is emitted as a commented-out error block, so the script
stays complete and replayable for every table that did succeed.
"""

from __future__ import annotations

import json
import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .database import database_identity
from .errors import TableDumpError
from .introspect import SchemaIntrospector
from .logger import get_logger
from .models import ColumnDescriptor, DatabaseDump, TableDescriptor, TableSnapshot

log = get_logger(__name__)

DUMP_TITLE = "-- Booster Club Database Backup"
TABLE_MARKER = "-- Table: "
ERROR_MARKER = "-- ERROR: "
STABLE_ORDER_COLUMN = "created_at"
FETCH_BATCH_SIZE = 500

_SERIAL_TYPES = {
    "SMALLINT": "SMALLSERIAL",
    "INTEGER": "SERIAL",
    "BIGINT": "BIGSERIAL",
}


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_text(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_value(value: Any, dialect: str = "postgresql", declared_type: str = "") -> str:
    """Render one Python value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return quote_text("NaN")
        if math.isinf(value):
            return quote_text("Infinity" if value > 0 else "-Infinity")
        return repr(value)
    if isinstance(value, Decimal):
        return str(value) if value.is_finite() else quote_text(str(value))
    if isinstance(value, str):
        return quote_text(value)
    if isinstance(value, datetime):
        return quote_text(value.isoformat(sep=" "))
    if isinstance(value, (date, time)):
        return quote_text(value.isoformat())
    if isinstance(value, timedelta):
        return quote_text(f"{value.total_seconds():g} seconds")
    if isinstance(value, uuid.UUID):
        return quote_text(str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value).hex()
        if dialect == "postgresql":
            return f"'\\x{raw}'::bytea"
        return f"X'{raw}'"
    if isinstance(value, (list, tuple)) and dialect == "postgresql" and declared_type.endswith("[]"):
        if not value:
            return f"'{{}}'::{declared_type}"
        items = ", ".join(render_value(v, dialect) for v in value)
        return f"ARRAY[{items}]::{declared_type}"
    if isinstance(value, (dict, list, tuple)):
        return quote_text(json.dumps(value, default=str, separators=(",", ":")))
    return quote_text(str(value))


def _serial_type(column: ColumnDescriptor, dialect: str) -> Optional[str]:
    if dialect != "postgresql" or not column.default:
        return None
    if not column.default.lower().startswith("nextval("):
        return None
    return _SERIAL_TYPES.get(column.declared_type.upper())


def render_column(column: ColumnDescriptor, dialect: str) -> str:
    serial = _serial_type(column, dialect)
    definition = f"{quote_identifier(column.name)} {serial or column.declared_type}"
    if not column.nullable:
        definition += " NOT NULL"
    if column.default and not serial:
        definition += f" DEFAULT ({column.default})"
    return definition


def render_drop(table: TableDescriptor, dialect: str) -> str:
    cascade = " CASCADE" if dialect == "postgresql" else ""
    return f"DROP TABLE IF EXISTS {quote_identifier(table.name)}{cascade};"


def render_create(table: TableDescriptor, dialect: str) -> str:
    parts = [render_column(c, dialect) for c in table.columns]
    if table.primary_key:
        pk = ", ".join(quote_identifier(c) for c in table.primary_key)
        parts.append(f"PRIMARY KEY ({pk})")
    body = ",\n  ".join(parts)
    return f"CREATE TABLE {quote_identifier(table.name)} (\n  {body}\n);"


def render_insert(table: TableDescriptor, row: Sequence[Any], dialect: str) -> str:
    columns = ", ".join(quote_identifier(c.name) for c in table.columns)
    values = ", ".join(
        render_value(v, dialect, c.declared_type) for c, v in zip(table.columns, row)
    )
    return f"INSERT INTO {quote_identifier(table.name)} ({columns}) VALUES ({values});"


def render_sequence_resets(table: TableDescriptor, dialect: str) -> List[str]:
    """Re-sync SERIAL sequences after explicit ids were inserted."""
    statements = []
    for column in table.columns:
        if not _serial_type(column, dialect):
            continue
        col = quote_identifier(column.name)
        statements.append(
            f"SELECT setval(pg_get_serial_sequence({quote_text(quote_identifier(table.name))}, "
            f"{quote_text(column.name)}), COALESCE(MAX({col}), 1), MAX({col}) IS NOT NULL) "
            f"FROM {quote_identifier(table.name)};"
        )
    return statements


def order_columns(table: TableDescriptor) -> List[str]:
    """Stable key for diff-friendly dumps: creation timestamp, then primary key."""
    order: List[str] = []
    if STABLE_ORDER_COLUMN in table.column_names:
        order.append(STABLE_ORDER_COLUMN)
    order.extend(c for c in table.primary_key if c not in order)
    return order


def _commented(block: str) -> List[str]:
    return [f"-- {line}" if line else "--" for line in block.splitlines()]


def render_snapshot(table: TableDescriptor, snapshot: TableSnapshot, dialect: str) -> str:
    """Render one table's self-contained unit of the dump."""
    lines = [f"{TABLE_MARKER}{table.name}"]
    ddl = render_drop(table, dialect) + "\n" + render_create(table, dialect)

    if snapshot.failed:
        for i, message_line in enumerate((snapshot.error or "").splitlines() or [""]):
            prefix = ERROR_MARKER if i == 0 else "--   "
            lines.append(f"{prefix}{message_line}")
        lines.extend(_commented(ddl))
        return "\n".join(lines) + "\n\n"

    lines.append(ddl)
    lines.append("")
    if snapshot.payload:
        lines.append(f"-- Data for {table.name} ({snapshot.row_count} rows)")
        lines.extend(snapshot.payload)
        lines.append("")
    return "\n".join(lines) + "\n"


class DumpSerializer:
    """Produce a full database dump through a dedicated connection."""

    def __init__(
        self,
        engine: Engine,
        introspector: Optional[SchemaIntrospector] = None,
        exclude_tables: Iterable[str] = (),
        schema: Optional[str] = None,
    ):
        self.engine = engine
        self.introspector = introspector or SchemaIntrospector(engine, exclude_tables=exclude_tables, schema=schema)
        self.dialect = engine.dialect.name

    def dump(self, checkpoint: Optional[Callable[[], None]] = None) -> DatabaseDump:
        """Dump every table in introspection order.

        ``checkpoint`` is called before each table; it raises to abandon the
        dump when the caller's deadline has passed.
        """
        tables = self.introspector.describe()
        generated_at = datetime.now(timezone.utc)
        snapshots: List[TableSnapshot] = []
        units: List[str] = []

        with self.engine.connect() as conn:
            trans = conn.begin()
            try:
                for table in tables:
                    if checkpoint:
                        checkpoint()
                    snapshot = self.snapshot_table(conn, table)
                    snapshots.append(snapshot)
                    units.append(render_snapshot(table, snapshot, self.dialect))
            finally:
                trans.rollback()

        header = self._render_header(generated_at, [t.name for t in tables])
        dump = DatabaseDump(text=header + "".join(units), snapshots=snapshots, generated_at=generated_at)
        log.info(
            "Dumped %d tables (%d rows, %d failed)",
            len(snapshots), dump.total_rows, len(dump.failed_tables),
        )
        return dump

    def snapshot_table(self, conn: Connection, table: TableDescriptor) -> TableSnapshot:
        snapshot = TableSnapshot(table_name=table.name, column_definitions=table.columns)
        try:
            with conn.begin_nested():
                for row in self._fetch_rows(conn, table):
                    snapshot.payload.append(render_insert(table, row, self.dialect))
        except SQLAlchemyError as exc:
            error = TableDumpError(table.name, str(exc).strip())
            log.error("Table %s could not be dumped: %s", table.name, error.reason)
            return TableSnapshot(
                table_name=table.name,
                column_definitions=table.columns,
                error=str(error),
            )

        snapshot.payload.extend(render_sequence_resets(table, self.dialect))
        snapshot.row_count = sum(1 for s in snapshot.payload if s.startswith("INSERT INTO"))
        log.debug("Table %s: %d rows", table.name, snapshot.row_count)
        return snapshot

    def _fetch_rows(self, conn: Connection, table: TableDescriptor) -> Iterable[Sequence[Any]]:
        columns = ", ".join(quote_identifier(c) for c in table.column_names)
        sql = f"SELECT {columns} FROM {quote_identifier(table.name)}"
        order = order_columns(table)
        if order:
            sql += " ORDER BY " + ", ".join(quote_identifier(c) for c in order)
        return conn.execute(text(sql).execution_options(yield_per=FETCH_BATCH_SIZE))

    def _render_header(self, generated_at: datetime, table_names: List[str]) -> str:
        lines = [
            DUMP_TITLE,
            f"-- Created: {generated_at.isoformat()}",
            f"-- Database: {database_identity(self.engine)}",
            f"-- Tables: {', '.join(table_names)}",
            "",
            "",
        ]
        return "\n".join(lines)
