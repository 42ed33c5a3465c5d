"""Discover base tables and column metadata from the live catalog."""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import CompileError, SQLAlchemyError

from .errors import SchemaReadError
from .logger import get_logger
from .models import ColumnDescriptor, TableDescriptor

log = get_logger(__name__)


class SchemaIntrospector:
    """Read table and column descriptors for the primary schema.

    Only base tables are returned: the inspector's table listing already
    leaves out views and the engine's own system tables. Any catalog error is
    raised as :class:`SchemaReadError` since a partial schema is never usable.
    """

    def __init__(
        self,
        bind: Engine | Connection,
        exclude_tables: Iterable[str] = (),
        schema: Optional[str] = None,
    ):
        self.bind = bind
        self.exclude_tables = set(exclude_tables)
        self.schema = schema

    @property
    def dialect(self):  # type: ignore[no-untyped-def]
        return self.bind.dialect

    def table_names(self) -> List[str]:
        """Eligible base table names, ordered by name."""
        try:
            inspector = inspect(self.bind)
            names = inspector.get_table_names(schema=self.schema)
        except SQLAlchemyError as exc:
            raise SchemaReadError(f"could not list tables: {exc}") from exc
        return sorted(n for n in names if n not in self.exclude_tables)

    def describe(self) -> List[TableDescriptor]:
        """Return descriptors for every eligible table, ordered by name."""
        names = self.table_names()
        try:
            inspector = inspect(self.bind)
            tables = [self._describe_table(inspector, name) for name in names]
        except SQLAlchemyError as exc:
            raise SchemaReadError(f"could not read schema catalog: {exc}") from exc

        log.info("Introspected %d tables", len(tables))
        return tables

    def _describe_table(self, inspector, name: str) -> TableDescriptor:  # type: ignore[no-untyped-def]
        columns = tuple(
            ColumnDescriptor(
                name=col["name"],
                declared_type=self._render_type(col["type"]),
                nullable=bool(col.get("nullable", True)),
                default=_normalize_default(col.get("default")),
            )
            for col in inspector.get_columns(name, schema=self.schema)
        )
        pk = inspector.get_pk_constraint(name, schema=self.schema) or {}
        primary_key = tuple(pk.get("constrained_columns") or ())
        return TableDescriptor(name=name, columns=columns, primary_key=primary_key)

    def _render_type(self, column_type) -> str:  # type: ignore[no-untyped-def]
        try:
            return column_type.compile(dialect=self.dialect)
        except CompileError:
            # untyped SQLite columns reflect as NullType
            return "TEXT"


def _normalize_default(default: object) -> Optional[str]:
    if default is None:
        return None
    text = str(default).strip()
    return text or None
