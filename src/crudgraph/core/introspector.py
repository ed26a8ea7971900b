"""
Schema introspector - reads table/view metadata from the live database.

Column lists, primary keys, foreign keys and unique constraints are read
through SQLAlchemy's runtime inspector, so every dialect SQLAlchemy ships
with is supported. The result is both a normalized ColumnMeta sequence and
a Core Table used later for statement construction.

Usage:
    introspector = SchemaIntrospector(engine)
    discovered = await introspector.discover("products", EntityKind.TABLE)
    discovered.primary_key  # ("product_id",)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import Column, MetaData, Table, inspect
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql import sqltypes

from .defs import AssociationHint, ColumnMeta, ColumnType, EntityKind
from .errors import SchemaNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredSchema:
    """Everything the catalog tells us about one table or view."""
    table: Table
    columns: tuple[ColumnMeta, ...]
    primary_key: tuple[str, ...] = ()  # constraint order, not column order
    hints: tuple[AssociationHint, ...] = ()
    unique_constraints: dict[str, tuple[str, ...]] = field(default_factory=dict)


def get_column_type(sql_type: Any) -> tuple[ColumnType, Optional[tuple[str, ...]]]:
    """
    Map a SQLAlchemy type to a semantic column type.

    Returns:
        Tuple of (column_type, enum_values or None)
    """
    # Enum subclasses String, check it first
    if isinstance(sql_type, sqltypes.Enum):
        return ColumnType.ENUM, tuple(sql_type.enums)
    if isinstance(sql_type, sqltypes.Boolean):
        return ColumnType.BOOLEAN, None
    if isinstance(sql_type, sqltypes.Integer):
        return ColumnType.INTEGER, None
    if isinstance(sql_type, sqltypes.Numeric):
        return ColumnType.DECIMAL, None
    if isinstance(sql_type, (sqltypes.DateTime, sqltypes.Date, sqltypes.Time)):
        return ColumnType.DATETIME, None
    if isinstance(sql_type, sqltypes.String):
        return ColumnType.STRING, None

    # Dialect-specific types without a generic base (e.g. MySQL TINYINT(1))
    type_name = sql_type.__class__.__name__.lower()
    if "int" in type_name:
        return ColumnType.INTEGER, None
    if type_name in ("money", "real", "double"):
        return ColumnType.DECIMAL, None
    return ColumnType.STRING, None


class SchemaIntrospector:
    """Discovers columns, keys and foreign keys for registered entities."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def discover(
        self,
        name: str,
        kind: EntityKind,
        schema: Optional[str] = None,
    ) -> DiscoveredSchema:
        """
        Discover a table or view.

        Raises:
            SchemaNotFoundError: the relation does not exist
        """
        if kind not in (EntityKind.TABLE, EntityKind.VIEW):
            raise ValueError(f"Cannot introspect entity of kind '{kind.value}'")

        async with self.engine.connect() as conn:
            discovered = await conn.run_sync(self._discover_sync, name, kind, schema)

        logger.debug(
            f"Discovered {kind.value} '{name}': "
            f"{len(discovered.columns)} columns, primary key {discovered.primary_key}"
        )
        return discovered

    async def discover_auxiliary(self, name: str, schema: Optional[str] = None) -> DiscoveredSchema:
        """Discover a table that backs an association but is not exposed itself."""
        return await self.discover(name, EntityKind.TABLE, schema)

    def _discover_sync(
        self,
        sync_conn: Connection,
        name: str,
        kind: EntityKind,
        schema: Optional[str],
    ) -> DiscoveredSchema:
        insp = inspect(sync_conn)

        if kind == EntityKind.VIEW:
            exists = name in insp.get_view_names(schema=schema)
        else:
            exists = name in insp.get_table_names(schema=schema)
        if not exists:
            raise SchemaNotFoundError(name, kind.value, schema)

        raw_columns = insp.get_columns(name, schema=schema)

        pk_columns: list[str] = []
        unique_constraints: dict[str, tuple[str, ...]] = {}
        hints: list[AssociationHint] = []

        if kind == EntityKind.TABLE:
            pk_columns = list(insp.get_pk_constraint(name, schema=schema).get("constrained_columns") or [])

            for uc in insp.get_unique_constraints(name, schema=schema):
                cols = tuple(uc.get("column_names") or ())
                if cols:
                    unique_constraints[uc.get("name") or "_".join(cols)] = cols
            for index in insp.get_indexes(name, schema=schema):
                cols = tuple(c for c in (index.get("column_names") or ()) if c)
                if index.get("unique") and cols:
                    unique_constraints.setdefault(index.get("name") or "_".join(cols), cols)

            for fk in insp.get_foreign_keys(name, schema=schema):
                hints.append(AssociationHint(
                    columns=tuple(fk.get("constrained_columns") or ()),
                    referred_table=fk.get("referred_table", ""),
                    referred_columns=tuple(fk.get("referred_columns") or ()),
                ))

        single_unique = {cols[0] for cols in unique_constraints.values() if len(cols) == 1}

        columns: list[ColumnMeta] = []
        table_columns: list[Column] = []
        for info in raw_columns:
            col_name = info["name"]
            sql_type = info["type"]
            col_type, enum_values = get_column_type(sql_type)
            is_pk = col_name in pk_columns
            default = info.get("default")
            autoincrement = self._is_autoincrement(info, col_type, is_pk, len(pk_columns))

            columns.append(ColumnMeta(
                name=col_name,
                type=col_type,
                # SQLite reports non-integer primary keys as nullable
                nullable=bool(info.get("nullable", True)) and not is_pk,
                default=str(default) if default is not None else None,
                primary_key=is_pk,
                autoincrement=autoincrement,
                unique=(is_pk and len(pk_columns) == 1) or col_name in single_unique,
                enum_values=enum_values,
                max_length=getattr(sql_type, "length", None) if col_type == ColumnType.STRING else None,
            ))
            table_columns.append(Column(
                col_name,
                sql_type,
                primary_key=is_pk,
                nullable=not is_pk and bool(info.get("nullable", True)),
                autoincrement=autoincrement if is_pk else False,
            ))

        table = Table(name, MetaData(), *table_columns, schema=schema)

        return DiscoveredSchema(
            table=table,
            columns=tuple(columns),
            primary_key=tuple(pk_columns),
            hints=tuple(hints),
            unique_constraints=unique_constraints,
        )

    def _is_autoincrement(
        self,
        info: dict[str, Any],
        col_type: ColumnType,
        is_pk: bool,
        pk_size: int,
    ) -> bool:
        """Whether the database assigns this column's value on insert."""
        if not is_pk or pk_size != 1 or col_type != ColumnType.INTEGER:
            return False

        flag = info.get("autoincrement", "auto")
        if flag == "auto":
            # INTEGER PRIMARY KEY aliases the rowid in SQLite
            if self.dialect_name == "sqlite":
                return True
            return info.get("default") is not None or bool(info.get("identity"))
        return bool(flag)
