"""
Query/command executor.

Translates one operation on one registered entity into SQLAlchemy Core
statements and runs them on the async engine:

- Table: list / get / create / update / delete plus association operations
- View: list only
- Query: declared parameterized SQL
- Procedure: dialect-specific stored routine call

Every statement is bounded by the configured query timeout. Driver errors
never leave this module: they are classified into ConflictViolationError,
ValidationError or ExecutorError.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Table, and_, delete, func, insert, literal, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from crudgraph.core.defs import AssociationType, ColumnMeta, ColumnType, EntityKind
from crudgraph.core.dialect import Dialect, get_dialect
from crudgraph.core.errors import (
    ConflictViolationError,
    CrudGraphError,
    ExecutorError,
    FieldViolation,
    MissingProcedureNameError,
    NotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from crudgraph.core.query_types import ListParams, NormalizedFilter, NormalizedOrder, PaginationInfo
from crudgraph.core.registry import (
    BIND_PARAM_PATTERN,
    EntityRegistry,
    RegisteredEntity,
    ResolvedAssociation,
)
from crudgraph.core.utils import coerce_value

from .context import Principal

logger = logging.getLogger(__name__)

# Column label carrying the owner key in batched belongsToMany includes
OWNER_KEY_LABEL = "_crudgraph_owner_key"


class Operation(str, enum.Enum):
    LIST = "list"
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LIST_ASSOCIATED = "listAssociated"
    CREATE_ASSOCIATED = "createAssociated"
    REPLACE_ASSOCIATED = "replaceAssociated"
    REMOVE_ASSOCIATED = "removeAssociated"
    RUN_QUERY = "runQuery"
    CALL_PROCEDURE = "callProcedure"


TABLE_OPERATIONS = {
    Operation.LIST,
    Operation.GET,
    Operation.CREATE,
    Operation.UPDATE,
    Operation.DELETE,
    Operation.LIST_ASSOCIATED,
    Operation.CREATE_ASSOCIATED,
    Operation.REPLACE_ASSOCIATED,
    Operation.REMOVE_ASSOCIATED,
}

ALLOWED_OPERATIONS = {
    EntityKind.TABLE: TABLE_OPERATIONS,
    EntityKind.VIEW: {Operation.LIST},
    EntityKind.QUERY: {Operation.RUN_QUERY},
    EntityKind.PROCEDURE: {Operation.CALL_PROCEDURE},
}


@dataclass
class OperationParams:
    """
    Inputs of one operation. Which fields are read depends on the operation:

    - key: primary-key tuple, in primary-key column order (item operations)
    - data: write payload
    - query: list parameters (list / listAssociated)
    - include: include tree for get
    - association: association alias (association operations)
    - target_key: target primary key (removeAssociated)
    - arguments: named parameters (runQuery / callProcedure)
    """
    key: Optional[tuple] = None
    data: Any = None
    query: Optional[ListParams] = None
    include: dict[str, Any] = field(default_factory=dict)
    association: Optional[str] = None
    target_key: Any = None
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    data: Any = None
    meta: Optional[PaginationInfo] = None


class QueryExecutor:
    """
    Executes operations against the database.

    Usage:
        executor = QueryExecutor(registry, engine, query_timeout=30)
        result = await executor.execute(
            registry.resolve("posts"),
            Operation.LIST,
            OperationParams(query=ListParams(filters=[...])),
        )
    """

    def __init__(
        self,
        registry: EntityRegistry,
        engine: AsyncEngine,
        dialect: Optional[Dialect] = None,
        query_timeout: Optional[float] = None,
        default_limit: int = 20,
        max_limit: int = 100,
    ):
        self.registry = registry
        self.engine = engine
        self.dialect = dialect or get_dialect(engine.dialect.name)
        self.query_timeout = query_timeout
        self.default_limit = default_limit
        self.max_limit = max_limit

        self._handlers = {
            Operation.LIST: self._list_op,
            Operation.GET: self._get_op,
            Operation.CREATE: self._create_op,
            Operation.UPDATE: self._update_op,
            Operation.DELETE: self._delete_op,
            Operation.LIST_ASSOCIATED: self._list_associated_op,
            Operation.CREATE_ASSOCIATED: self._create_associated_op,
            Operation.REPLACE_ASSOCIATED: self._replace_associated_op,
            Operation.REMOVE_ASSOCIATED: self._remove_associated_op,
            Operation.RUN_QUERY: self._run_query_op,
            Operation.CALL_PROCEDURE: self._call_procedure_op,
        }

    async def execute(
        self,
        entity: RegisteredEntity,
        operation: Operation,
        params: Optional[OperationParams] = None,
        principal: Optional[Principal] = None,
    ) -> ExecutionResult:
        """
        Execute one operation.

        Raises:
            CrudGraphError subclasses only; driver errors are classified
        """
        operation = Operation(operation)
        params = params or OperationParams()

        if operation not in ALLOWED_OPERATIONS[entity.kind]:
            raise UnsupportedOperationError(entity.name, operation.value)

        logger.debug(f"Executing {operation.value} on '{entity.name}'")

        try:
            return await self._handlers[operation](entity, params)
        except CrudGraphError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"{operation.value} on '{entity.name}' exceeded {self.query_timeout}s")
            raise ExecutorError("Query timed out", f"exceeded {self.query_timeout} seconds") from None
        except IntegrityError as e:
            raise self._classify_integrity_error(entity, e) from e
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation.value} on '{entity.name}': {e}", exc_info=True)
            raise ExecutorError("Database error", _driver_message(e)) from e

    # =========================================================================
    # Table: CRUD
    # =========================================================================

    async def _list_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        async with self.engine.connect() as conn:
            return await self._list(conn, entity, params.query or ListParams())

    async def _get_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        key = self._coerce_key(entity, params.key)
        async with self.engine.connect() as conn:
            row = await self._fetch_one(conn, entity, key)
            if params.include:
                await self._load_includes(conn, entity, [row], params.include)
        return ExecutionResult(data=row)

    async def _create_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        values = self._coerce_payload(entity, params.data)
        async with self.engine.begin() as conn:
            row = await self._insert(conn, entity, values)
        return ExecutionResult(data=row)

    async def _update_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        key = self._coerce_key(entity, params.key)
        values = self._coerce_payload(entity, params.data)
        table = entity.table

        async with self.engine.begin() as conn:
            existing = await self._fetch_one(conn, entity, key)
            if values:
                stmt = update(table).where(self._key_condition(entity, key)).values(**values)
                await self._run(conn, stmt)
            new_key = tuple(values.get(c, existing[c]) for c in entity.primary_key)
            row = await self._fetch_one(conn, entity, new_key)
        return ExecutionResult(data=row)

    async def _delete_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        key = self._coerce_key(entity, params.key)
        async with self.engine.begin() as conn:
            existing = await self._fetch_one(conn, entity, key)
            await self._run(conn, delete(entity.table).where(self._key_condition(entity, key)))
        return ExecutionResult(data=existing)

    # =========================================================================
    # Table: associations
    # =========================================================================

    async def _list_associated_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        assoc = self._association(entity, params.association)
        target = self.registry.resolve(assoc.target)
        key = self._coerce_key(entity, params.key)
        query = params.query or ListParams()

        async with self.engine.connect() as conn:
            source = await self._fetch_one(conn, entity, key)
            source_value = source[assoc.source_key]

            if assoc.type.single:
                if source_value is None:
                    return ExecutionResult(data=None)
                column = target.table.c[assoc.target_key]
                rows = await self._select_rows(conn, target, column == source_value, limit=1)
                if rows and query.include:
                    await self._load_includes(conn, target, rows, query.include)
                return ExecutionResult(data=rows[0] if rows else None)

            return await self._list(conn, target, query, extra=[self._membership(assoc, target, source_value)])

    async def _create_associated_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        assoc = self._association(entity, params.association)
        target = self.registry.resolve(assoc.target)
        key = self._coerce_key(entity, params.key)
        data = params.data

        async with self.engine.begin() as conn:
            source = await self._fetch_one(conn, entity, key)
            source_value = source[assoc.source_key]

            if assoc.type in (AssociationType.HAS_ONE, AssociationType.HAS_MANY):
                values = self._coerce_payload(target, {**(data or {}), assoc.foreign_key: source_value})
                return ExecutionResult(data=await self._insert(conn, target, values))

            if assoc.type == AssociationType.BELONGS_TO:
                created = await self._insert(conn, target, self._coerce_payload(target, data))
                stmt = (
                    update(entity.table)
                    .where(self._key_condition(entity, key))
                    .values({assoc.foreign_key: created[assoc.target_key]})
                )
                await self._run(conn, stmt)
                return ExecutionResult(data=created)

            # belongsToMany: {"ids": [...]} links existing records, anything else creates one
            if isinstance(data, dict) and set(data) == {"ids"}:
                target_values = await self._existing_targets(conn, assoc, target, data["ids"])
                linked = await self._linked_values(conn, assoc, source_value)
                new_links = [v for v in target_values if v not in linked]
                await self._link(conn, assoc, target, source_value, new_links)
                rows = await self._select_rows(
                    conn, target, target.table.c[assoc.target_key].in_(target_values)
                )
                return ExecutionResult(data=rows)

            created = await self._insert(conn, target, self._coerce_payload(target, data))
            await self._link(conn, assoc, target, source_value, [created[assoc.target_key]])
            return ExecutionResult(data=created)

    async def _replace_associated_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        assoc = self._association(entity, params.association)
        if assoc.type != AssociationType.BELONGS_TO_MANY:
            raise UnsupportedOperationError(entity.name, f"replace {assoc.alias}")
        target = self.registry.resolve(assoc.target)
        key = self._coerce_key(entity, params.key)
        data = params.data
        if not isinstance(data, dict) or "ids" not in data:
            raise ValidationError([FieldViolation("ids", "ids is required")])

        through = assoc.through_table
        async with self.engine.begin() as conn:
            source = await self._fetch_one(conn, entity, key)
            source_value = source[assoc.source_key]
            # Raises before any link is touched; the transaction rolls back either way
            target_values = await self._existing_targets(conn, assoc, target, data["ids"])

            await self._run(conn, delete(through).where(through.c[assoc.foreign_key] == source_value))
            await self._link(conn, assoc, target, source_value, target_values)

            rows = await self._select_rows(
                conn, target, target.table.c[assoc.target_key].in_(target_values)
            ) if target_values else []

        logger.info(
            f"Replaced {entity.name}.{assoc.alias} links of {key}: {len(target_values)} linked"
        )
        return ExecutionResult(data=rows)

    async def _remove_associated_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        assoc = self._association(entity, params.association)
        if assoc.type != AssociationType.BELONGS_TO_MANY:
            raise UnsupportedOperationError(entity.name, f"remove {assoc.alias}")
        target = self.registry.resolve(assoc.target)
        key = self._coerce_key(entity, params.key)
        target_value = self._coerce_column(target, assoc.target_key, params.target_key, field_name="target_id")

        through = assoc.through_table
        async with self.engine.begin() as conn:
            source = await self._fetch_one(conn, entity, key)
            stmt = delete(through).where(
                through.c[assoc.foreign_key] == source[assoc.source_key],
                through.c[assoc.other_key] == target_value,
            )
            result = await self._run(conn, stmt)
            if result.rowcount == 0:
                raise NotFoundError(
                    target.name,
                    message=f"{target.name} {target_value} is not linked to {entity.name} {key}",
                )
        return ExecutionResult(data=None)

    def _association(self, entity: RegisteredEntity, alias: Optional[str]) -> ResolvedAssociation:
        assoc = entity.association(alias) if alias else None
        if assoc is None:
            raise NotFoundError(entity.name, message=f"'{entity.name}' has no association '{alias}'")
        return assoc

    def _membership(self, assoc: ResolvedAssociation, target: RegisteredEntity, source_value: Any):
        """Condition selecting the target rows associated with one source value."""
        if assoc.type == AssociationType.BELONGS_TO_MANY:
            through = assoc.through_table
            linked = select(through.c[assoc.other_key]).where(through.c[assoc.foreign_key] == source_value)
            return target.table.c[assoc.target_key].in_(linked)
        return target.table.c[assoc.target_key] == source_value

    async def _existing_targets(
        self,
        conn: AsyncConnection,
        assoc: ResolvedAssociation,
        target: RegisteredEntity,
        ids: Any,
    ) -> list:
        """Coerce target ids and check they all exist."""
        if not isinstance(ids, list):
            raise ValidationError([FieldViolation("ids", "ids must be a list")])

        values = []
        for index, raw in enumerate(ids):
            value = self._coerce_column(target, assoc.target_key, raw, field_name=f"ids[{index}]")
            if value not in values:
                values.append(value)
        if not values:
            return values

        column = target.table.c[assoc.target_key]
        result = await self._run(conn, select(column).where(column.in_(values)))
        found = {row[0] for row in result}
        missing = [v for v in values if v not in found]
        if missing:
            raise NotFoundError(
                target.name,
                message=f"{target.name} record(s) not found: {', '.join(str(m) for m in missing)}",
            )
        return values

    async def _linked_values(self, conn: AsyncConnection, assoc: ResolvedAssociation, source_value: Any) -> set:
        through = assoc.through_table
        stmt = select(through.c[assoc.other_key]).where(through.c[assoc.foreign_key] == source_value)
        result = await self._run(conn, stmt)
        return {row[0] for row in result}

    async def _link(
        self,
        conn: AsyncConnection,
        assoc: ResolvedAssociation,
        target: RegisteredEntity,
        source_value: Any,
        target_values: list,
    ):
        if not target_values:
            return
        rows = [{assoc.foreign_key: source_value, assoc.other_key: v} for v in target_values]
        try:
            await self._run(conn, insert(assoc.through_table), rows)
        except IntegrityError as e:
            raise self._classify_integrity_error(target, e) from e

    # =========================================================================
    # Query / Procedure
    # =========================================================================

    async def _run_query_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        sql = entity.descriptor.sql
        arguments = self._bind_arguments(entity, params.arguments)
        used = set(BIND_PARAM_PATTERN.findall(sql))
        arguments = {k: v for k, v in arguments.items() if k in used}
        return await self._run_statement(text(sql), arguments)

    async def _call_procedure_op(self, entity: RegisteredEntity, params: OperationParams) -> ExecutionResult:
        descriptor = entity.descriptor
        if not descriptor.procedure_name:
            raise MissingProcedureNameError(entity.name)

        arguments = self._bind_arguments(entity, params.arguments)
        try:
            sql = self.dialect.procedure_call(
                descriptor.procedure_name, [p.name for p in descriptor.parameters]
            )
        except ValueError as e:
            raise UnsupportedOperationError(entity.name, Operation.CALL_PROCEDURE.value) from e
        return await self._run_statement(text(sql), arguments)

    async def _run_statement(self, stmt, arguments: dict[str, Any]) -> ExecutionResult:
        async with self.engine.begin() as conn:
            result = await self._run(conn, stmt, arguments)
            if result.returns_rows:
                return ExecutionResult(data=[dict(row._mapping) for row in result])
            return ExecutionResult(data={"affected_rows": result.rowcount})

    def _bind_arguments(self, entity: RegisteredEntity, arguments: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Check required parameters, apply defaults and coerce declared types."""
        arguments = arguments or {}
        bound: dict[str, Any] = {}
        violations: list[FieldViolation] = []

        for param in entity.descriptor.parameters:
            value = arguments.get(param.name)
            if value is None or value == "":
                if param.required:
                    violations.append(FieldViolation(param.name, f"{param.name} is required"))
                    continue
                value = param.default
            try:
                bound[param.name] = coerce_value(param.type, value)
            except ValueError as e:
                violations.append(FieldViolation(param.name, f"{param.name} {e}"))

        if violations:
            raise ValidationError(violations, message="Invalid parameters")
        return bound

    # =========================================================================
    # Conflict pre-check
    # =========================================================================

    async def find_conflicts(
        self,
        entity: RegisteredEntity,
        values: dict[str, Any],
        exclude_key: Optional[tuple] = None,
    ) -> list[str]:
        """
        Names of the given fields whose value is already taken.

        exclude_key skips the record being updated.
        """
        table = entity.table
        exclusion = None
        if exclude_key is not None and entity.primary_key:
            exclusion = ~self._key_condition(entity, self._coerce_key(entity, exclude_key))

        conflicts = []
        try:
            async with self.engine.connect() as conn:
                for field_name, value in values.items():
                    stmt = select(literal(1)).select_from(table).where(table.c[field_name] == value)
                    if exclusion is not None:
                        stmt = stmt.where(exclusion)
                    result = await self._run(conn, stmt.limit(1))
                    if result.first() is not None:
                        conflicts.append(field_name)
        except asyncio.TimeoutError:
            raise ExecutorError("Query timed out", f"exceeded {self.query_timeout} seconds") from None
        except SQLAlchemyError as e:
            logger.error(f"Conflict check on '{entity.name}' failed: {e}", exc_info=True)
            raise ExecutorError("Database error", _driver_message(e)) from e
        return conflicts

    # =========================================================================
    # Statement helpers
    # =========================================================================

    async def _run(self, conn: AsyncConnection, stmt, params=None):
        if params is None:
            coro = conn.execute(stmt)
        else:
            coro = conn.execute(stmt, params)
        if self.query_timeout:
            return await asyncio.wait_for(coro, self.query_timeout)
        return await coro

    async def _select_rows(self, conn: AsyncConnection, entity: RegisteredEntity, *conditions, limit=None) -> list[dict]:
        stmt = select(entity.table).where(*conditions)
        if entity.primary_key:
            stmt = stmt.order_by(*(entity.table.c[c] for c in entity.primary_key))
        if limit:
            stmt = stmt.limit(limit)
        result = await self._run(conn, stmt)
        return [dict(row._mapping) for row in result]

    async def _fetch_one(self, conn: AsyncConnection, entity: RegisteredEntity, key: tuple) -> dict:
        rows = await self._select_rows(conn, entity, self._key_condition(entity, key), limit=1)
        if not rows:
            key_dict = dict(zip(entity.primary_key, key))
            raise NotFoundError(
                entity.name,
                key=key_dict,
                message=entity.descriptor.response_messages.get(404),
            )
        return rows[0]

    async def _insert(self, conn: AsyncConnection, entity: RegisteredEntity, values: dict[str, Any]) -> dict:
        # Classified against the entity written to, not the one addressed by the route
        try:
            result = await self._run(conn, insert(entity.table).values(**values))
        except IntegrityError as e:
            raise self._classify_integrity_error(entity, e) from e
        if not entity.primary_key:
            return dict(values)

        inserted = result.inserted_primary_key or ()
        key = []
        for index, column in enumerate(entity.primary_key):
            value = values.get(column)
            if value is None and index < len(inserted):
                value = inserted[index]
            key.append(value)

        if any(v is None for v in key):
            return dict(values)
        return await self._fetch_one(conn, entity, tuple(key))

    def _key_condition(self, entity: RegisteredEntity, key: tuple):
        table = entity.table
        return and_(*(table.c[c] == v for c, v in zip(entity.primary_key, key)))

    def _coerce_key(self, entity: RegisteredEntity, key: Optional[tuple]) -> tuple:
        if not entity.primary_key:
            raise UnsupportedOperationError(entity.name, "access by key")
        if key is None or len(key) != len(entity.primary_key):
            raise ValidationError(
                [FieldViolation("id", f"expected {len(entity.primary_key)} key value(s)")],
                message="Invalid key",
            )
        violations = []
        values = []
        for column_name, raw in zip(entity.primary_key, key):
            try:
                values.append(self._coerce_column(entity, column_name, raw))
            except ValidationError as e:
                violations.extend(e.violations)
        if violations:
            raise ValidationError(violations, message="Invalid key")
        return tuple(values)

    def _coerce_column(self, entity: RegisteredEntity, column_name: str, value: Any, field_name: Optional[str] = None):
        column = entity.column(column_name)
        try:
            return coerce_value(
                column.type,
                value,
                sql_type=entity.table.c[column_name].type,
                enum_values=column.enum_values,
            )
        except ValueError as e:
            name = field_name or column_name
            raise ValidationError([FieldViolation(name, f"{name} {e}")]) from None

    def _coerce_payload(self, entity: RegisteredEntity, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError([FieldViolation("body", "Request body must be a JSON object")])

        values = {}
        violations = []
        for name, value in data.items():
            if entity.column(name) is None:
                violations.append(FieldViolation(name, "Unknown field"))
                continue
            try:
                values[name] = self._coerce_column(entity, name, value)
            except ValidationError as e:
                violations.extend(e.violations)
        if violations:
            raise ValidationError(violations)
        return values

    # =========================================================================
    # Lists
    # =========================================================================

    async def _list(
        self,
        conn: AsyncConnection,
        entity: RegisteredEntity,
        query: ListParams,
        extra: Optional[list] = None,
    ) -> ExecutionResult:
        builder = _SelectBuilder(self, entity)
        for f in query.filters:
            builder.add_filter(f)
        for o in query.order:
            builder.add_order(o)
        builder.raise_for_violations()

        stmt = builder.statement(extra or [])

        # Count total before pagination
        count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
        total = (await self._run(conn, count_stmt)).scalar() or 0

        limit = min(query.limit or self.default_limit, self.max_limit)
        page = max(query.page, 1)
        stmt = stmt.offset((page - 1) * limit).limit(limit)

        result = await self._run(conn, stmt)
        rows = [dict(row._mapping) for row in result]

        if query.include:
            await self._load_includes(conn, entity, rows, query.include)

        meta = PaginationInfo(total=total, page=page, limit=limit, pages=math.ceil(total / limit) if total else 0)
        return ExecutionResult(data=rows, meta=meta)

    async def _load_includes(
        self,
        conn: AsyncConnection,
        entity: RegisteredEntity,
        rows: list[dict],
        tree: dict[str, Any],
    ):
        """Attach included associations to rows, one query per association per level."""
        for alias, subtree in tree.items():
            assoc = entity.association(alias)
            if assoc is None:
                raise ValidationError(
                    [FieldViolation("include", f"'{entity.name}' has no association '{alias}'")],
                    message="Invalid query parameters",
                )
            target = self.registry.resolve(assoc.target)

            owner_values = {row[assoc.source_key] for row in rows if row.get(assoc.source_key) is not None}
            if not owner_values:
                for row in rows:
                    row[alias] = None if assoc.type.single else []
                continue

            grouped: dict[Any, list[dict]] = {}
            if assoc.type == AssociationType.BELONGS_TO_MANY:
                through = assoc.through_table
                target_table = target.table
                stmt = (
                    select(target_table, through.c[assoc.foreign_key].label(OWNER_KEY_LABEL))
                    .select_from(
                        through.join(target_table, through.c[assoc.other_key] == target_table.c[assoc.target_key])
                    )
                    .where(through.c[assoc.foreign_key].in_(owner_values))
                )
                result = await self._run(conn, stmt)
                children = []
                for row in result:
                    child = dict(row._mapping)
                    owner = child.pop(OWNER_KEY_LABEL)
                    grouped.setdefault(owner, []).append(child)
                    children.append(child)
            else:
                column = target.table.c[assoc.target_key]
                children = await self._select_rows(conn, target, column.in_(owner_values))
                for child in children:
                    grouped.setdefault(child[assoc.target_key], []).append(child)

            if subtree and children:
                await self._load_includes(conn, target, children, subtree)

            for row in rows:
                matched = grouped.get(row.get(assoc.source_key), [])
                row[alias] = (matched[0] if matched else None) if assoc.type.single else matched

    # =========================================================================
    # Error classification
    # =========================================================================

    def _classify_integrity_error(self, entity: RegisteredEntity, exc: IntegrityError) -> CrudGraphError:
        message = _driver_message(exc)

        unique = self.dialect.unique_violation(message)
        if unique is not None:
            columns, constraint = unique
            if not columns and constraint:
                columns = list(entity.unique_constraints.get(constraint, ()))
            status_code = entity.descriptor.conflict_status_code
            logger.info(f"Unique violation on '{entity.name}': {columns or constraint}")
            return ConflictViolationError(
                fields=columns,
                status_code=status_code,
                message=entity.descriptor.response_messages.get(status_code),
            )

        column = self.dialect.not_null_violation(message)
        if column:
            return ValidationError([FieldViolation(column, f"{column} is required")])

        lowered = message.lower()
        if "foreign key" in lowered:
            return ValidationError([FieldViolation("reference", "Referenced record does not exist")])
        if "check constraint" in lowered:
            return ValidationError([FieldViolation("check", "Check constraint failed")])

        logger.error(f"Unclassified integrity error on '{entity.name}': {message}")
        return ExecutorError("Integrity constraint violated", message)


def _driver_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class _SelectBuilder:
    """
    Collects filter and sort clauses for one list query.

    Dotted paths ("author.username") address a column of an association:
    belongsTo/hasOne are joined, hasMany/belongsToMany become EXISTS filters.
    """

    def __init__(self, executor: QueryExecutor, entity: RegisteredEntity):
        self.executor = executor
        self.entity = entity
        self.table: Table = entity.table
        self.from_obj = entity.table
        self.joined: dict[str, Any] = {}
        self.conditions: list = []
        self.order: list = []
        self.violations: list[FieldViolation] = []

    def add_filter(self, f: NormalizedFilter):
        path = f.path
        label = f"filter[{f.field}]"

        if len(path) == 1:
            meta = self.entity.column(path[0])
            if meta is None:
                self.violations.append(FieldViolation(label, f"Unknown field '{f.field}'"))
                return
            value = self._coerce(meta, self.table.c[path[0]], f, label)
            if value is not _INVALID:
                self.conditions.append(self._condition(meta, self.table.c[path[0]], f.op, value))
            return

        resolved = self._resolve_association_path(path, label)
        if resolved is None:
            return
        assoc, target, meta = resolved

        if assoc.type.single:
            target_table = self._join(assoc, target)
            column = target_table.c[meta.name]
            value = self._coerce(meta, column, f, label)
            if value is not _INVALID:
                self.conditions.append(self._condition(meta, column, f.op, value))
            return

        target_table = target.table.alias()
        column = target_table.c[meta.name]
        value = self._coerce(meta, column, f, label)
        if value is _INVALID:
            return
        condition = self._condition(meta, column, f.op, value)
        source_column = self.table.c[assoc.source_key]

        if assoc.type == AssociationType.BELONGS_TO_MANY:
            through = assoc.through_table.alias()
            subquery = (
                select(literal(1))
                .select_from(through.join(target_table, through.c[assoc.other_key] == target_table.c[assoc.target_key]))
                .where(through.c[assoc.foreign_key] == source_column, condition)
            )
        else:
            subquery = (
                select(literal(1))
                .select_from(target_table)
                .where(target_table.c[assoc.target_key] == source_column, condition)
            )
        self.conditions.append(subquery.exists())

    def add_order(self, o: NormalizedOrder):
        path = o.path
        label = "sort"

        if len(path) == 1:
            if self.entity.column(path[0]) is None:
                self.violations.append(FieldViolation(label, f"Unknown field '{o.field}'"))
                return
            column = self.table.c[path[0]]
        else:
            resolved = self._resolve_association_path(path, label)
            if resolved is None:
                return
            assoc, target, meta = resolved
            if not assoc.type.single:
                self.violations.append(FieldViolation(
                    label, f"cannot sort by '{o.field}': '{assoc.alias}' is a {assoc.type.value} association"
                ))
                return
            column = self._join(assoc, target).c[meta.name]

        self.order.append(column.desc() if o.dir == "desc" else column.asc())

    def raise_for_violations(self):
        if self.violations:
            raise ValidationError(self.violations, message="Invalid query parameters")

    def statement(self, extra: list):
        stmt = select(*self.table.c).select_from(self.from_obj).where(*self.conditions, *extra)
        # Primary key last so pagination is deterministic
        order = list(self.order)
        order.extend(self.table.c[c].asc() for c in self.entity.primary_key)
        if order:
            stmt = stmt.order_by(*order)
        return stmt

    def _resolve_association_path(self, path: list[str], label: str):
        if len(path) != 2:
            self.violations.append(FieldViolation(
                label, f"'{'.'.join(path)}': only one association level is supported"
            ))
            return None
        alias, column_name = path
        assoc = self.entity.association(alias)
        if assoc is None:
            self.violations.append(FieldViolation(label, f"'{self.entity.name}' has no association '{alias}'"))
            return None
        target = self.executor.registry.resolve(assoc.target)
        meta = target.column(column_name)
        if meta is None:
            self.violations.append(FieldViolation(label, f"Unknown field '{column_name}' on '{target.name}'"))
            return None
        return assoc, target, meta

    def _join(self, assoc: ResolvedAssociation, target: RegisteredEntity):
        if assoc.alias not in self.joined:
            target_table = target.table.alias(f"{assoc.alias}_join")
            if assoc.type == AssociationType.BELONGS_TO:
                onclause = self.table.c[assoc.source_key] == target_table.c[assoc.target_key]
            else:
                onclause = target_table.c[assoc.target_key] == self.table.c[assoc.source_key]
            self.from_obj = self.from_obj.outerjoin(target_table, onclause)
            self.joined[assoc.alias] = target_table
        return self.joined[assoc.alias]

    def _coerce(self, meta: ColumnMeta, column, f: NormalizedFilter, label: str):
        if f.op == "isnull":
            return f.value
        if f.op == "icontains":
            return str(f.value)
        try:
            if f.op == "in":
                return [
                    coerce_value(meta.type, v, sql_type=column.type, enum_values=meta.enum_values)
                    for v in f.value
                ]
            return coerce_value(meta.type, f.value, sql_type=column.type, enum_values=meta.enum_values)
        except ValueError as e:
            self.violations.append(FieldViolation(label, f"{f.field} {e}"))
            return _INVALID

    def _condition(self, meta: ColumnMeta, column, op: str, value: Any):
        values = value if isinstance(value, list) else [value]
        if (
            meta.type == ColumnType.DATETIME
            and op in DATETIME_COMPARISON_OPS
            and values
            and all(isinstance(v, datetime) for v in values)
        ):
            column, value = self.executor.dialect.datetime_operands(column, value)
        return _condition(column, op, value)


_INVALID = object()

DATETIME_COMPARISON_OPS = {"eq", "ne", "in", "gt", "gte", "lt", "lte"}


def _condition(column, op: str, value: Any):
    if op == "eq":
        return column.is_(None) if value is None else column == value
    if op == "ne":
        return column.is_not(None) if value is None else column != value
    if op == "in":
        return column.in_(value)
    if op == "gt":
        return column > value
    if op == "gte":
        return column >= value
    if op == "lt":
        return column < value
    if op == "lte":
        return column <= value
    if op == "icontains":
        return column.ilike(f"%{value}%")
    if op == "isnull":
        return column.is_(None) if value else column.is_not(None)
    raise ValueError(f"Unsupported filter operator '{op}'")
