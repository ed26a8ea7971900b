"""
Entity registry - merges declared descriptors with the live schema.

Two-phase registration:
1. register() each descriptor: checks names/routes, introspects tables and
   views, records the raw descriptor
2. resolve_associations(): resolves every association against the complete
   entity set, so declaration order never matters

After seal() the registry is read-only for the rest of the process.

Usage:
    registry = await build_registry(descriptors, engine)
    users = registry.resolve("users")
    for entity in registry.all():
        ...
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from sqlalchemy import Table
from sqlalchemy.ext.asyncio import AsyncEngine

from .defs import (
    AssociationHint,
    AssociationSpec,
    AssociationType,
    ColumnMeta,
    EntityDescriptor,
    EntityKind,
)
from .dialect import Dialect, get_dialect
from .errors import (
    InvalidAssociationError,
    MissingProcedureNameError,
    RegistrationError,
    SchemaNotFoundError,
)
from .introspector import SchemaIntrospector

logger = logging.getLogger(__name__)

# ":name" bind placeholders, ignoring PostgreSQL "::type" casts
BIND_PARAM_PATTERN = re.compile(r"(?<![:\w]):(\w+)")


@dataclass(frozen=True)
class ResolvedAssociation:
    """
    Association with every key column settled.

    Join conditions by type:
    - belongsTo:     source.source_key == target.target_key
    - hasOne/Many:   target.foreign_key == source.source_key
    - belongsToMany: through.foreign_key == source.source_key
                     and through.other_key == target.target_key
    """
    spec: AssociationSpec
    source: str
    target: str
    source_key: str
    target_key: str
    through_table: Optional[Table] = None

    @property
    def type(self) -> AssociationType:
        return self.spec.type

    @property
    def alias(self) -> str:
        return self.spec.as_

    @property
    def foreign_key(self) -> str:
        return self.spec.foreign_key

    @property
    def other_key(self) -> Optional[str]:
        return self.spec.other_key


@dataclass
class RegisteredEntity:
    """Descriptor plus everything learned about it at startup."""
    descriptor: EntityDescriptor
    columns: tuple[ColumnMeta, ...] = ()
    primary_key: tuple[str, ...] = ()
    table: Optional[Table] = None
    hints: tuple[AssociationHint, ...] = ()
    unique_constraints: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    associations: Mapping[str, ResolvedAssociation] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> EntityKind:
        return self.descriptor.kind

    @property
    def route(self) -> str:
        return self.descriptor.route

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnMeta]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def association(self, alias: str) -> Optional[ResolvedAssociation]:
        return self.associations.get(alias)

    def to_dict(self) -> dict:
        """Summary used by the entity listing endpoint."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "route": self.route,
            "primaryKey": list(self.primary_key),
            "columns": [
                {
                    "name": c.name,
                    "type": c.type.value,
                    "nullable": c.nullable,
                    "primaryKey": c.primary_key,
                    "required": c.required,
                }
                for c in self.columns
            ],
            "associations": [
                {"type": a.type.value, "target": a.target, "as": a.alias}
                for a in self.associations.values()
            ],
        }


class _AssociationProblem(Exception):
    pass


class EntityRegistry:
    """
    Holds every registered entity for the lifetime of the process.

    Example:
        registry = EntityRegistry(SchemaIntrospector(engine))
        for descriptor in descriptors:
            await registry.register(descriptor)
        await registry.resolve_associations()
        registry.seal()
    """

    def __init__(self, introspector: SchemaIntrospector):
        self.introspector = introspector
        self.dialect: Dialect = get_dialect(introspector.dialect_name)
        self._entities: dict[str, RegisteredEntity] = {}
        self._routes: dict[str, str] = {}
        self._through_tables: dict[str, Table] = {}
        self._sealed = False

    # -------------------------------------------------------------------------
    # Pass 1
    # -------------------------------------------------------------------------

    async def register(self, descriptor: EntityDescriptor) -> RegisteredEntity:
        """
        Register one descriptor.

        Raises:
            RegistrationError: duplicate name/route, missing sql, sealed registry
            SchemaNotFoundError: table or view missing from the database
            MissingProcedureNameError: procedure without an explicit routine name
        """
        if self._sealed:
            raise RegistrationError("Registry is sealed; entities can only be registered at startup")
        if descriptor.name in self._entities:
            raise RegistrationError(f"Duplicate entity name '{descriptor.name}'")
        if descriptor.route in self._routes:
            raise RegistrationError(
                f"Route '{descriptor.route}' of '{descriptor.name}' is already used by "
                f"'{self._routes[descriptor.route]}'"
            )

        entity = RegisteredEntity(descriptor=descriptor)

        if descriptor.kind in (EntityKind.TABLE, EntityKind.VIEW):
            discovered = await self.introspector.discover(
                descriptor.name, descriptor.kind, descriptor.schema
            )
            entity.columns = discovered.columns
            entity.primary_key = discovered.primary_key
            entity.table = discovered.table
            entity.hints = discovered.hints
            entity.unique_constraints = MappingProxyType(dict(discovered.unique_constraints))
            self._check_unique_fields(entity)

        elif descriptor.kind == EntityKind.QUERY:
            if not descriptor.sql or not descriptor.sql.strip():
                raise RegistrationError(f"Query entity '{descriptor.name}' has no sql")
            self._check_parameters(descriptor)

        elif descriptor.kind == EntityKind.PROCEDURE:
            # Never fall back to descriptor.name as the routine name
            if not descriptor.procedure_name:
                raise MissingProcedureNameError(descriptor.name)
            if not self.dialect.supports_procedures:
                raise RegistrationError(
                    f"Procedure entity '{descriptor.name}': dialect '{self.dialect.name}' "
                    "does not support stored procedures"
                )

        self._entities[descriptor.name] = entity
        self._routes[descriptor.route] = descriptor.name
        logger.info(f"Registered {descriptor.kind.value} '{descriptor.name}' at {descriptor.route}")
        return entity

    def _check_unique_fields(self, entity: RegisteredEntity):
        for field_name in entity.descriptor.unique_fields:
            if entity.column(field_name) is None:
                raise RegistrationError(
                    f"Unique field '{field_name}' is not a column of '{entity.name}'"
                )

    def _check_parameters(self, descriptor: EntityDescriptor):
        declared = {p.name for p in descriptor.parameters}
        used = set(BIND_PARAM_PATTERN.findall(descriptor.sql or ""))
        undeclared = used - declared
        if undeclared:
            raise RegistrationError(
                f"Query entity '{descriptor.name}' uses undeclared parameters: {sorted(undeclared)}"
            )

    # -------------------------------------------------------------------------
    # Pass 2
    # -------------------------------------------------------------------------

    async def resolve_associations(self):
        """
        Resolve associations of every registered entity.

        Raises:
            InvalidAssociationError: listing every offending association
        """
        errors: list[str] = []

        for entity in self._entities.values():
            resolved: dict[str, ResolvedAssociation] = {}

            for spec in entity.descriptor.associations:
                location = f"[{entity.name}.{spec.as_}]"

                if entity.kind != EntityKind.TABLE:
                    errors.append(f"{location} associations are only supported on table entities")
                    continue
                if spec.as_ in resolved:
                    errors.append(f"{location} duplicate association alias '{spec.as_}'")
                    continue

                try:
                    resolved[spec.as_] = await self._resolve_one(entity, spec)
                except _AssociationProblem as e:
                    errors.append(f"{location} {e}")

            entity.associations = MappingProxyType(resolved)

        if errors:
            raise InvalidAssociationError(errors)

    async def _resolve_one(self, entity: RegisteredEntity, spec: AssociationSpec) -> ResolvedAssociation:
        target = self._entities.get(spec.target)
        if target is None:
            raise _AssociationProblem(f"unknown target entity '{spec.target}'")
        if target.kind != EntityKind.TABLE:
            raise _AssociationProblem(f"target '{spec.target}' is not a table entity")
        if not spec.foreign_key:
            raise _AssociationProblem("missing foreignKey")

        if spec.type == AssociationType.BELONGS_TO:
            self._require_column(entity, spec.foreign_key, "foreignKey")
            target_key = spec.target_key or self._hinted_target_key(entity, spec, target)
            target_key = self._key_column(target, target_key, "targetKey")
            return ResolvedAssociation(
                spec=spec,
                source=entity.name,
                target=target.name,
                source_key=spec.foreign_key,
                target_key=target_key,
            )

        if spec.type in (AssociationType.HAS_ONE, AssociationType.HAS_MANY):
            self._require_column(target, spec.foreign_key, "foreignKey")
            source_key = self._key_column(entity, spec.source_key, "sourceKey")
            return ResolvedAssociation(
                spec=spec,
                source=entity.name,
                target=target.name,
                source_key=source_key,
                target_key=spec.foreign_key,
            )

        # belongsToMany
        if not spec.through:
            raise _AssociationProblem("belongsToMany requires 'through'")
        if not spec.other_key:
            raise _AssociationProblem("belongsToMany requires 'otherKey'")

        through = await self._through_table(spec.through, entity.descriptor.schema)
        for key_name, column in (("foreignKey", spec.foreign_key), ("otherKey", spec.other_key)):
            if column not in through.c:
                raise _AssociationProblem(
                    f"{key_name} '{column}' is not a column of through table '{spec.through}'"
                )

        return ResolvedAssociation(
            spec=spec,
            source=entity.name,
            target=target.name,
            source_key=self._key_column(entity, spec.source_key, "sourceKey"),
            target_key=self._key_column(target, spec.target_key, "targetKey"),
            through_table=through,
        )

    def _require_column(self, entity: RegisteredEntity, column: str, role: str):
        if entity.column(column) is None:
            raise _AssociationProblem(f"{role} '{column}' is not a column of '{entity.name}'")

    def _key_column(self, entity: RegisteredEntity, explicit: Optional[str], role: str) -> str:
        """Explicit key column, or the entity's single-column primary key."""
        if explicit:
            self._require_column(entity, explicit, role)
            return explicit
        if len(entity.primary_key) != 1:
            raise _AssociationProblem(
                f"'{entity.name}' has no single-column primary key; declare {role} explicitly"
            )
        return entity.primary_key[0]

    def _hinted_target_key(
        self,
        entity: RegisteredEntity,
        spec: AssociationSpec,
        target: RegisteredEntity,
    ) -> Optional[str]:
        """Referred column of a catalog foreign key matching a belongsTo."""
        for hint in entity.hints:
            if (
                hint.columns == (spec.foreign_key,)
                and hint.referred_table == target.name
                and len(hint.referred_columns) == 1
            ):
                return hint.referred_columns[0]
        return None

    async def _through_table(self, name: str, schema: Optional[str]) -> Table:
        if name in self._entities and self._entities[name].table is not None:
            return self._entities[name].table
        if name not in self._through_tables:
            try:
                discovered = await self.introspector.discover_auxiliary(name, schema)
            except SchemaNotFoundError:
                raise _AssociationProblem(f"through table '{name}' not found in database") from None
            self._through_tables[name] = discovered.table
        return self._through_tables[name]

    # -------------------------------------------------------------------------
    # Read accessors
    # -------------------------------------------------------------------------

    def seal(self):
        """Make the registry read-only."""
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def resolve(self, name: str) -> RegisteredEntity:
        try:
            return self._entities[name]
        except KeyError:
            raise KeyError(f"Entity '{name}' is not registered") from None

    def all(self) -> list[RegisteredEntity]:
        return list(self._entities.values())

    def by_kind(self, *kinds: EntityKind) -> list[RegisteredEntity]:
        return [e for e in self._entities.values() if e.kind in kinds]

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def __len__(self) -> int:
        return len(self._entities)


async def build_registry(
    descriptors: Iterable[EntityDescriptor],
    engine: AsyncEngine,
) -> EntityRegistry:
    """
    Register every descriptor, resolve associations and seal.

    Raises:
        RegistrationError: any startup-fatal problem
    """
    registry = EntityRegistry(SchemaIntrospector(engine))

    for descriptor in descriptors:
        await registry.register(descriptor)

    await registry.resolve_associations()
    registry.seal()

    logger.info(f"Entity registry ready: {len(registry)} entities")
    return registry
