"""
crudgraph - REST and GraphQL APIs generated from entity descriptors and the
live database schema.

Entities are declared (table, view, query or procedure); columns and keys
are discovered from the database at startup.

Usage:
    from crudgraph import EntityDescriptor, EntityKind, ValidationSpec, create_app

    app = create_app([
        EntityDescriptor(
            name="users",
            kind=EntityKind.TABLE,
            route="/api/users",
            validation=ValidationSpec(unique_fields=["username", "email"]),
        ),
    ])
"""

from __future__ import annotations

from .config import Settings, load_entities
from .core import (
    AssociationSpec,
    AssociationType,
    ConflictViolationError,
    CrudGraphError,
    EntityDescriptor,
    EntityKind,
    EntityRegistry,
    ExecutorError,
    InvalidAssociationError,
    MissingProcedureNameError,
    NotFoundError,
    ParameterSpec,
    RegistrationError,
    SchemaNotFoundError,
    UnsupportedOperationError,
    ValidationError,
    ValidationSpec,
    build_registry,
)
from .runtime import Operation, OperationParams, Principal, QueryExecutor
from .service import create_app

__all__ = [
    # Definitions
    "EntityDescriptor",
    "EntityKind",
    "AssociationSpec",
    "AssociationType",
    "ValidationSpec",
    "ParameterSpec",
    # Errors
    "CrudGraphError",
    "RegistrationError",
    "SchemaNotFoundError",
    "InvalidAssociationError",
    "MissingProcedureNameError",
    "ValidationError",
    "ConflictViolationError",
    "NotFoundError",
    "UnsupportedOperationError",
    "ExecutorError",
    # Registry / runtime
    "EntityRegistry",
    "build_registry",
    "QueryExecutor",
    "Operation",
    "OperationParams",
    "Principal",
    # App
    "Settings",
    "load_entities",
    "create_app",
]
