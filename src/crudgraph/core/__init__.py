"""
Core module - definitions, introspection, registry and validation.
"""

from __future__ import annotations

from .defs import (
    AssociationHint,
    AssociationSpec,
    AssociationType,
    ColumnMeta,
    ColumnType,
    EntityDescriptor,
    EntityKind,
    ParameterSpec,
    ValidationSpec,
)
from .dialect import Dialect, get_dialect
from .errors import (
    ConfigurationError,
    ConflictViolationError,
    CrudGraphError,
    ExecutorError,
    FieldViolation,
    InvalidAssociationError,
    MissingProcedureNameError,
    NotFoundError,
    RegistrationError,
    SchemaNotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from .introspector import DiscoveredSchema, SchemaIntrospector
from .query_types import (
    ErrorEnvelope,
    ListParams,
    NormalizedFilter,
    NormalizedOrder,
    PaginationInfo,
    SuccessEnvelope,
)
from .registry import (
    EntityRegistry,
    RegisteredEntity,
    ResolvedAssociation,
    build_registry,
)
from .request_parser import parse_list_params
from .rules import (
    blocked_email_domains,
    min_length,
    pattern,
    rule_from_dict,
    value_range,
)
from .utils import to_camel_case, to_pascal_case
from .validator import ValidationResult, WriteValidator

__all__ = [
    # Definitions
    "EntityKind",
    "ColumnType",
    "AssociationType",
    "ColumnMeta",
    "AssociationHint",
    "AssociationSpec",
    "ValidationSpec",
    "ParameterSpec",
    "EntityDescriptor",
    # Dialects
    "Dialect",
    "get_dialect",
    # Errors
    "CrudGraphError",
    "RegistrationError",
    "ConfigurationError",
    "SchemaNotFoundError",
    "InvalidAssociationError",
    "MissingProcedureNameError",
    "ValidationError",
    "ConflictViolationError",
    "NotFoundError",
    "UnsupportedOperationError",
    "ExecutorError",
    "FieldViolation",
    # Introspection / registry
    "SchemaIntrospector",
    "DiscoveredSchema",
    "EntityRegistry",
    "RegisteredEntity",
    "ResolvedAssociation",
    "build_registry",
    # Query types
    "NormalizedFilter",
    "NormalizedOrder",
    "ListParams",
    "PaginationInfo",
    "SuccessEnvelope",
    "ErrorEnvelope",
    "parse_list_params",
    # Validation
    "WriteValidator",
    "ValidationResult",
    "blocked_email_domains",
    "min_length",
    "pattern",
    "value_range",
    "rule_from_dict",
    # Utils
    "to_camel_case",
    "to_pascal_case",
]
