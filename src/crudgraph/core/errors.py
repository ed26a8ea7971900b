"""
Custom exceptions for the crudgraph engine.

Startup-fatal errors derive from RegistrationError. Request-level errors
carry the HTTP status the error mapper should answer with.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class FieldViolation:
    """Single field-level validation failure."""
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class CrudGraphError(Exception):
    """Base exception for all crudgraph errors."""
    status_code = 500
    error = "Internal server error"


# =============================================================================
# Startup-fatal
# =============================================================================


class RegistrationError(CrudGraphError):
    """Raised when an entity cannot be registered."""
    pass


class ConfigurationError(RegistrationError):
    """Raised when an entity configuration file is malformed."""

    def __init__(self, errors: list[str], source: Optional[str] = None):
        self.errors = errors
        self.source = source
        header = f"Invalid entity configuration in {source}" if source else "Invalid entity configuration"
        super().__init__(header + ":\n" + "\n".join(errors))


class SchemaNotFoundError(RegistrationError):
    """Raised when a table or view does not exist in the connected database."""

    def __init__(self, name: str, kind: str, schema: Optional[str] = None):
        self.name = name
        self.kind = kind
        qualified = f"{schema}.{name}" if schema else name
        super().__init__(f"{kind.capitalize()} '{qualified}' not found in database")


class InvalidAssociationError(RegistrationError):
    """Raised when one or more associations cannot be resolved."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid associations:\n" + "\n".join(errors))


class MissingProcedureNameError(RegistrationError):
    """Raised when a procedure entity has no explicit routine name."""
    status_code = 500
    error = "Missing procedure name"

    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(
            f"Procedure entity '{entity}' has no procedure_name configured"
        )


# =============================================================================
# Request-recoverable
# =============================================================================


class ValidationError(CrudGraphError):
    """Raised when a request fails business-rule or format validation."""
    status_code = 400
    error = "Validation failed"

    def __init__(self, violations: list[FieldViolation], message: Optional[str] = None):
        self.violations = violations
        self.message = message or "The following fields have validation errors"
        super().__init__(f"{self.message}: {[v.to_dict() for v in violations]}")


class ConflictViolationError(CrudGraphError):
    """Raised when a write collides with a unique field."""
    error = "Conflict"

    def __init__(
        self,
        fields: list[str],
        status_code: int = 409,
        message: Optional[str] = None,
        violations: Optional[list[FieldViolation]] = None,
    ):
        self.fields = fields
        self.status_code = status_code
        self.violations = violations or []
        if message is None:
            message = (
                f"Unique constraint violation on: {', '.join(fields)}"
                if fields else "Unique constraint violation"
            )
        self.message = message
        super().__init__(message)


class NotFoundError(CrudGraphError):
    """Raised when the addressed record does not exist."""
    status_code = 404
    error = "Not found"

    def __init__(self, entity: str, key: Optional[dict] = None, message: Optional[str] = None):
        self.entity = entity
        self.key = key or {}
        if message is None:
            message = f"{entity} record not found"
            if key:
                message += f" for {key}"
        self.message = message
        super().__init__(message)


class UnsupportedOperationError(CrudGraphError):
    """Raised when an operation is not available for an entity kind."""
    status_code = 405
    error = "Method not allowed"

    def __init__(self, entity: str, operation: str):
        self.entity = entity
        self.operation = operation
        self.message = f"Operation '{operation}' is not supported for '{entity}'"
        super().__init__(self.message)


# =============================================================================
# Unclassified
# =============================================================================


class ExecutorError(CrudGraphError):
    """Raised when query execution fails for an unclassified reason."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(f"{message}: {detail}" if detail else message)
