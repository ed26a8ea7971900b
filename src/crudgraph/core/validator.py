"""
Write validator - checks create/update payloads before execution.

Order of checks:
1. Unique-field conflicts (pre-check query per declared unique field)
2. Unknown fields (introspected columns are the only allowed fields)
3. Required columns (create only; update payloads are partial)
4. Column format: type, enum membership, maximum length
5. Entity business rules

Every check runs and every violation is collected. If any conflict was
found the result carries the entity's conflict status code, otherwise 400.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

from .defs import ColumnType, EntityKind
from .errors import (
    ConflictViolationError,
    FieldViolation,
    UnsupportedOperationError,
    ValidationError,
)
from .utils import coerce_value

if TYPE_CHECKING:
    from ..runtime.context import Principal
    from .registry import RegisteredEntity


WRITE_OPERATIONS = ("create", "update")


class ConflictChecker(Protocol):
    async def find_conflicts(
        self,
        entity: "RegisteredEntity",
        values: dict[str, Any],
        exclude_key: Optional[tuple] = None,
    ) -> list[str]:
        ...


@dataclass
class ValidationResult:
    """Outcome of validate_for_write."""
    conflicts: list[str] = field(default_factory=list)
    violations: list[FieldViolation] = field(default_factory=list)
    conflict_status_code: int = 409
    conflict_message: Optional[str] = None

    @property
    def valid(self) -> bool:
        return not self.conflicts and not self.violations

    @property
    def status_code(self) -> int:
        if self.conflicts:
            return self.conflict_status_code
        if self.violations:
            return 400
        return 200

    def raise_for_status(self):
        """Raise the error matching this result, if any."""
        if self.conflicts:
            raise ConflictViolationError(
                fields=self.conflicts,
                status_code=self.conflict_status_code,
                message=self.conflict_message,
                violations=self.violations,
            )
        if self.violations:
            raise ValidationError(self.violations)


class WriteValidator:
    """
    Validates write payloads against introspected columns and entity rules.

    Usage:
        validator = WriteValidator(executor)
        result = await validator.validate_for_write(users, "create", payload)
        result.raise_for_status()
    """

    def __init__(self, conflict_checker: ConflictChecker):
        self.conflict_checker = conflict_checker

    async def validate_for_write(
        self,
        entity: "RegisteredEntity",
        operation: str,
        payload: dict[str, Any],
        key: Optional[tuple] = None,
        principal: Optional["Principal"] = None,
    ) -> ValidationResult:
        if operation not in WRITE_OPERATIONS:
            raise ValueError(f"Unknown write operation '{operation}'")
        if entity.kind != EntityKind.TABLE:
            raise UnsupportedOperationError(entity.name, operation)

        descriptor = entity.descriptor
        result = ValidationResult(
            conflict_status_code=descriptor.conflict_status_code,
            conflict_message=descriptor.response_messages.get(descriptor.conflict_status_code),
        )

        if not isinstance(payload, dict):
            result.violations.append(FieldViolation("body", "Request body must be a JSON object"))
            return result

        # 1. conflicts first
        unique_values = {}
        for field_name in descriptor.unique_fields:
            if payload.get(field_name) is None:
                continue
            column = entity.column(field_name)
            try:
                unique_values[field_name] = coerce_value(
                    column.type, payload[field_name], enum_values=column.enum_values
                )
            except ValueError:
                continue  # reported by the format check below
        if unique_values:
            result.conflicts = await self.conflict_checker.find_conflicts(
                entity, unique_values, exclude_key=key if operation == "update" else None
            )

        # 2. unknown fields
        for field_name in payload:
            if entity.column(field_name) is None:
                result.violations.append(FieldViolation(field_name, "Unknown field"))

        # 3. required / not-null
        for column in entity.columns:
            value = payload.get(column.name)
            if operation == "create" and column.required and value is None:
                result.violations.append(FieldViolation(column.name, f"{column.name} is required"))
            elif operation == "update" and column.name in payload and value is None and not column.nullable:
                result.violations.append(FieldViolation(column.name, f"{column.name} cannot be null"))

        # 4. format
        for field_name, value in payload.items():
            column = entity.column(field_name)
            if column is None or value is None:
                continue
            try:
                coerced = coerce_value(
                    column.type,
                    value,
                    sql_type=entity.table.c[field_name].type if entity.table is not None else None,
                    enum_values=column.enum_values,
                )
            except ValueError as e:
                result.violations.append(FieldViolation(field_name, f"{field_name} {e}"))
                continue
            if (
                column.type == ColumnType.STRING
                and column.max_length
                and isinstance(coerced, str)
                and len(coerced) > column.max_length
            ):
                result.violations.append(FieldViolation(
                    field_name, f"{field_name} must be at most {column.max_length} characters long"
                ))

        # 5. business rules
        for rule in descriptor.rules:
            result.violations.extend(rule(payload, operation) or [])

        return result
