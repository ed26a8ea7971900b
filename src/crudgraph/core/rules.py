"""
Built-in business rules.

A rule is a callable (payload, operation) -> list[FieldViolation]. Rules only
look at fields present in the payload, so they apply to partial updates as
well as creates.

Usage:
    EntityDescriptor(
        name="users",
        ...,
        rules=[
            blocked_email_domains("email", ["tempmail.org"]),
            min_length("username", 3),
            pattern("username", r"^[a-zA-Z0-9_]+$",
                    "Username can only contain letters, numbers, and underscores"),
        ],
    )
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Optional

from .defs import Rule
from .errors import FieldViolation


def blocked_email_domains(field: str, domains: Iterable[str]) -> Rule:
    """Reject email addresses from the given domains."""
    blocked = {d.lower() for d in domains}

    def rule(payload: dict[str, Any], operation: str) -> list[FieldViolation]:
        value = payload.get(field)
        if not isinstance(value, str) or "@" not in value:
            return []
        domain = value.rsplit("@", 1)[1].lower()
        if domain in blocked:
            return [FieldViolation(field, f"Email addresses from {domain} are not allowed")]
        return []

    return rule


def min_length(field: str, length: int, message: Optional[str] = None) -> Rule:
    """Require a string field to have at least `length` characters."""

    def rule(payload: dict[str, Any], operation: str) -> list[FieldViolation]:
        value = payload.get(field)
        if isinstance(value, str) and len(value) < length:
            return [FieldViolation(
                field,
                message or f"{field} must be at least {length} characters long",
            )]
        return []

    return rule


def pattern(field: str, regex: str, message: Optional[str] = None) -> Rule:
    """Require a string field to match a regular expression."""
    compiled = re.compile(regex)

    def rule(payload: dict[str, Any], operation: str) -> list[FieldViolation]:
        value = payload.get(field)
        if isinstance(value, str) and not compiled.search(value):
            return [FieldViolation(field, message or f"{field} has an invalid format")]
        return []

    return rule


def value_range(
    field: str,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> Rule:
    """Require a numeric field to lie within [minimum, maximum]."""

    def rule(payload: dict[str, Any], operation: str) -> list[FieldViolation]:
        value = payload.get(field)
        if value is None or isinstance(value, bool):
            return []
        try:
            number = float(value)
        except (TypeError, ValueError):
            return []
        if minimum is not None and number < minimum:
            return [FieldViolation(field, f"{field} must be at least {minimum:g}")]
        if maximum is not None and number > maximum:
            return [FieldViolation(field, f"{field} must be at most {maximum:g}")]
        return []

    return rule


RULE_FACTORIES: dict[str, Callable[..., Rule]] = {
    "blocked_email_domains": lambda field, value, message=None: blocked_email_domains(field, value),
    "min_length": lambda field, value, message=None: min_length(field, int(value), message),
    "pattern": lambda field, value, message=None: pattern(field, value, message),
    "value_range": lambda field, value, message=None: value_range(
        field, value.get("min"), value.get("max")
    ),
}


def rule_from_dict(data: dict[str, Any]) -> Rule:
    """
    Build a rule from configuration.

    Example:
        {"type": "min_length", "field": "username", "value": 3}
        {"type": "value_range", "field": "age", "value": {"min": 18, "max": 120}}
    """
    rule_type = data.get("type")
    factory = RULE_FACTORIES.get(rule_type)
    if factory is None:
        raise ValueError(f"Unknown rule type '{rule_type}'")
    return factory(data["field"], data.get("value"), data.get("message"))
