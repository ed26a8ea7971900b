"""
Utility functions for crudgraph.

Includes:
- Case conversion (snake_case to camelCase / PascalCase) for GraphQL names
- Value coercion from JSON / path / query-string input to column types
"""

from __future__ import annotations

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from sqlalchemy.sql import sqltypes

from .defs import ColumnType


# =============================================================================
# Case conversion utilities
# =============================================================================

_SNAKE_TO_CAMEL_PATTERN = re.compile(r'[_\-\s]+([a-zA-Z0-9])')


def to_camel_case(name: str) -> str:
    """
    Convert snake_case (or kebab-case) to camelCase.

    Examples:
        order_items -> orderItems
        post-stats -> postStats
    """
    def replace_separator(match):
        return match.group(1).upper()

    result = _SNAKE_TO_CAMEL_PATTERN.sub(replace_separator, name)
    return result[0].lower() + result[1:] if result else result


def to_pascal_case(name: str) -> str:
    """
    Convert snake_case to PascalCase.

    Examples:
        order_items -> OrderItems
        users -> Users
    """
    camel = to_camel_case(name)
    return camel[0].upper() + camel[1:] if camel else camel


# =============================================================================
# Value coercion
# =============================================================================


def coerce_value(
    col_type: ColumnType,
    value: Any,
    *,
    sql_type: Any = None,
    enum_values: Optional[Sequence[str]] = None,
) -> Any:
    """
    Coerce an input value to a column's semantic type.

    Path segments and query strings always arrive as text; JSON bodies carry
    numbers and booleans. Both end up as the Python type the driver expects.

    Raises:
        ValueError: value cannot represent the type (message is user-facing)
    """
    if value is None:
        return None

    if col_type == ColumnType.INTEGER:
        if isinstance(value, bool):
            raise ValueError("must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()):
            return int(value)
        raise ValueError("must be an integer")

    if col_type == ColumnType.DECIMAL:
        if isinstance(value, bool):
            raise ValueError("must be a number")
        if isinstance(value, (int, float, Decimal)):
            return value
        if isinstance(value, str):
            try:
                return Decimal(value.strip())
            except InvalidOperation:
                pass
        raise ValueError("must be a number")

    if col_type == ColumnType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
        raise ValueError("must be a boolean")

    if col_type == ColumnType.DATETIME:
        return _coerce_temporal(value, sql_type)

    if col_type == ColumnType.ENUM:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        if enum_values and value not in enum_values:
            raise ValueError(f"must be one of: {', '.join(enum_values)}")
        return value

    # STRING - accept numbers as text
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise ValueError("must be a string")


def _coerce_temporal(value: Any, sql_type: Any) -> Any:
    is_date = isinstance(sql_type, sqltypes.Date)
    is_time = isinstance(sql_type, sqltypes.Time)

    if isinstance(value, datetime):
        return value.date() if is_date else value
    if isinstance(value, (date, time)):
        return value
    if not isinstance(value, str):
        raise ValueError("must be an ISO 8601 date/time string")

    text = value.strip().replace("Z", "+00:00")
    try:
        if is_time:
            return time.fromisoformat(text)
        if is_date:
            return date.fromisoformat(text[:10])
        return datetime.fromisoformat(text)
    except ValueError:
        raise ValueError("must be an ISO 8601 date/time string") from None
