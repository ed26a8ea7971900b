"""
Dialect strategies.

Everything that differs per database beyond what SQLAlchemy's compiler
already handles (placeholder style, LIMIT/OFFSET vs TOP): stored-routine
call syntax, the shape of unique-violation error messages and datetime
comparison on SQLite.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func


@dataclass(frozen=True)
class Dialect:
    """Per-database behavior, resolved once from the engine's dialect name."""
    name: str
    supports_procedures: bool = True

    def procedure_call(self, procedure_name: str, param_names: Sequence[str]) -> str:
        """Build the statement that calls a stored routine with named binds."""
        if not self.supports_procedures:
            raise ValueError(f"Dialect '{self.name}' does not support stored procedures")

        binds = ", ".join(f":{p}" for p in param_names)
        if self.name == "postgresql":
            # Row-returning routines are functions in PostgreSQL
            return f"SELECT * FROM {procedure_name}({binds})"
        if self.name == "mssql":
            args = ", ".join(f"@{p} = :{p}" for p in param_names)
            return f"EXEC {procedure_name} {args}".rstrip()
        return f"CALL {procedure_name}({binds})"

    def unique_violation(self, message: str) -> Optional[tuple[list[str], Optional[str]]]:
        """
        Recognize a unique-constraint violation in a driver error message.

        Returns:
            None if the message is not a unique violation, otherwise a tuple of
            (column names found in the message, constraint name if reported).
        """
        for pattern in _UNIQUE_COLUMN_PATTERNS:
            match = pattern.search(message)
            if match:
                columns = [c.strip().split(".")[-1].strip('"`') for c in match.group(1).split(",")]
                return columns, None

        for pattern in _UNIQUE_CONSTRAINT_PATTERNS:
            match = pattern.search(message)
            if match:
                constraint = match.group(1).split(".")[-1]
                return [], constraint

        lowered = message.lower()
        if "unique" in lowered or "duplicate" in lowered:
            return [], None
        return None

    def not_null_violation(self, message: str) -> Optional[str]:
        """Column name of a NOT NULL violation, or None."""
        for pattern in _NOT_NULL_PATTERNS:
            match = pattern.search(message)
            if match:
                return match.group(1).split(".")[-1].strip('"`')
        return None

    def datetime_operands(self, column, value):
        """
        Column expression and bind value for comparing a DATETIME column.

        SQLite keeps datetimes as text in the format of whatever wrote them:
        CURRENT_TIMESTAMP has no fraction, SQLAlchemy writes microseconds.
        Both sides are rendered to one format there; other databases compare
        native values.
        """
        if self.name != "sqlite":
            return column, value
        if isinstance(value, list):
            return func.strftime(_SQLITE_DATETIME_FORMAT, column), [_sqlite_datetime(v) for v in value]
        return func.strftime(_SQLITE_DATETIME_FORMAT, column), _sqlite_datetime(value)


def _sqlite_datetime(value: datetime) -> str:
    # Same shape as strftime('%Y-%m-%d %H:%M:%f'): millisecond precision
    return f"{value:%Y-%m-%d %H:%M:%S}.{value.microsecond // 1000:03d}"


_SQLITE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%f"


# SQLite: "UNIQUE constraint failed: users.username"
# PostgreSQL: 'DETAIL:  Key (username)=(admin) already exists.'
_UNIQUE_COLUMN_PATTERNS = [
    re.compile(r"UNIQUE constraint failed: ([\w.,\s]+)"),
    re.compile(r"Key \(([^)]+)\)=\(.*\) already exists"),
]

# MySQL: "Duplicate entry 'admin' for key 'users.username'"
# PostgreSQL without detail: 'duplicate key value violates unique constraint "users_username_key"'
# SQL Server: "Violation of UNIQUE KEY constraint 'UQ_users_username'"
_UNIQUE_CONSTRAINT_PATTERNS = [
    re.compile(r"Duplicate entry .* for key '([^']+)'"),
    re.compile(r'violates unique constraint "([^"]+)"'),
    re.compile(r"Violation of (?:UNIQUE KEY|PRIMARY KEY) constraint '([^']+)'"),
]

_NOT_NULL_PATTERNS = [
    re.compile(r"NOT NULL constraint failed: ([\w.]+)"),
    re.compile(r'null value in column "([^"]+)"'),
    re.compile(r"Column '([^']+)' cannot be null"),
    re.compile(r"Cannot insert the value NULL into column '([^']+)'"),
]


_DIALECTS = {
    "sqlite": Dialect("sqlite", supports_procedures=False),
    "postgresql": Dialect("postgresql"),
    "mysql": Dialect("mysql"),
    "mariadb": Dialect("mariadb"),
    "mssql": Dialect("mssql"),
}


def get_dialect(name: str) -> Dialect:
    """Get the strategy for a SQLAlchemy dialect name."""
    return _DIALECTS.get(name, Dialect(name))
