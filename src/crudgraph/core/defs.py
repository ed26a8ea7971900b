"""
Core dataclass definitions for the crudgraph engine.

These describe entities as the application declares them (EntityDescriptor,
AssociationSpec, ValidationSpec, ParameterSpec) and columns as the database
reports them (ColumnMeta).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


class EntityKind(str, enum.Enum):
    TABLE = "table"
    VIEW = "view"
    QUERY = "query"
    PROCEDURE = "procedure"


class ColumnType(str, enum.Enum):
    """Semantic column type, independent of the SQL dialect."""
    INTEGER = "integer"
    STRING = "string"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    ENUM = "enum"


class AssociationType(str, enum.Enum):
    BELONGS_TO = "belongsTo"
    HAS_MANY = "hasMany"
    HAS_ONE = "hasOne"
    BELONGS_TO_MANY = "belongsToMany"

    @property
    def single(self) -> bool:
        """True if the association resolves to at most one record."""
        return self in (AssociationType.BELONGS_TO, AssociationType.HAS_ONE)


@dataclass(frozen=True)
class ColumnMeta:
    """Introspected column metadata."""
    name: str
    type: ColumnType
    nullable: bool = True
    default: Optional[str] = None  # server default as reported by the catalog
    primary_key: bool = False
    autoincrement: bool = False  # value assigned by the database
    unique: bool = False
    enum_values: Optional[tuple[str, ...]] = None
    max_length: Optional[int] = None

    @property
    def required(self) -> bool:
        """Whether a create payload must supply this column."""
        if self.autoincrement or self.default is not None:
            return False
        return self.primary_key or not self.nullable


@dataclass(frozen=True)
class AssociationHint:
    """Foreign key discovered in the catalog."""
    columns: tuple[str, ...]
    referred_table: str
    referred_columns: tuple[str, ...]


@dataclass
class AssociationSpec:
    """
    Declared relationship between two entities.

    foreign_key lives on the owning side:
    - belongsTo: column on this entity pointing at the target
    - hasOne / hasMany: column on the target pointing at this entity
    - belongsToMany: column on the through table pointing at this entity
      (other_key points at the target)
    """
    type: AssociationType
    target: str
    foreign_key: str
    as_: str
    other_key: Optional[str] = None
    through: Optional[str] = None
    source_key: Optional[str] = None  # defaults to this entity's primary key
    target_key: Optional[str] = None  # defaults to the target's primary key

    def __post_init__(self):
        if not isinstance(self.type, AssociationType):
            self.type = AssociationType(self.type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssociationSpec":
        return cls(
            type=AssociationType(data["type"]),
            target=data["target"],
            foreign_key=data.get("foreignKey") or data.get("foreign_key", ""),
            as_=data.get("as") or data.get("as_") or data["target"],
            other_key=data.get("otherKey") or data.get("other_key"),
            through=data.get("through"),
            source_key=data.get("sourceKey") or data.get("source_key"),
            target_key=data.get("targetKey") or data.get("target_key"),
        )


@dataclass
class ValidationSpec:
    """Unique-field list and the status used when one collides."""
    unique_fields: list[str] = field(default_factory=list)
    conflict_status_code: int = 409

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationSpec":
        return cls(
            unique_fields=list(data.get("uniqueFields") or data.get("unique_fields") or []),
            conflict_status_code=int(
                data.get("conflictStatusCode") or data.get("conflict_status_code") or 409
            ),
        )


@dataclass
class ParameterSpec:
    """Named parameter of a query or procedure entity."""
    name: str
    type: ColumnType = ColumnType.STRING
    required: bool = False
    default: Any = None
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.type, ColumnType):
            self.type = parse_parameter_type(self.type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParameterSpec":
        return cls(
            name=data["name"],
            type=parse_parameter_type(data.get("type", "string")),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            description=data.get("description", ""),
        )


# Declared parameter type names accepted in configuration
_PARAMETER_TYPE_ALIASES = {
    "integer": ColumnType.INTEGER,
    "int": ColumnType.INTEGER,
    "string": ColumnType.STRING,
    "text": ColumnType.STRING,
    "decimal": ColumnType.DECIMAL,
    "float": ColumnType.DECIMAL,
    "boolean": ColumnType.BOOLEAN,
    "bool": ColumnType.BOOLEAN,
    "datetime": ColumnType.DATETIME,
    "date": ColumnType.DATETIME,
}


def parse_parameter_type(value: Any) -> ColumnType:
    if isinstance(value, ColumnType):
        return value
    try:
        return _PARAMETER_TYPE_ALIASES[str(value).lower()]
    except KeyError:
        raise ValueError(f"Unknown parameter type '{value}'") from None


# A business rule receives the write payload and the operation name
# ("create" or "update") and returns zero or more violations.
Rule = Callable[[dict[str, Any], str], list]


@dataclass
class EntityDescriptor:
    """Declarative configuration of one API-exposed entity."""
    name: str
    kind: EntityKind
    route: str
    associations: list[AssociationSpec] = field(default_factory=list)
    validation: Optional[ValidationSpec] = None
    response_messages: dict[int, str] = field(default_factory=dict)
    sql: Optional[str] = None
    procedure_name: Optional[str] = None
    parameters: list[ParameterSpec] = field(default_factory=list)
    schema: Optional[str] = None
    method: Optional[str] = None  # explicit HTTP method for query/procedure routes
    rules: list[Rule] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.kind, EntityKind):
            self.kind = EntityKind(self.kind)
        self.response_messages = {int(k): v for k, v in self.response_messages.items()}

    @property
    def conflict_status_code(self) -> int:
        return self.validation.conflict_status_code if self.validation else 409

    @property
    def unique_fields(self) -> list[str]:
        return list(self.validation.unique_fields) if self.validation else []

    def message_for(self, status_code: int, default: str) -> str:
        return self.response_messages.get(status_code, default)
