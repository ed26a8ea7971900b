"""
Pydantic models for list parameters, pagination and response envelopes.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# --- Normalized types (internal representation after parsing) ---

class NormalizedFilter(BaseModel):
    """
    Normalized filter representation.

    Input: filter[name__icontains]=test
    Normalized: NormalizedFilter(field="name", op="icontains", value="test")

    Dotted fields address a column of an association:
    filter[author.username]=john -> NormalizedFilter(field="author.username", ...)
    """
    field: str
    op: str = "eq"  # eq, ne, in, gt, gte, lt, lte, icontains, isnull
    value: Any = None

    @property
    def path(self) -> list[str]:
        return self.field.split(".")


class NormalizedOrder(BaseModel):
    """
    Normalized order representation.

    Input: sort=-created_at
    Normalized: NormalizedOrder(field="created_at", dir="desc")
    """
    field: str
    dir: Literal["asc", "desc"] = "asc"

    @property
    def path(self) -> list[str]:
        return self.field.split(".")


class ListParams(BaseModel):
    """Everything a collection read accepts."""
    filters: list[NormalizedFilter] = Field(default_factory=list)
    order: list[NormalizedOrder] = Field(default_factory=list)
    page: int = 1
    limit: Optional[int] = None
    include: dict[str, Any] = Field(default_factory=dict)  # alias -> nested include tree


class PaginationInfo(BaseModel):
    """Pagination metadata in list responses."""
    total: int
    page: int
    limit: int
    pages: int


# --- Response envelopes ---

class SuccessEnvelope(BaseModel):
    message: str
    data: Any = None
    meta: Optional[PaginationInfo] = None


class ErrorEnvelope(BaseModel):
    error: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
