"""
Query-string parser for collection reads.

Supported parameters:

    filter[title]=Hello             equality
    filter[price__gte]=10           field__op form
    filter[price][gte]=10           bracket form, same meaning
    filter[id__in]=1,2,3            comma-separated list
    filter[author.username]=john    column of an association
    sort=-published_at,title        "-" prefix for descending
    page=2&limit=10                 pagination
    include=author,comments.user    eager-load associations (nested with ".")

Field names are checked later against the entity; this module only checks
syntax.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

from .errors import FieldViolation, ValidationError
from .query_types import ListParams, NormalizedFilter, NormalizedOrder


# Supported filter operators
SUPPORTED_OPS = {"eq", "ne", "in", "gt", "gte", "lt", "lte", "icontains", "isnull"}

FILTER_KEY_PATTERN = re.compile(r"^filter\[([^\]]+)\](?:\[(\w+)\])?$")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: Any) -> Optional[bool]:
    """Parse a boolean from query-string text, None if not a boolean."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def split_filter_field(raw: str, op: Optional[str] = None) -> tuple[str, str]:
    """
    Split "price__gte" into ("price", "gte").

    A trailing "__word" is only treated as an operator when it is a known one,
    so columns containing double underscores still work.
    """
    if op:
        return raw, op
    if "__" in raw:
        field_name, candidate = raw.rsplit("__", 1)
        if candidate in SUPPORTED_OPS:
            return field_name, candidate
    return raw, "eq"


def parse_filters(items: Iterable[tuple[str, str]]) -> tuple[list[NormalizedFilter], list[FieldViolation]]:
    filters: list[NormalizedFilter] = []
    errors: list[FieldViolation] = []

    for key, value in items:
        match = FILTER_KEY_PATTERN.match(key)
        if not match:
            continue

        field_name, op = split_filter_field(match.group(1), match.group(2))

        if op not in SUPPORTED_OPS:
            errors.append(FieldViolation(key, f"operator '{op}' not supported"))
            continue

        parsed: Any = value
        if op == "in":
            parsed = [v.strip() for v in value.split(",") if v.strip()]
        elif op == "isnull":
            parsed = parse_bool(value)
            if parsed is None:
                errors.append(FieldViolation(key, "isnull expects true or false"))
                continue

        filters.append(NormalizedFilter(field=field_name, op=op, value=parsed))

    return filters, errors


def parse_sort(value: Optional[str]) -> list[NormalizedOrder]:
    """
    Parse sort parameter.

    Input: "-created_at,name"
    Output: [NormalizedOrder(field="created_at", dir="desc"), NormalizedOrder(field="name", dir="asc")]
    """
    order: list[NormalizedOrder] = []
    if not value:
        return order

    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if item.startswith("-"):
            order.append(NormalizedOrder(field=item[1:], dir="desc"))
        else:
            order.append(NormalizedOrder(field=item.lstrip("+"), dir="asc"))
    return order


def parse_include(value: Optional[str]) -> dict[str, Any]:
    """
    Parse include parameter into a tree.

    Input: "author,comments.user"
    Output: {"author": {}, "comments": {"user": {}}}
    """
    tree: dict[str, Any] = {}
    if not value:
        return tree

    for item in value.split(","):
        node = tree
        for part in item.strip().split("."):
            if part:
                node = node.setdefault(part, {})
    return tree


def _parse_positive_int(name: str, value: Optional[str], errors: list[FieldViolation]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except ValueError:
        errors.append(FieldViolation(name, f"{name} must be an integer"))
        return None
    if number < 1:
        errors.append(FieldViolation(name, f"{name} must be at least 1"))
        return None
    return number


def parse_list_params(
    items: Iterable[tuple[str, str]],
    *,
    default_limit: int = 20,
    max_limit: int = 100,
) -> ListParams:
    """
    Parse query-string items into ListParams.

    Raises:
        ValidationError: malformed operator, page or limit
    """
    items = list(items)
    single = {key: value for key, value in items}

    filters, errors = parse_filters(items)
    page = _parse_positive_int("page", single.get("page"), errors)
    limit = _parse_positive_int("limit", single.get("limit"), errors)

    if errors:
        raise ValidationError(errors, message="Invalid query parameters")

    return ListParams(
        filters=filters,
        order=parse_sort(single.get("sort")),
        page=page or 1,
        limit=min(limit or default_limit, max_limit),
        include=parse_include(single.get("include")),
    )
