"""
Tests for write validation and business rules.
"""

from __future__ import annotations

import asyncio

import pytest

from crudgraph.core.errors import (
    ConflictViolationError,
    FieldViolation,
    UnsupportedOperationError,
    ValidationError,
)
from crudgraph.core.rules import (
    blocked_email_domains,
    min_length,
    pattern,
    rule_from_dict,
    value_range,
)
from crudgraph.core.validator import ValidationResult, WriteValidator


class FakeConflicts:
    """Conflict checker reporting a fixed set of taken values."""

    def __init__(self, taken=None):
        self.taken = taken or {}
        self.calls = []

    async def find_conflicts(self, entity, values, exclude_key=None):
        self.calls.append((entity.name, dict(values), exclude_key))
        return [name for name, value in values.items() if self.taken.get(name) == value]


def validate(registry, checker, entity, operation, payload, key=None):
    validator = WriteValidator(checker)
    return asyncio.run(
        validator.validate_for_write(registry.resolve(entity), operation, payload, key=key)
    )


def fields(result: ValidationResult):
    return [v.field for v in result.violations]


class TestWriteValidator:
    def test_valid_create(self, registry):
        result = validate(registry, FakeConflicts(), "users", "create",
                          {"username": "admin", "email": "a@x.com"})
        assert result.valid
        assert result.status_code == 200
        result.raise_for_status()

    def test_conflict_on_unique_field(self, registry):
        checker = FakeConflicts({"username": "admin"})
        result = validate(registry, checker, "users", "create",
                          {"username": "admin", "email": "b@x.com"})
        assert result.conflicts == ["username"]
        assert result.status_code == 409
        with pytest.raises(ConflictViolationError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.fields == ["username"]
        assert exc_info.value.message == "Username or email already exists"

    def test_conflict_takes_precedence_over_violations(self, registry):
        checker = FakeConflicts({"email": "taken@x.com"})
        result = validate(registry, checker, "users", "create",
                          {"username": "ab", "email": "taken@x.com"})
        assert result.status_code == 409
        with pytest.raises(ConflictViolationError) as exc_info:
            result.raise_for_status()
        assert [v.field for v in exc_info.value.violations] == ["username"]

    def test_configured_conflict_status(self, registry):
        result = validate(registry, FakeConflicts({"order_uuid": "x"}), "orders", "create",
                          {"order_uuid": "abc"})
        assert result.conflict_status_code == 422

    def test_update_excludes_own_key(self, registry):
        checker = FakeConflicts()
        validate(registry, checker, "users", "update", {"username": "admin"}, key=("7",))
        assert checker.calls == [("users", {"username": "admin"}, ("7",))]

    def test_create_does_not_exclude(self, registry):
        checker = FakeConflicts()
        validate(registry, checker, "users", "create",
                 {"username": "admin", "email": "a@x.com"}, key=("7",))
        assert checker.calls[0][2] is None

    def test_unknown_field(self, registry):
        result = validate(registry, FakeConflicts(), "tags", "create", {"name": "x", "colour": "red"})
        assert result.violations == [FieldViolation("colour", "Unknown field")]

    def test_required_fields_on_create(self, registry):
        result = validate(registry, FakeConflicts(), "orders", "create", {"customer": "ACME"})
        assert result.violations == [FieldViolation("order_uuid", "order_uuid is required")]
        assert result.status_code == 400

    def test_auto_increment_key_is_not_required(self, registry):
        result = validate(registry, FakeConflicts(), "products", "create",
                          {"name": "Laptop", "price": 999.99})
        assert result.valid

    def test_partial_update(self, registry):
        result = validate(registry, FakeConflicts(), "posts", "update", {"views": 3}, key=("1",))
        assert result.valid

    def test_update_cannot_null_required_column(self, registry):
        result = validate(registry, FakeConflicts(), "posts", "update", {"title": None}, key=("1",))
        assert result.violations == [FieldViolation("title", "title cannot be null")]

    def test_type_and_length(self, registry):
        result = validate(registry, FakeConflicts(), "users", "create",
                          {"username": "u" * 51, "email": "a@x.com", "age": "old", "is_active": "perhaps"})
        messages = {v.field: v.message for v in result.violations}
        assert messages["username"] == "username must be at most 50 characters long"
        assert messages["age"] == "age must be an integer"
        assert messages["is_active"] == "is_active must be a boolean"

    def test_business_rules(self, registry):
        result = validate(registry, FakeConflicts(), "users", "create",
                          {"username": "ab", "email": "bot@tempmail.org", "age": 200})
        assert fields(result) == ["username", "email", "age"]

    def test_body_must_be_object(self, registry):
        result = validate(registry, FakeConflicts(), "users", "create", ["not", "an", "object"])
        assert fields(result) == ["body"]

    def test_non_table_entities_are_not_writable(self, registry):
        with pytest.raises(UnsupportedOperationError):
            validate(registry, FakeConflicts(), "post_summary", "create", {"title": "x"})

    def test_validation_error_carries_violations(self, registry):
        result = validate(registry, FakeConflicts(), "tags", "create", {})
        with pytest.raises(ValidationError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.status_code == 400
        assert exc_info.value.violations == [FieldViolation("name", "name is required")]


class TestRules:
    def test_blocked_email_domains(self):
        rule = blocked_email_domains("email", ["TempMail.org"])
        assert rule({"email": "a@tempmail.org"}, "create") == [
            FieldViolation("email", "Email addresses from tempmail.org are not allowed")
        ]
        assert rule({"email": "a@example.com"}, "create") == []
        assert rule({}, "update") == []

    def test_min_length_with_message(self):
        rule = min_length("username", 3, "Too short")
        assert rule({"username": "ab"}, "create") == [FieldViolation("username", "Too short")]
        assert rule({"username": "abc"}, "create") == []

    def test_pattern(self):
        rule = pattern("slug", r"^[a-z0-9-]+$")
        assert rule({"slug": "Not A Slug"}, "create") == [FieldViolation("slug", "slug has an invalid format")]
        assert rule({"slug": "a-slug"}, "create") == []

    def test_value_range(self):
        rule = value_range("age", 18, 120)
        assert rule({"age": 17}, "create") == [FieldViolation("age", "age must be at least 18")]
        assert rule({"age": "121"}, "create") == [FieldViolation("age", "age must be at most 120")]
        assert rule({"age": "n/a"}, "create") == []

    def test_rule_from_dict(self):
        rule = rule_from_dict({"type": "value_range", "field": "age", "value": {"min": 18}})
        assert rule({"age": 10}, "create")[0].field == "age"

    def test_unknown_rule_type(self):
        with pytest.raises(ValueError, match="Unknown rule type 'luhn'"):
            rule_from_dict({"type": "luhn", "field": "card"})
