"""
Tests for schema introspection and entity registration.
"""

from __future__ import annotations

import asyncio

import pytest

from crudgraph import (
    AssociationSpec,
    AssociationType,
    EntityDescriptor,
    EntityKind,
    InvalidAssociationError,
    MissingProcedureNameError,
    ParameterSpec,
    RegistrationError,
    SchemaNotFoundError,
    ValidationSpec,
)
from crudgraph.core.defs import ColumnType


class TestIntrospection:
    def test_auto_increment_primary_key_not_named_id(self, registry):
        products = registry.resolve("products")
        assert products.primary_key == ("product_id",)
        column = products.column("product_id")
        assert column.autoincrement is True
        assert column.required is False

    def test_string_primary_key_is_required(self, registry):
        orders = registry.resolve("orders")
        assert orders.primary_key == ("order_uuid",)
        column = orders.column("order_uuid")
        assert column.type == ColumnType.STRING
        assert column.autoincrement is False
        assert column.required is True

    def test_compound_primary_key_in_constraint_order(self, registry):
        items = registry.resolve("order_items")
        assert items.primary_key == ("order_uuid", "product_id")
        assert not items.column("product_id").autoincrement

    def test_column_types_and_constraints(self, registry):
        users = registry.resolve("users")
        assert users.column("username").type == ColumnType.STRING
        assert users.column("username").max_length == 50
        assert users.column("id").unique is True
        assert users.column("age").type == ColumnType.INTEGER
        assert users.column("age").required is False
        assert users.column("is_active").type == ColumnType.BOOLEAN
        assert registry.resolve("products").column("price").type == ColumnType.DECIMAL
        assert registry.resolve("posts").column("created_at").type == ColumnType.DATETIME

    def test_defaulted_not_null_column_is_optional(self, registry):
        assert registry.resolve("order_items").column("quantity").required is False

    def test_view_columns(self, registry):
        view = registry.resolve("post_summary")
        assert view.kind == EntityKind.VIEW
        assert view.column_names == ["id", "title", "views", "author"]

    def test_query_entity_has_no_columns(self, registry):
        query = registry.resolve("popular_posts")
        assert query.columns == ()
        assert query.table is None


class TestAssociations:
    def test_resolved_regardless_of_declaration_order(self, registry):
        # posts is declared before users and categories
        author = registry.resolve("posts").association("author")
        assert author.type == AssociationType.BELONGS_TO
        assert author.source_key == "user_id"
        assert author.target_key == "id"

    def test_has_many_keys(self, registry):
        posts = registry.resolve("users").association("posts")
        assert posts.source_key == "id"
        assert posts.target_key == "user_id"

    def test_belongs_to_many_through_table_is_discovered(self, registry):
        tags = registry.resolve("posts").association("tags")
        assert tags.through_table is not None
        assert tags.through_table.name == "post_tags"
        assert "post_tags" not in registry

    def test_unknown_target(self, register):
        descriptors = [
            EntityDescriptor(
                name="posts",
                kind=EntityKind.TABLE,
                route="/api/posts",
                associations=[AssociationSpec(AssociationType.BELONGS_TO, "authors", "user_id", "author")],
            ),
        ]
        with pytest.raises(InvalidAssociationError) as exc_info:
            register(descriptors)
        assert exc_info.value.errors == ["[posts.author] unknown target entity 'authors'"]

    def test_every_problem_is_reported(self, register):
        descriptors = [
            EntityDescriptor(name="users", kind=EntityKind.TABLE, route="/api/users"),
            EntityDescriptor(
                name="posts",
                kind=EntityKind.TABLE,
                route="/api/posts",
                associations=[
                    AssociationSpec(AssociationType.BELONGS_TO, "users", "writer_id", "author"),
                    AssociationSpec(AssociationType.BELONGS_TO_MANY, "users", "post_id", "likers"),
                ],
            ),
        ]
        with pytest.raises(InvalidAssociationError) as exc_info:
            register(descriptors)
        errors = exc_info.value.errors
        assert len(errors) == 2
        assert "foreignKey 'writer_id' is not a column of 'posts'" in errors[0]
        assert "belongsToMany requires 'through'" in errors[1]

    def test_missing_through_table(self, register):
        descriptors = [
            EntityDescriptor(name="tags", kind=EntityKind.TABLE, route="/api/tags"),
            EntityDescriptor(
                name="posts",
                kind=EntityKind.TABLE,
                route="/api/posts",
                associations=[
                    AssociationSpec(
                        AssociationType.BELONGS_TO_MANY, "tags", "post_id", "tags",
                        other_key="tag_id", through="post_labels",
                    ),
                ],
            ),
        ]
        with pytest.raises(InvalidAssociationError, match="through table 'post_labels' not found"):
            register(descriptors)

    def test_associations_only_on_tables(self, register):
        descriptors = [
            EntityDescriptor(name="users", kind=EntityKind.TABLE, route="/api/users"),
            EntityDescriptor(
                name="post_summary",
                kind=EntityKind.VIEW,
                route="/api/post-summary",
                associations=[AssociationSpec(AssociationType.BELONGS_TO, "users", "author", "user")],
            ),
        ]
        with pytest.raises(InvalidAssociationError, match="only supported on table entities"):
            register(descriptors)


class TestRegistration:
    def test_missing_table(self, register):
        descriptors = [EntityDescriptor(name="invoices", kind=EntityKind.TABLE, route="/api/invoices")]
        with pytest.raises(SchemaNotFoundError, match="Table 'invoices' not found"):
            register(descriptors)

    def test_table_declared_as_view(self, register):
        descriptors = [EntityDescriptor(name="users", kind=EntityKind.VIEW, route="/api/users")]
        with pytest.raises(SchemaNotFoundError):
            register(descriptors)

    def test_duplicate_name(self, register):
        descriptors = [
            EntityDescriptor(name="users", kind=EntityKind.TABLE, route="/api/users"),
            EntityDescriptor(name="users", kind=EntityKind.TABLE, route="/api/people"),
        ]
        with pytest.raises(RegistrationError, match="Duplicate entity name 'users'"):
            register(descriptors)

    def test_duplicate_route(self, register):
        descriptors = [
            EntityDescriptor(name="users", kind=EntityKind.TABLE, route="/api/users"),
            EntityDescriptor(name="profiles", kind=EntityKind.TABLE, route="/api/users"),
        ]
        with pytest.raises(RegistrationError, match="already used by 'users'"):
            register(descriptors)

    def test_unique_field_must_be_a_column(self, register):
        descriptors = [
            EntityDescriptor(
                name="users",
                kind=EntityKind.TABLE,
                route="/api/users",
                validation=ValidationSpec(unique_fields=["nickname"]),
            ),
        ]
        with pytest.raises(RegistrationError, match="Unique field 'nickname'"):
            register(descriptors)

    def test_query_with_undeclared_parameter(self, register):
        descriptors = [
            EntityDescriptor(
                name="recent",
                kind=EntityKind.QUERY,
                route="/api/recent",
                sql="SELECT * FROM posts WHERE views > :min_views LIMIT :limit_count",
                parameters=[ParameterSpec("min_views", "integer")],
            ),
        ]
        with pytest.raises(RegistrationError, match="undeclared parameters: \\['limit_count'\\]"):
            register(descriptors)

    def test_query_without_sql(self, register):
        descriptors = [EntityDescriptor(name="recent", kind=EntityKind.QUERY, route="/api/recent")]
        with pytest.raises(RegistrationError, match="has no sql"):
            register(descriptors)

    def test_procedure_without_routine_name(self, register):
        descriptors = [
            EntityDescriptor(name="user_stats", kind=EntityKind.PROCEDURE, route="/api/user-stats"),
        ]
        with pytest.raises(MissingProcedureNameError) as exc_info:
            register(descriptors)
        assert exc_info.value.entity == "user_stats"

    def test_procedure_on_dialect_without_procedures(self, register):
        descriptors = [
            EntityDescriptor(
                name="user_stats",
                kind=EntityKind.PROCEDURE,
                route="/api/user-stats",
                procedure_name="get_user_stats",
            ),
        ]
        with pytest.raises(RegistrationError, match="does not support stored procedures"):
            register(descriptors)

    def test_sealed_registry_rejects_registration(self, registry):
        assert registry.sealed
        descriptor = EntityDescriptor(name="extra", kind=EntityKind.TABLE, route="/api/extra")
        with pytest.raises(RegistrationError, match="sealed"):
            asyncio.run(registry.register(descriptor))

    def test_read_accessors(self, registry, descriptors):
        assert len(registry) == len(descriptors)
        assert [e.name for e in registry.all()] == [d.name for d in descriptors]
        assert {e.name for e in registry.by_kind(EntityKind.QUERY)} == {"popular_posts", "bump_views"}
        with pytest.raises(KeyError):
            registry.resolve("missing")

    def test_entity_summary(self, registry):
        summary = registry.resolve("posts").to_dict()
        assert summary["kind"] == "table"
        assert summary["primaryKey"] == ["id"]
        assert {"type": "belongsToMany", "target": "tags", "as": "tags"} in summary["associations"]
