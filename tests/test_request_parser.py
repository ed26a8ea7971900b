"""
Tests for query-string parsing of collection reads.
"""

from __future__ import annotations

import pytest

from crudgraph.core.errors import ValidationError
from crudgraph.core.request_parser import (
    parse_include,
    parse_list_params,
    parse_sort,
    split_filter_field,
)


class TestFilters:
    def test_equality(self):
        params = parse_list_params([("filter[title]", "Hello")])
        assert len(params.filters) == 1
        f = params.filters[0]
        assert (f.field, f.op, f.value) == ("title", "eq", "Hello")

    def test_suffix_and_bracket_forms_are_equivalent(self):
        suffix = parse_list_params([("filter[price__gte]", "10")]).filters[0]
        bracket = parse_list_params([("filter[price][gte]", "10")]).filters[0]
        assert suffix == bracket
        assert (suffix.field, suffix.op, suffix.value) == ("price", "gte", "10")

    def test_in_splits_on_commas(self):
        f = parse_list_params([("filter[id__in]", "1, 2,,3")]).filters[0]
        assert f.op == "in"
        assert f.value == ["1", "2", "3"]

    def test_isnull_parses_boolean(self):
        f = parse_list_params([("filter[category_id][isnull]", "true")]).filters[0]
        assert f.value is True

    def test_association_path(self):
        f = parse_list_params([("filter[author.username]", "john")]).filters[0]
        assert f.field == "author.username"
        assert f.path == ["author", "username"]

    def test_double_underscore_column_names_survive(self):
        assert split_filter_field("legacy__code") == ("legacy__code", "eq")
        assert split_filter_field("legacy__code__ne") == ("legacy__code", "ne")

    def test_unknown_bracket_operator(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_list_params([("filter[views][between]", "1")])
        assert exc_info.value.message == "Invalid query parameters"
        assert exc_info.value.violations[0].field == "filter[views][between]"

    def test_invalid_isnull_value(self):
        with pytest.raises(ValidationError):
            parse_list_params([("filter[bio__isnull]", "maybe")])

    def test_non_filter_keys_are_ignored(self):
        params = parse_list_params([("q", "x"), ("filters", "y")])
        assert params.filters == []


class TestPaginationAndSort:
    def test_defaults(self):
        params = parse_list_params([])
        assert params.page == 1
        assert params.limit == 20
        assert params.order == []
        assert params.include == {}

    def test_limit_is_capped(self):
        params = parse_list_params([("limit", "500")], default_limit=10, max_limit=50)
        assert params.limit == 50

    @pytest.mark.parametrize("key,value", [("page", "0"), ("page", "two"), ("limit", "-1")])
    def test_invalid_page_or_limit(self, key, value):
        with pytest.raises(ValidationError):
            parse_list_params([(key, value)])

    def test_sort(self):
        order = parse_sort("-published_at, title,+views")
        assert [(o.field, o.dir) for o in order] == [
            ("published_at", "desc"),
            ("title", "asc"),
            ("views", "asc"),
        ]

    def test_include_tree(self):
        assert parse_include("author,comments.user,comments.post") == {
            "author": {},
            "comments": {"user": {}, "post": {}},
        }
