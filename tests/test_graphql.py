"""
Tests for the generated GraphQL schema and endpoint.
"""

from __future__ import annotations

from graphql import print_schema

from crudgraph.api.graphql import GraphQLSurfaceGenerator


INTROSPECTION = """
{
  __schema {
    queryType { fields { name } }
    mutationType { fields { name } }
  }
}
"""


def run(client, query, variables=None):
    response = client.post("/graphql", json={"query": query, "variables": variables})
    return response.status_code, response.json()


class TestSchema:
    def test_only_table_entities_are_exposed(self, client):
        status, body = run(client, INTROSPECTION)
        assert status == 200
        queries = {f["name"] for f in body["data"]["__schema"]["queryType"]["fields"]}
        mutations = {f["name"] for f in body["data"]["__schema"]["mutationType"]["fields"]}

        assert {"users", "usersList", "orderItems", "orderItemsList"} <= queries
        for excluded in ("postSummary", "popularPosts", "bumpViews"):
            assert not any(name.startswith(excluded) for name in queries)
            assert not any(excluded.lower() in name.lower() for name in mutations)
        assert {"createUsers", "updateUsers", "deleteUsers"} <= mutations

    def test_compound_key_arguments(self, registry):
        sdl = print_schema(GraphQLSurfaceGenerator(registry, dispatcher=None).build_schema())
        assert "orderItems(order_uuid: String!, product_id: Int!): OrderItems" in sdl
        assert "deleteOrderItems(order_uuid: String!, product_id: Int!): Boolean" in sdl

    def test_association_fields(self, registry):
        sdl = print_schema(GraphQLSurfaceGenerator(registry, dispatcher=None).build_schema())
        assert "author: Users" in sdl
        assert "tags: [Tags!]!" in sdl

    def test_no_schema_without_tables(self, register):
        from crudgraph import EntityDescriptor, EntityKind

        registry = register([
            EntityDescriptor(name="post_summary", kind=EntityKind.VIEW, route="/api/post-summary"),
        ])
        assert GraphQLSurfaceGenerator(registry, dispatcher=None).build_schema() is None


class TestQueries:
    def test_list_with_where_and_sort(self, client, blog):
        status, body = run(client, """
            { postsList(where: {user_id: %d}, sort: ["-views"]) { title views } }
        """ % blog["john"]["id"])
        assert status == 200
        assert body["data"]["postsList"] == [
            {"title": "Async Python", "views": 50},
            {"title": "Hello world", "views": 5},
        ]

    def test_filter_conditions(self, client, blog):
        status, body = run(client, """
            {
              postsList(filters: [{field: "views", op: GTE, value: "10"},
                                  {field: "author.username", value: "jane"}]) { title }
            }
        """)
        assert body["data"]["postsList"] == [{"title": "Gardening"}]

    def test_in_filter(self, client, blog):
        ids = [str(p["id"]) for p in blog["posts"][:2]]
        status, body = run(
            client,
            "query($ids: [String!]) { postsList(filters: [{field: \"id\", op: IN, values: $ids}]) { id } }",
            {"ids": ids},
        )
        assert [p["id"] for p in body["data"]["postsList"]] == [int(i) for i in ids]

    def test_single_record(self, client, blog):
        status, body = run(client, "{ users(id: %d) { username email } }" % blog["jane"]["id"])
        assert body["data"]["users"] == {"username": "jane", "email": "jane@example.com"}

    def test_missing_record_is_null(self, client):
        status, body = run(client, "{ users(id: 999) { username } }")
        assert status == 200
        assert body == {"data": {"users": None}}

    def test_nested_associations(self, client, blog):
        route = f"/api/posts/{blog['posts'][1]['id']}/tags"
        client.post(route, json={"ids": [blog["python"]["id"]]})

        status, body = run(client, """
            { postsList(sort: ["views"]) { title author { username } category { name } tags { name } } }
        """)
        assert status == 200
        assert body["data"]["postsList"] == [
            {"title": "Hello world", "author": {"username": "john"}, "category": {"name": "News"}, "tags": []},
            {"title": "Gardening", "author": {"username": "jane"}, "category": None, "tags": []},
            {"title": "Async Python", "author": {"username": "john"}, "category": {"name": "Tech"},
             "tags": [{"name": "python"}]},
        ]

    def test_has_many_field(self, client, blog):
        status, body = run(client, "{ users(id: %d) { posts { title } } }" % blog["jane"]["id"])
        assert body["data"]["users"]["posts"] == [{"title": "Gardening"}]

    def test_query_over_get(self, client, blog):
        response = client.get("/graphql", params={"query": "{ tagsList { name } }"})
        assert response.status_code == 200
        assert sorted(t["name"] for t in response.json()["data"]["tagsList"]) == ["asyncio", "python"]


class TestMutations:
    def test_create_update_delete(self, client):
        status, body = run(client, """
            mutation { createTags(input: {name: "graphql"}) { id name } }
        """)
        assert status == 200
        tag = body["data"]["createTags"]
        assert tag["name"] == "graphql"

        status, body = run(client, """
            mutation($id: Int!) { updateTags(id: $id, input: {name: "gql"}) { name } }
        """, {"id": tag["id"]})
        assert body["data"]["updateTags"] == {"name": "gql"}

        status, body = run(client, "mutation($id: Int!) { deleteTags(id: $id) }", {"id": tag["id"]})
        assert body["data"]["deleteTags"] is True
        assert client.get(f"/api/tags/{tag['id']}").status_code == 404

    def test_conflict_error(self, client, blog):
        status, body = run(client, """
            mutation { createUsers(input: {username: "john", email: "other@example.com"}) { id } }
        """)
        assert status == 200
        assert body["data"] == {"createUsers": None}
        error = body["errors"][0]
        assert error["path"] == ["createUsers"]
        assert error["extensions"]["code"] == "Conflict"
        assert error["extensions"]["status"] == 409
        assert error["extensions"]["details"]["fields"] == ["username"]

    def test_validation_error(self, client):
        status, body = run(client, """
            mutation { createUsers(input: {username: "ab", email: "x@example.com"}) { id } }
        """)
        error = body["errors"][0]
        assert error["extensions"]["code"] == "Validation failed"
        assert error["extensions"]["details"]["validation_errors"] == [
            {"field": "username", "message": "username must be at least 3 characters long"}
        ]

    def test_delete_missing(self, client):
        status, body = run(client, "mutation { deleteTags(id: 404) }")
        assert body["errors"][0]["extensions"]["status"] == 404

    def test_mutation_over_get_is_rejected(self, client):
        response = client.get("/graphql", params={"query": 'mutation { createTags(input: {name: "x"}) { id } }'})
        assert response.status_code == 405


class TestEndpoint:
    def test_syntax_error(self, client):
        status, body = run(client, "{ usersList { ")
        assert status == 400
        assert body["data"] is None
        assert body["errors"]

    def test_unknown_field(self, client):
        status, body = run(client, "{ postSummaryList { title } }")
        assert status == 400

    def test_missing_query(self, client):
        response = client.post("/graphql", json={"variables": {}})
        assert response.status_code == 400
