"""
GraphQL surface generator.

Builds a graphql-core schema for Table entities only. View, query and
procedure entities are not part of the GraphQL surface; they are reachable
through REST.

For a table "order_items" with primary key (order_uuid, product_id):

    type OrderItems { order_uuid: String!, product_id: Int!, quantity: Int, ... }

    type Query {
      orderItems(order_uuid: String!, product_id: Int!): OrderItems
      orderItemsList(where: OrderItemsFilter, filters: [FilterCondition!],
                     sort: [String!], page: Int, limit: Int): [OrderItems!]!
    }

    type Mutation {
      createOrderItems(input: OrderItemsInput!): OrderItems
      updateOrderItems(order_uuid: String!, product_id: Int!, input: OrderItemsInput!): OrderItems
      deleteOrderItems(order_uuid: String!, product_id: Int!): Boolean
    }

Association fields are resolved lazily, one dispatcher call per field.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from graphql import (
    GraphQLArgument,
    GraphQLBoolean,
    GraphQLEnumType,
    GraphQLError,
    GraphQLField,
    GraphQLFloat,
    GraphQLInputField,
    GraphQLInputObjectType,
    GraphQLInt,
    GraphQLList,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLSchema,
    GraphQLString,
    OperationType,
    get_operation_ast,
    graphql,
    parse,
)
from graphql.error import GraphQLSyntaxError

from crudgraph.core.defs import ColumnMeta, ColumnType, EntityKind
from crudgraph.core.errors import CrudGraphError, NotFoundError
from crudgraph.core.query_types import ListParams, NormalizedFilter
from crudgraph.core.registry import EntityRegistry, RegisteredEntity, ResolvedAssociation
from crudgraph.core.request_parser import SUPPORTED_OPS, parse_bool, parse_sort
from crudgraph.core.utils import to_camel_case, to_pascal_case
from crudgraph.runtime.context import ExecutionContext
from crudgraph.runtime.dispatcher import OperationDispatcher
from crudgraph.runtime.executor import Operation, OperationParams

from .errors import ErrorMapper

logger = logging.getLogger(__name__)


SCALARS = {
    ColumnType.INTEGER: GraphQLInt,
    ColumnType.DECIMAL: GraphQLFloat,
    ColumnType.BOOLEAN: GraphQLBoolean,
    ColumnType.STRING: GraphQLString,
    ColumnType.DATETIME: GraphQLString,  # ISO 8601
    ColumnType.ENUM: GraphQLString,
}

FILTER_OP_ENUM = GraphQLEnumType("FilterOp", {op.upper(): op for op in sorted(SUPPORTED_OPS)})

FILTER_CONDITION = GraphQLInputObjectType(
    "FilterCondition",
    {
        "field": GraphQLInputField(
            GraphQLNonNull(GraphQLString),
            description='Column name, or "association.column"',
        ),
        "op": GraphQLInputField(FILTER_OP_ENUM, default_value="eq"),
        "value": GraphQLInputField(GraphQLString),
        "values": GraphQLInputField(GraphQLList(GraphQLNonNull(GraphQLString)), description="Values for IN"),
    },
)


def scalar_for(column: ColumnMeta):
    return SCALARS[column.type]


class GraphQLSurfaceGenerator:
    """
    Generates the GraphQL schema and its HTTP endpoint.

    Usage:
        generator = GraphQLSurfaceGenerator(registry, dispatcher)
        schema = generator.build_schema()
        app.include_router(generator.build_router("/graphql"))
    """

    def __init__(
        self,
        registry: EntityRegistry,
        dispatcher: OperationDispatcher,
        error_mapper: Optional[ErrorMapper] = None,
        max_limit: int = 100,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.error_mapper = error_mapper or ErrorMapper()
        self.max_limit = max_limit
        self._object_types: dict[str, GraphQLObjectType] = {}
        self._schema: Optional[GraphQLSchema] = None

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def build_schema(self) -> Optional[GraphQLSchema]:
        """Build the schema, or None when no table entity is registered."""
        tables = self.registry.by_kind(EntityKind.TABLE)
        if not tables:
            return None

        for entity in tables:
            self._object_types[entity.name] = self._object_type(entity)

        query_fields: dict[str, GraphQLField] = {}
        mutation_fields: dict[str, GraphQLField] = {}

        for entity in tables:
            camel = to_camel_case(entity.name)
            pascal = to_pascal_case(entity.name)
            object_type = self._object_types[entity.name]
            input_type = self._input_type(entity)

            query_fields[f"{camel}List"] = GraphQLField(
                GraphQLNonNull(GraphQLList(GraphQLNonNull(object_type))),
                args={
                    "where": GraphQLArgument(self._filter_type(entity)),
                    "filters": GraphQLArgument(GraphQLList(GraphQLNonNull(FILTER_CONDITION))),
                    "sort": GraphQLArgument(GraphQLList(GraphQLNonNull(GraphQLString))),
                    "page": GraphQLArgument(GraphQLInt),
                    "limit": GraphQLArgument(GraphQLInt),
                },
                resolve=self._list_resolver(entity),
            )
            mutation_fields[f"create{pascal}"] = GraphQLField(
                object_type,
                args={"input": GraphQLArgument(GraphQLNonNull(input_type))},
                resolve=self._create_resolver(entity),
            )

            if not entity.primary_key:
                continue

            key_args = self._key_args(entity)
            query_fields[camel] = GraphQLField(
                object_type,
                args=key_args,
                resolve=self._get_resolver(entity),
            )
            mutation_fields[f"update{pascal}"] = GraphQLField(
                object_type,
                args={**key_args, "input": GraphQLArgument(GraphQLNonNull(input_type))},
                resolve=self._update_resolver(entity),
            )
            mutation_fields[f"delete{pascal}"] = GraphQLField(
                GraphQLBoolean,
                args=key_args,
                resolve=self._delete_resolver(entity),
            )

        self._schema = GraphQLSchema(
            query=GraphQLObjectType("Query", query_fields),
            mutation=GraphQLObjectType("Mutation", mutation_fields),
        )
        logger.info(f"Generated GraphQL schema for {len(tables)} table entities")
        return self._schema

    def _object_type(self, entity: RegisteredEntity) -> GraphQLObjectType:
        def fields() -> dict[str, GraphQLField]:
            result = {}
            for column in entity.columns:
                scalar = scalar_for(column)
                result[column.name] = GraphQLField(GraphQLNonNull(scalar) if column.primary_key else scalar)
            for alias, assoc in entity.associations.items():
                target_type = self._object_types[assoc.target]
                if assoc.type.single:
                    field_type = target_type
                else:
                    field_type = GraphQLNonNull(GraphQLList(GraphQLNonNull(target_type)))
                result[alias] = GraphQLField(field_type, resolve=self._association_resolver(entity, assoc))
            return result

        return GraphQLObjectType(to_pascal_case(entity.name), fields)

    def _input_type(self, entity: RegisteredEntity) -> GraphQLInputObjectType:
        return GraphQLInputObjectType(
            f"{to_pascal_case(entity.name)}Input",
            {column.name: GraphQLInputField(scalar_for(column)) for column in entity.columns},
        )

    def _filter_type(self, entity: RegisteredEntity) -> GraphQLInputObjectType:
        return GraphQLInputObjectType(
            f"{to_pascal_case(entity.name)}Filter",
            {column.name: GraphQLInputField(scalar_for(column)) for column in entity.columns},
            description="Equality filters, combined with AND",
        )

    def _key_args(self, entity: RegisteredEntity) -> dict[str, GraphQLArgument]:
        return {
            name: GraphQLArgument(GraphQLNonNull(scalar_for(entity.column(name))))
            for name in entity.primary_key
        }

    # -------------------------------------------------------------------------
    # Resolvers
    # -------------------------------------------------------------------------

    async def _dispatch(self, info, entity: RegisteredEntity, operation: Operation, params: OperationParams):
        context = info.context
        principal = context.principal if isinstance(context, ExecutionContext) else None
        return await self.dispatcher.dispatch(entity, operation, params, principal)

    def _list_resolver(self, entity: RegisteredEntity):
        async def resolve(root, info, where=None, filters=None, sort=None, page=None, limit=None):
            query = ListParams(
                filters=_normalize_filters(where, filters),
                order=parse_sort(",".join(sort or [])),
                page=page or 1,
                limit=limit,
            )
            result = await self._dispatch(info, entity, Operation.LIST, OperationParams(query=query))
            return jsonable_encoder(result.data)

        return resolve

    def _get_resolver(self, entity: RegisteredEntity):
        async def resolve(root, info, **kwargs):
            key = tuple(kwargs[name] for name in entity.primary_key)
            try:
                result = await self._dispatch(info, entity, Operation.GET, OperationParams(key=key))
            except NotFoundError:
                return None
            return jsonable_encoder(result.data)

        return resolve

    def _create_resolver(self, entity: RegisteredEntity):
        async def resolve(root, info, input):
            result = await self._dispatch(info, entity, Operation.CREATE, OperationParams(data=dict(input)))
            return jsonable_encoder(result.data)

        return resolve

    def _update_resolver(self, entity: RegisteredEntity):
        async def resolve(root, info, input, **kwargs):
            key = tuple(kwargs[name] for name in entity.primary_key)
            params = OperationParams(key=key, data=dict(input))
            result = await self._dispatch(info, entity, Operation.UPDATE, params)
            return jsonable_encoder(result.data)

        return resolve

    def _delete_resolver(self, entity: RegisteredEntity):
        async def resolve(root, info, **kwargs):
            key = tuple(kwargs[name] for name in entity.primary_key)
            await self._dispatch(info, entity, Operation.DELETE, OperationParams(key=key))
            return True

        return resolve

    def _association_resolver(self, entity: RegisteredEntity, assoc: ResolvedAssociation):
        async def resolve(parent, info):
            if assoc.type.single and parent.get(assoc.source_key) is None:
                return None
            key = tuple(parent[name] for name in entity.primary_key)
            params = OperationParams(
                key=key,
                association=assoc.alias,
                query=ListParams(limit=self.max_limit),
            )
            result = await self._dispatch(info, entity, Operation.LIST_ASSOCIATED, params)
            return jsonable_encoder(result.data)

        return resolve

    # -------------------------------------------------------------------------
    # HTTP endpoint
    # -------------------------------------------------------------------------

    async def execute(
        self,
        source: str,
        variables: Optional[dict[str, Any]] = None,
        operation_name: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
    ) -> dict[str, Any]:
        """Execute a GraphQL request and return the response payload."""
        if self._schema is None:
            self.build_schema()

        result = await graphql(
            self._schema,
            source,
            variable_values=variables,
            operation_name=operation_name,
            context_value=context or ExecutionContext(registry=self.registry),
        )

        payload: dict[str, Any] = {"data": result.data}
        if result.errors:
            payload["errors"] = [self._format_error(e) for e in result.errors]
        return payload

    def _format_error(self, error: GraphQLError) -> dict[str, Any]:
        formatted = error.formatted
        original = error.original_error
        if isinstance(original, CrudGraphError):
            status_code, body = self.error_mapper.to_response(original)
            formatted["message"] = body["message"]
            formatted["extensions"] = {
                "code": body["error"],
                "status": status_code,
                "details": body["details"],
            }
        elif original is not None:
            logger.error(f"GraphQL resolver failed: {original}", exc_info=original)
            status_code, body = self.error_mapper.to_response(original)
            formatted["message"] = body["message"]
            formatted["extensions"] = {"code": body["error"], "status": status_code}
        return formatted

    def build_router(self, path: str = "/graphql") -> APIRouter:
        """Create FastAPI router serving the schema at `path` (GET and POST)."""
        if self._schema is None:
            self.build_schema()
        router = APIRouter()

        @router.post(path, tags=["graphql"])
        async def graphql_post(request: Request) -> JSONResponse:
            try:
                body = await request.json()
            except ValueError:
                return _bad_request("Request body is not valid JSON")
            if not isinstance(body, dict) or not isinstance(body.get("query"), str):
                return _bad_request("Request body must contain a 'query' string")
            return await self._respond(
                request, body["query"], body.get("variables"), body.get("operationName")
            )

        @router.get(path, tags=["graphql"])
        async def graphql_get(request: Request) -> JSONResponse:
            source = request.query_params.get("query")
            if not source:
                return _bad_request("Missing 'query' parameter")

            variables = request.query_params.get("variables")
            if variables:
                try:
                    variables = json.loads(variables)
                except ValueError:
                    return _bad_request("'variables' is not valid JSON")

            operation_name = request.query_params.get("operationName")
            try:
                operation = get_operation_ast(parse(source), operation_name)
            except GraphQLSyntaxError:
                operation = None  # reported by execute
            if operation is not None and operation.operation != OperationType.QUERY:
                return JSONResponse(
                    {"errors": [{"message": "Only query operations are allowed over GET"}]},
                    status_code=405,
                    headers={"Allow": "POST"},
                )
            return await self._respond(request, source, variables, operation_name)

        return router

    async def _respond(self, request: Request, source, variables, operation_name) -> JSONResponse:
        context = ExecutionContext(
            registry=self.registry,
            principal=getattr(request.state, "principal", None),
        )
        payload = await self.execute(source, variables, operation_name, context)
        # Parse and validation failures carry no path; they never reached execution
        errors = payload.get("errors") or []
        rejected = payload["data"] is None and errors and all("path" not in e for e in errors)
        status_code = 400 if rejected else 200
        return JSONResponse(payload, status_code=status_code)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"errors": [{"message": message}]}, status_code=400)


def _normalize_filters(where: Optional[dict], conditions: Optional[list]) -> list[NormalizedFilter]:
    filters = [
        NormalizedFilter(field=name, op="eq", value=value)
        for name, value in (where or {}).items()
    ]
    for condition in conditions or []:
        op = condition.get("op") or "eq"
        if op == "in":
            value = list(condition.get("values") or [])
        elif op == "isnull":
            value = parse_bool(condition.get("value", "true"))
            if value is None:
                value = True
        else:
            value = condition.get("value")
        filters.append(NormalizedFilter(field=condition["field"], op=op, value=value))
    return filters
