"""
REST surface generator.

Builds a FastAPI router from the registry:

Table entities:
- GET    {route}                          list (filter/sort/page/limit/include)
- POST   {route}                          create
- GET    {route}/{pk...}/{as}             list associated
- POST   {route}/{pk...}/{as}             create associated
- PUT    {route}/{pk...}/{as}             replace links (belongsToMany)
- DELETE {route}/{pk...}/{as}/{target_id} remove link (belongsToMany)
- GET    {route}/{pk...}                  get (include)
- PUT    {route}/{pk...}                  update (partial)
- DELETE {route}/{pk...}                  delete

View entities: GET {route} only.
Query / Procedure entities: GET or POST {route}.

Compound primary keys use one path segment per key column, in key order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from crudgraph.core.defs import AssociationType, EntityKind
from crudgraph.core.errors import FieldViolation, ValidationError
from crudgraph.core.query_types import SuccessEnvelope
from crudgraph.core.registry import EntityRegistry, RegisteredEntity
from crudgraph.core.request_parser import parse_include, parse_list_params
from crudgraph.runtime.dispatcher import OperationDispatcher
from crudgraph.runtime.executor import ExecutionResult, Operation, OperationParams

logger = logging.getLogger(__name__)

# Statements containing any of these are not side-effect free
WRITE_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|MERGE|REPLACE|CREATE|DROP|ALTER|TRUNCATE|CALL|EXEC)\b",
    re.IGNORECASE,
)

TARGET_KEY_PARAM = "target_id"

DEFAULT_MESSAGES = {
    Operation.LIST: "{name} retrieved successfully",
    Operation.GET: "{name} record retrieved successfully",
    Operation.CREATE: "{name} record created successfully",
    Operation.UPDATE: "{name} record updated successfully",
    Operation.DELETE: "{name} record deleted successfully",
    Operation.LIST_ASSOCIATED: "{name} {association} retrieved successfully",
    Operation.CREATE_ASSOCIATED: "{name} {association} created successfully",
    Operation.REPLACE_ASSOCIATED: "{name} {association} replaced successfully",
    Operation.REMOVE_ASSOCIATED: "{name} {association} link removed successfully",
    Operation.RUN_QUERY: "{name} executed successfully",
    Operation.CALL_PROCEDURE: "{name} executed successfully",
}

CREATED_OPERATIONS = {Operation.CREATE, Operation.CREATE_ASSOCIATED}


@dataclass(frozen=True)
class RouteSpec:
    """One generated route."""
    method: str
    path: str
    entity: str
    operation: Operation
    association: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.method:<6} {self.path}"


def query_method(entity: RegisteredEntity) -> str:
    """HTTP method of a query or procedure route."""
    descriptor = entity.descriptor
    if descriptor.method:
        return descriptor.method.upper()
    if entity.kind == EntityKind.PROCEDURE:
        return "POST"
    return "POST" if WRITE_KEYWORDS.search(descriptor.sql or "") else "GET"


class RestSurfaceGenerator:
    """
    Generates REST routes for every registered entity.

    Usage:
        generator = RestSurfaceGenerator(registry, dispatcher)
        app.include_router(generator.build_router())
    """

    def __init__(
        self,
        registry: EntityRegistry,
        dispatcher: Optional[OperationDispatcher] = None,  # only route_table() without one
        default_limit: int = 20,
        max_limit: int = 100,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.default_limit = default_limit
        self.max_limit = max_limit

    # -------------------------------------------------------------------------
    # Route table
    # -------------------------------------------------------------------------

    def route_table(self) -> list[RouteSpec]:
        """
        All routes in registration order.

        Fixed paths (queries, procedures, views) come first so they are never
        shadowed by a table's item route.
        """
        routes: list[RouteSpec] = []

        for entity in self.registry.by_kind(EntityKind.QUERY, EntityKind.PROCEDURE):
            operation = Operation.RUN_QUERY if entity.kind == EntityKind.QUERY else Operation.CALL_PROCEDURE
            routes.append(RouteSpec(query_method(entity), entity.route, entity.name, operation))

        for entity in self.registry.by_kind(EntityKind.VIEW):
            routes.append(RouteSpec("GET", entity.route, entity.name, Operation.LIST))

        for entity in self.registry.by_kind(EntityKind.TABLE):
            routes.extend(self._table_routes(entity))

        return routes

    def _table_routes(self, entity: RegisteredEntity) -> list[RouteSpec]:
        name = entity.name
        routes = [
            RouteSpec("GET", entity.route, name, Operation.LIST),
            RouteSpec("POST", entity.route, name, Operation.CREATE),
        ]
        if not entity.primary_key:
            return routes

        item = self.item_path(entity)

        for alias, assoc in entity.associations.items():
            nested = f"{item}/{alias}"
            routes.append(RouteSpec("GET", nested, name, Operation.LIST_ASSOCIATED, alias))
            routes.append(RouteSpec("POST", nested, name, Operation.CREATE_ASSOCIATED, alias))
            if assoc.type == AssociationType.BELONGS_TO_MANY:
                routes.append(RouteSpec("PUT", nested, name, Operation.REPLACE_ASSOCIATED, alias))
                routes.append(RouteSpec(
                    "DELETE", f"{nested}/{{{TARGET_KEY_PARAM}}}", name, Operation.REMOVE_ASSOCIATED, alias
                ))

        routes.extend([
            RouteSpec("GET", item, name, Operation.GET),
            RouteSpec("PUT", item, name, Operation.UPDATE),
            RouteSpec("DELETE", item, name, Operation.DELETE),
        ])
        return routes

    @staticmethod
    def item_path(entity: RegisteredEntity) -> str:
        segments = "/".join(f"{{{column}}}" for column in entity.primary_key)
        return f"{entity.route.rstrip('/')}/{segments}"

    # -------------------------------------------------------------------------
    # Router
    # -------------------------------------------------------------------------

    def build_router(self) -> APIRouter:
        """Create FastAPI router with all generated routes."""
        router = APIRouter()
        routes = self.route_table()

        for spec in routes:
            suffix = f"_{spec.association}" if spec.association else ""
            router.add_api_route(
                spec.path,
                self._make_handler(spec),
                methods=[spec.method],
                name=f"{spec.entity}_{spec.operation.value}{suffix}",
                tags=[spec.entity],
            )

        logger.info(f"Generated {len(routes)} REST routes for {len(self.registry)} entities")
        return router

    def _make_handler(self, spec: RouteSpec):
        entity = self.registry.resolve(spec.entity)

        async def handler(request: Request) -> JSONResponse:
            params = await self._read_params(request, entity, spec)
            principal = getattr(request.state, "principal", None)
            result = await self.dispatcher.dispatch(entity, spec.operation, params, principal)
            return self._respond(entity, spec, result)

        handler.__name__ = f"{spec.entity}_{spec.operation.value}"
        return handler

    async def _read_params(self, request: Request, entity: RegisteredEntity, spec: RouteSpec) -> OperationParams:
        operation = spec.operation
        params = OperationParams(association=spec.association)

        if entity.primary_key and operation not in (Operation.LIST, Operation.CREATE):
            params.key = tuple(request.path_params[c] for c in entity.primary_key)

        if operation in (Operation.LIST, Operation.LIST_ASSOCIATED):
            params.query = parse_list_params(
                request.query_params.multi_items(),
                default_limit=self.default_limit,
                max_limit=self.max_limit,
            )
        elif operation == Operation.GET:
            params.include = parse_include(request.query_params.get("include"))
        elif operation in (
            Operation.CREATE,
            Operation.UPDATE,
            Operation.CREATE_ASSOCIATED,
            Operation.REPLACE_ASSOCIATED,
        ):
            params.data = await _read_json(request)
        elif operation == Operation.REMOVE_ASSOCIATED:
            params.target_key = request.path_params[TARGET_KEY_PARAM]
        elif operation in (Operation.RUN_QUERY, Operation.CALL_PROCEDURE):
            if spec.method == "GET":
                params.arguments = dict(request.query_params)
            else:
                body = await _read_json(request, allow_empty=True)
                if body is not None and not isinstance(body, dict):
                    raise ValidationError([FieldViolation("body", "Request body must be a JSON object")])
                params.arguments = {**dict(request.query_params), **(body or {})}

        return params

    def _respond(self, entity: RegisteredEntity, spec: RouteSpec, result: ExecutionResult) -> JSONResponse:
        status_code = 201 if spec.operation in CREATED_OPERATIONS else 200
        default = DEFAULT_MESSAGES[spec.operation].format(name=entity.name, association=spec.association)
        envelope = SuccessEnvelope(
            message=entity.descriptor.message_for(status_code, default),
            data=jsonable_encoder(result.data),
            meta=result.meta,
        )
        body = envelope.model_dump()
        if result.meta is None:
            del body["meta"]
        return JSONResponse(body, status_code=status_code)


async def _read_json(request: Request, allow_empty: bool = False) -> Any:
    raw = await request.body()
    if not raw.strip():
        if allow_empty:
            return None
        raise ValidationError([FieldViolation("body", "Request body is required")])
    try:
        return await request.json()
    except ValueError:
        raise ValidationError([FieldViolation("body", "Request body is not valid JSON")]) from None
