"""
App factory for crudgraph services.

Creates a pre-configured FastAPI application with:
- CORS middleware
- Error envelope handlers
- Health check and entity listing endpoints
- Lifespan that builds the entity registry before any route is mounted
- Logging filter to suppress noisy healthcheck logs

If the registry cannot be built (missing table, invalid association,
procedure without routine name) startup fails and nothing is served.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from crudgraph.api.errors import ErrorMapper, install_error_handlers
from crudgraph.api.graphql import GraphQLSurfaceGenerator
from crudgraph.api.rest import RestSurfaceGenerator
from crudgraph.config import Settings
from crudgraph.core.defs import EntityDescriptor
from crudgraph.core.errors import RegistrationError
from crudgraph.core.registry import build_registry
from crudgraph.runtime.dispatcher import OperationDispatcher
from crudgraph.runtime.executor import QueryExecutor

from .database import close_engine, create_db_engine

logger = logging.getLogger(__name__)


class HealthcheckLogFilter(logging.Filter):
    """Filter out noisy healthcheck and entity listing logs."""

    FILTERED_PATHS = ("/__entities", "/health")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for path in self.FILTERED_PATHS:
            if f'"{path}' in message or f" {path} " in message:
                return False
        return True


def _setup_logging_filter():
    """Add filter to uvicorn access logger to suppress healthcheck logs."""
    uvicorn_access = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, HealthcheckLogFilter) for f in uvicorn_access.filters):
        uvicorn_access.addFilter(HealthcheckLogFilter())


def create_app(
    descriptors: Iterable[EntityDescriptor],
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """
    Create a FastAPI app serving the given entities.

    Args:
        descriptors: Entity descriptors, registered once at startup
        settings: Process settings (default: from environment)
        engine: Async engine to use; created from settings.database_url if
            omitted (and then disposed on shutdown)

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()
    descriptors = list(descriptors)
    error_mapper = ErrorMapper(debug=settings.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        _setup_logging_filter()
        db_engine = engine or create_db_engine(settings.database_url, settings.sql_echo)

        try:
            registry = await build_registry(descriptors, db_engine)
        except RegistrationError as e:
            logger.error(f"Entity registration failed, not serving traffic:\n{e}")
            if engine is None:
                await close_engine(db_engine)
            raise

        executor = QueryExecutor(
            registry,
            db_engine,
            query_timeout=settings.query_timeout,
            default_limit=settings.default_page_size,
            max_limit=settings.max_page_size,
        )
        dispatcher = OperationDispatcher(registry, executor)

        app.state.registry = registry
        app.state.executor = executor
        app.state.dispatcher = dispatcher

        if settings.enable_rest:
            rest = RestSurfaceGenerator(
                registry,
                dispatcher,
                default_limit=settings.default_page_size,
                max_limit=settings.max_page_size,
            )
            app.include_router(rest.build_router())

        if settings.enable_graphql:
            gql = GraphQLSurfaceGenerator(
                registry, dispatcher, error_mapper=error_mapper, max_limit=settings.max_page_size
            )
            if gql.build_schema() is not None:
                app.include_router(gql.build_router(settings.graphql_path))
            else:
                logger.warning("No table entities registered; GraphQL endpoint disabled")

        logger.info(f"{settings.service_name} ready with {len(registry)} entities")

        yield

        # Shutdown
        if engine is None:
            await close_engine(db_engine)

    app = FastAPI(
        title=f"{settings.service_name.replace('_', ' ').title()} API",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app, error_mapper)
    app.state.settings = settings

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/__entities")
    async def list_entities(request: Request):
        """Registered entities with their routes, columns and associations."""
        registry = request.app.state.registry
        return {
            "message": f"{settings.service_name} API",
            "data": [entity.to_dict() for entity in registry.all()],
        }

    return app
