#!/usr/bin/env python3
"""
crudgraph CLI - Main entry point.

Usage:
    crudgraph serve --entities entities.yaml      # Run the API server
    crudgraph routes --entities entities.yaml     # Print the REST route table

Database and server settings come from the environment (DATABASE_URL,
CRUDGRAPH_DEBUG, ...); see crudgraph.config.Settings.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from crudgraph.config import Settings, dialect_from_url, load_entities
from crudgraph.core.errors import RegistrationError


def _load(args: argparse.Namespace) -> tuple[Settings, list]:
    settings = Settings.from_env()
    if args.database_url:
        settings.database_url = args.database_url
    entities = load_entities(args.entities, dialect_from_url(settings.database_url))
    return settings, entities


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the API server."""
    import uvicorn

    from crudgraph.service.app import create_app

    try:
        settings, entities = _load(args)
    except RegistrationError as e:
        print(f"Error: {e}")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"Serving {len(entities)} entities on http://{args.host}:{args.port}")
    uvicorn.run(create_app(entities, settings), host=args.host, port=args.port)
    return 0


def cmd_routes(args: argparse.Namespace) -> int:
    """Register entities against the database and print the generated routes."""
    from crudgraph.api.rest import RestSurfaceGenerator
    from crudgraph.core.registry import build_registry
    from crudgraph.service.database import close_engine, create_db_engine

    try:
        settings, entities = _load(args)
    except RegistrationError as e:
        print(f"Error: {e}")
        return 1

    async def build():
        engine = create_db_engine(settings.database_url, settings.sql_echo)
        try:
            return await build_registry(entities, engine)
        finally:
            await close_engine(engine)

    try:
        registry = asyncio.run(build())
    except RegistrationError as e:
        print(f"Error: {e}")
        return 1

    for route in RestSurfaceGenerator(registry).route_table():
        print(f"{route}  ({route.entity}.{route.operation.value})")

    if settings.enable_graphql:
        print(f"\nGraphQL: {settings.graphql_path}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="crudgraph",
        description="crudgraph - REST and GraphQL APIs from your database schema"
    )
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--entities", "-e", required=True, help="Entity configuration (YAML)")
    serve_parser.add_argument("--database-url", help="Override DATABASE_URL")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind host")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Bind port")

    # routes
    routes_parser = subparsers.add_parser("routes", help="Print the generated REST routes")
    routes_parser.add_argument("--entities", "-e", required=True, help="Entity configuration (YAML)")
    routes_parser.add_argument("--database-url", help="Override DATABASE_URL")

    return parser


def app(args: Optional[List[str]] = None) -> int:
    """Main CLI application."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 0

    commands = {
        "serve": cmd_serve,
        "routes": cmd_routes,
    }

    handler = commands.get(parsed.command)
    if handler:
        return handler(parsed)

    parser.print_help()
    return 1


def main() -> None:
    """Entry point for CLI."""
    sys.exit(app())


if __name__ == "__main__":
    main()
