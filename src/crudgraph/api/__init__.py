"""
API module - REST and GraphQL surfaces and error mapping.
"""

from __future__ import annotations

from .errors import ErrorMapper, install_error_handlers
from .graphql import GraphQLSurfaceGenerator
from .rest import RestSurfaceGenerator, RouteSpec

__all__ = [
    "ErrorMapper",
    "install_error_handlers",
    "RestSurfaceGenerator",
    "RouteSpec",
    "GraphQLSurfaceGenerator",
]
