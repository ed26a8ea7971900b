"""
Service module - FastAPI app factory and database utilities.

Usage:
    from crudgraph.service import create_app
    from crudgraph.config import Settings, load_entities

    settings = Settings.from_env()
    app = create_app(load_entities("entities.yaml", "postgresql"), settings)
"""

from __future__ import annotations

from .app import HealthcheckLogFilter, create_app
from .database import close_engine, create_db_engine

__all__ = [
    "create_app",
    "HealthcheckLogFilter",
    "create_db_engine",
    "close_engine",
]
