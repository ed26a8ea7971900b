"""
Database utilities for crudgraph services.

Provides:
- Async engine construction from a URL or the DATABASE_URL environment
- Engine disposal on shutdown

The engine is handed to the app; crudgraph only acquires and releases
connections from its pool.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from crudgraph.config import get_database_url


def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an async engine for the given (or configured) database URL."""
    if echo is None:
        echo = os.getenv("SQL_ECHO", "").lower() == "true"
    return create_async_engine(url or get_database_url(), echo=echo)


async def close_engine(engine: AsyncEngine):
    """Close database connections."""
    await engine.dispose()
