"""
crudgraph CLI - Command line tools for serving and inspecting entity APIs.
"""

from __future__ import annotations

from .main import app, main

__all__ = ["main", "app"]
