"""
Runtime module - operation execution pipeline.
"""

from __future__ import annotations

from .context import ExecutionContext, Principal
from .dispatcher import OperationDispatcher
from .executor import ExecutionResult, Operation, OperationParams, QueryExecutor

__all__ = [
    "Principal",
    "ExecutionContext",
    "Operation",
    "OperationParams",
    "ExecutionResult",
    "QueryExecutor",
    "OperationDispatcher",
]
