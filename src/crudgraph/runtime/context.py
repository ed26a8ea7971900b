"""
Execution context for request processing.

Contains the identity supplied by the auth collaborator and the registry the
request is resolved against.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from crudgraph.core.registry import EntityRegistry


@dataclass(frozen=True)
class Principal:
    """
    Verified identity of the caller.

    Set on request.state.principal by an auth middleware. The engine passes it
    through validation and execution but applies no policy of its own.
    """
    user_id: Any = None
    role: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass
class ExecutionContext:
    """
    Context passed from a surface (REST handler or GraphQL resolver) to the
    dispatcher.
    """
    registry: "EntityRegistry"
    principal: Optional[Principal] = None
