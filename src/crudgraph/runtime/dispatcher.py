"""
Operation dispatcher - the request pipeline shared by REST and GraphQL.

For every operation: validate (writes only), then execute. Validation always
completes before any statement of the operation runs. Updates first check
that the target record exists.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from crudgraph.core.defs import AssociationType
from crudgraph.core.registry import EntityRegistry, RegisteredEntity
from crudgraph.core.validator import WriteValidator

from .context import Principal
from .executor import ExecutionResult, Operation, OperationParams, QueryExecutor

logger = logging.getLogger(__name__)


class OperationDispatcher:
    """
    Usage:
        dispatcher = OperationDispatcher(registry, executor)
        result = await dispatcher.dispatch(
            "users", Operation.CREATE, OperationParams(data={...}), principal
        )
    """

    def __init__(
        self,
        registry: EntityRegistry,
        executor: QueryExecutor,
        validator: Optional[WriteValidator] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.validator = validator or WriteValidator(executor)

    async def dispatch(
        self,
        entity: Union[str, RegisteredEntity],
        operation: Operation,
        params: Optional[OperationParams] = None,
        principal: Optional[Principal] = None,
    ) -> ExecutionResult:
        if isinstance(entity, str):
            entity = self.registry.resolve(entity)
        params = params or OperationParams()

        if operation == Operation.CREATE:
            await self._validate(entity, "create", params.data, principal=principal)
        elif operation == Operation.UPDATE:
            # A missing record is 404 whatever the payload collides with
            await self.executor.execute(entity, Operation.GET, OperationParams(key=params.key), principal)
            await self._validate(entity, "update", params.data, key=params.key, principal=principal)
        elif operation == Operation.CREATE_ASSOCIATED:
            await self._validate_associated(entity, params, principal)

        return await self.executor.execute(entity, operation, params, principal)

    async def _validate(self, entity: RegisteredEntity, operation: str, payload, key=None, principal=None):
        result = await self.validator.validate_for_write(
            entity, operation, payload, key=key, principal=principal
        )
        if not result.valid:
            logger.debug(f"Rejected {operation} on '{entity.name}' with status {result.status_code}")
        result.raise_for_status()

    async def _validate_associated(
        self,
        entity: RegisteredEntity,
        params: OperationParams,
        principal: Optional[Principal],
    ):
        """Validate the payload against the target entity it will be written to."""
        assoc = entity.association(params.association) if params.association else None
        if assoc is None:
            return  # executor answers 404
        target = self.registry.resolve(assoc.target)
        payload = params.data

        if assoc.type in (AssociationType.HAS_ONE, AssociationType.HAS_MANY):
            source = await self.executor.execute(
                entity, Operation.GET, OperationParams(key=params.key), principal
            )
            if isinstance(payload, dict):
                payload = {**payload, assoc.foreign_key: source.data[assoc.source_key]}
        elif assoc.type == AssociationType.BELONGS_TO_MANY:
            if isinstance(payload, dict) and set(payload) == {"ids"}:
                return  # linking existing records; executor checks they exist

        await self._validate(target, "create", payload, principal=principal)
