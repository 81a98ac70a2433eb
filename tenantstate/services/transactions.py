from __future__ import annotations

import logging
from typing import Callable, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tenantstate.core.errors import OperationError
from tenantstate.domain.state import DeleteOperation, Operation, ResolvedLocation, SetOperation
from tenantstate.persistence.guards import parse_ttl_seconds
from tenantstate.persistence.repos.records import RecordStore
from tenantstate.services.tenancy import TenantResolver


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class TransactionCoordinator:
    """Apply an ordered batch of sets and deletes all-or-nothing."""

    def __init__(self, records: RecordStore, resolver: TenantResolver) -> None:
        self._records = records
        self._resolver = resolver

    def _locate(self, operation: Operation, metadata: Mapping[str, str]) -> ResolvedLocation:
        # Operation metadata overrides the request metadata for tenant routing.
        return self._resolver.resolve({**metadata, **(operation.metadata or {})})

    async def _apply_one(
        self,
        session: AsyncSession,
        operation: Operation,
        location: ResolvedLocation,
        ttl_seconds: int | None,
    ) -> None:
        if isinstance(operation, SetOperation):
            await self._records.upsert(
                session,
                location,
                operation.key,
                operation.value,
                etag=operation.etag,
                ttl_seconds=ttl_seconds,
            )
        elif isinstance(operation, DeleteOperation):
            await self._records.delete(session, location, operation.key, etag=operation.etag)
        else:
            raise OperationError(f"Unsupported transaction operation '{type(operation).__name__}'")

    async def apply(
        self,
        session_factory: SessionFactory,
        operations: Sequence[Operation],
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        if not operations:
            return
        metadata = metadata or {}
        # One TTL applies to every set in the batch.
        ttl_seconds = parse_ttl_seconds(metadata)
        planned = [(operation, self._locate(operation, metadata)) for operation in operations]
        # Provision cold tenants before the session holds a pooled connection.
        for location in dict.fromkeys(location for _operation, location in planned):
            await self._records.ensure_storage(location)
        async with session_factory() as session:
            try:
                async with session.begin():
                    for operation, location in planned:
                        await self._apply_one(session, operation, location, ttl_seconds)
            except Exception:
                logger.warning("transaction_rolled_back", extra={"operations": len(planned)})
                raise
