from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Mapping, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantstate.core.config import Settings, get_settings
from tenantstate.core.errors import ConfigError, OperationError
from tenantstate.domain.state import (
    FEATURE_ETAG,
    FEATURE_TRANSACTIONAL,
    DeleteRequest,
    GetRequest,
    GetResponse,
    SetRequest,
    TransactRequest,
)
from tenantstate.persistence import db as db_module
from tenantstate.persistence.guards import parse_ttl_seconds
from tenantstate.persistence.ledger import ResourceLedger
from tenantstate.persistence.repos.records import RecordStore
from tenantstate.services.handshake import RegistryHandshake
from tenantstate.services.sweeper import ExpirySweeper
from tenantstate.services.tenancy import TenantResolver
from tenantstate.services.transactions import TransactionCoordinator


logger = logging.getLogger(__name__)

T = TypeVar("T")

FEATURES = [FEATURE_ETAG, FEATURE_TRANSACTIONAL]


class TenantStateStore:
    """Host-facing state store; configuration arrives later through `init`.

    The ledger and sweeper are process-wide collaborators handed in by the
    service container so every store instance shares them.
    """

    def __init__(
        self,
        instance_id: str,
        *,
        ledger: ResourceLedger | None = None,
        sweeper: ExpirySweeper | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.instance_id = instance_id
        self._ledger = ledger or ResourceLedger()
        self._sweeper = sweeper
        self._settings = settings or get_settings()
        self._resolver: TenantResolver | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None
        self._records: RecordStore | None = None
        self._transactions: TransactionCoordinator | None = None
        self.handshake = RegistryHandshake()

    @property
    def initialized(self) -> bool:
        return self._resolver is not None

    async def init(self, properties: Mapping[str, str], *, wait_for_registry: bool | None = None) -> None:
        resolver = TenantResolver.from_properties(properties)
        connection_string = resolver.config.connection_string
        sessions = db_module.get_sessionmaker(connection_string)
        records = RecordStore(db_module.get_engine(connection_string), self._ledger)

        wait = self._settings.wait_for_registry if wait_for_registry is None else wait_for_registry
        if self._sweeper is not None:
            self._sweeper.register_store(self.instance_id, connection_string, self.handshake)
        if wait:
            if self._sweeper is None:
                raise ConfigError("Store init waits for the tenant registry but no expiry sweeper is configured")
            await self.handshake.wait(self._settings.registry_wait_timeout_s)

        self._resolver = resolver
        self._sessions = sessions
        self._records = records
        self._transactions = TransactionCoordinator(records, resolver)
        logger.info(
            "state_store_initialized",
            extra={"instance_id": self.instance_id, "tenant_mode": resolver.config.tenant_mode},
        )

    def _require_init(self) -> tuple[TenantResolver, async_sessionmaker[AsyncSession], RecordStore]:
        if self._resolver is None or self._sessions is None or self._records is None or self._transactions is None:
            raise OperationError("State store has not been initialized")
        return self._resolver, self._sessions, self._records

    async def _bounded(self, operation: Awaitable[T], timeout_s: float | None, name: str) -> T:
        # Cancellation unwinds through the session context, which rolls back and frees the connection.
        if timeout_s is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise OperationError(f"{name} timed out after {timeout_s:g}s") from exc

    async def features(self) -> list[str]:
        logger.info("state_store_features", extra={"instance_id": self.instance_id, "features": FEATURES})
        return list(FEATURES)

    async def get(self, request: GetRequest, *, timeout_s: float | None = None) -> GetResponse | None:
        resolver, sessions, records = self._require_init()
        location = resolver.resolve(request.metadata)

        async def _get() -> GetResponse | None:
            async with sessions() as session:
                record = await records.get(session, location, request.key)
            if record is None:
                logger.debug("state_not_found", extra={"key": request.key})
                return None
            return GetResponse(data=record.value.encode("utf-8"), etag=record.etag)

        return await self._bounded(_get(), timeout_s, "get")

    async def set(self, request: SetRequest, *, timeout_s: float | None = None) -> None:
        resolver, sessions, records = self._require_init()
        location = resolver.resolve(request.metadata)
        ttl_seconds = parse_ttl_seconds(request.metadata)

        async def _set() -> None:
            async with sessions() as session:
                try:
                    async with session.begin():
                        await records.upsert(
                            session,
                            location,
                            request.key,
                            request.value,
                            etag=request.etag,
                            ttl_seconds=ttl_seconds,
                        )
                except Exception:
                    logger.warning("set_rolled_back", extra={"key": request.key}, exc_info=True)
                    raise

        await self._bounded(_set(), timeout_s, "set")

    async def delete(self, request: DeleteRequest, *, timeout_s: float | None = None) -> None:
        resolver, sessions, records = self._require_init()
        location = resolver.resolve(request.metadata)

        async def _delete() -> None:
            async with sessions() as session:
                try:
                    async with session.begin():
                        await records.delete(session, location, request.key, etag=request.etag)
                except Exception:
                    logger.warning("delete_rolled_back", extra={"key": request.key}, exc_info=True)
                    raise

        await self._bounded(_delete(), timeout_s, "delete")

    async def transact(self, request: TransactRequest, *, timeout_s: float | None = None) -> None:
        _resolver, sessions, _records = self._require_init()
        transactions = self._transactions
        await self._bounded(
            transactions.apply(sessions, request.operations, request.metadata),
            timeout_s,
            "transact",
        )
