from __future__ import annotations

from datetime import timedelta
import json
import logging
import re
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import Text, cast, delete, func, literal, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.schema import CreateSchema, CreateTable

from tenantstate.core.errors import (
    DatabaseError,
    EtagInvalidError,
    EtagMismatchError,
    ResourceMissingError,
    ValueInvalidError,
)
from tenantstate.domain.models import TenantRegistry, state_table
from tenantstate.domain.state import ResolvedLocation, StoredRecord
from tenantstate.persistence.db import is_duplicate_object_error, is_missing_relation_error
from tenantstate.persistence.ledger import ReleaseFn, ResourceLedger


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Row versions are PostgreSQL transaction ids: unsigned 32 bit, base 10.
_ETAG_PATTERN = re.compile(r"[0-9]{1,10}")
_MAX_XID = 0xFFFFFFFF

_ROW_VERSION = cast(literal_column("xmin"), Text)


def parse_etag(etag: str) -> int | None:
    """Return the row version encoded by `etag`, or None when it is malformed."""
    if not _ETAG_PATTERN.fullmatch(etag):
        return None
    version = int(etag)
    return version if version <= _MAX_XID else None


def decode_value(value: bytes | str) -> str:
    # Values are opaque to callers but persisted as JSONB, so they must be UTF-8 JSON text.
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            text = bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueInvalidError("state value is not valid UTF-8") from exc
    else:
        text = value
    try:
        json.loads(text)
    except ValueError as exc:
        raise ValueInvalidError("state value is not a valid JSON document") from exc
    return text


def _not_expired(table):
    return or_(table.c.expires_at.is_(None), table.c.expires_at > func.now())


def _expiry(ttl_seconds: int | None):
    if ttl_seconds is not None and ttl_seconds > 0:
        return func.now() + timedelta(seconds=int(ttl_seconds))
    return None


class RecordStore:
    """Conditional reads and writes against one tenant's state table.

    Every call runs on the caller's session so a batch can share one
    transaction. Schema and table provisioning runs on a separate connection
    and commits before the ledger records it.
    """

    def __init__(self, engine: AsyncEngine, ledger: ResourceLedger) -> None:
        self._engine = engine
        self._ledger = ledger
        # Tables provisioned while the registry was missing; never swept until registered.
        self._unregistered: set[ResolvedLocation] = set()

    async def _provision(self, statements: list, *, resource: str) -> None:
        try:
            async with self._engine.begin() as conn:
                for statement in statements:
                    await conn.execute(statement)
        except SQLAlchemyError as exc:
            # A creator in another process can still win the race despite IF NOT EXISTS.
            if is_duplicate_object_error(exc):
                logger.warning("provision_raced", extra={"resource": resource})
                return
            raise DatabaseError(f"Failed to provision {resource}") from exc

    async def _create_schema(self, location: ResolvedLocation) -> None:
        await self._provision(
            [CreateSchema(location.schema, if_not_exists=True)],
            resource=location.schema_resource,
        )

    async def _create_table(self, location: ResolvedLocation) -> None:
        await self._provision(
            [CreateTable(state_table(location), if_not_exists=True)],
            resource=location.table_resource,
        )
        await self._register_tenant(location)

    async def _register_tenant(self, location: ResolvedLocation) -> None:
        statement = (
            pg_insert(TenantRegistry)
            .values(tenant_key=location.tenant_key, schema_id=location.schema, table_id=location.table)
            .on_conflict_do_nothing(index_elements=[TenantRegistry.tenant_key])
        )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(statement)
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc):
                # Registry not established yet; retried on the next write to this tenant.
                logger.warning("tenant_registry_missing", extra={"tenant_key": location.tenant_key})
                self._unregistered.add(location)
                return
            raise DatabaseError(f"Failed to register tenant {location.tenant_key}") from exc
        self._unregistered.discard(location)

    async def ensure_storage(self, location: ResolvedLocation) -> list[ReleaseFn]:
        """Provision the tenant's schema and table through the ledger.

        Runs on its own connections, so callers should invoke it before their
        session checks out a connection. Returns the ledger release handles.
        """
        releases = [
            await self._ledger.ensure_exists(location.schema_resource, lambda: self._create_schema(location)),
            await self._ledger.ensure_exists(location.table_resource, lambda: self._create_table(location)),
        ]
        if location in self._unregistered:
            await self._register_tenant(location)
        return releases

    async def _with_resources(self, location: ResolvedLocation, operation: Callable[[], Awaitable[T]]) -> T:
        releases = await self.ensure_storage(location)
        try:
            return await operation()
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc):
                # The ledger was stale; drop it so the next call provisions again.
                for release in releases:
                    release()
                raise ResourceMissingError(f"{location.tenant_key} does not exist") from exc
            raise DatabaseError(f"State operation on {location.tenant_key} failed") from exc

    async def get(self, session: AsyncSession, location: ResolvedLocation, key: str) -> StoredRecord | None:
        table = state_table(location)
        statement = select(cast(table.c.value, Text), _ROW_VERSION).where(
            table.c.key == key,
            _not_expired(table),
        )
        try:
            row = (await session.execute(statement)).first()
        except SQLAlchemyError as exc:
            if is_missing_relation_error(exc):
                # Nothing was ever written for this tenant.
                logger.info("state_table_missing", extra={"tenant_key": location.tenant_key})
                return None
            raise DatabaseError(f"State operation on {location.tenant_key} failed") from exc
        if row is None:
            return None
        return StoredRecord(value=row[0], etag=row[1])

    async def upsert(
        self,
        session: AsyncSession,
        location: ResolvedLocation,
        key: str,
        value: bytes | str,
        *,
        etag: str | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        document = cast(literal(decode_value(value), Text), JSONB)
        version = None
        if etag:
            version = parse_etag(etag)
            if version is None:
                raise EtagInvalidError(f"etag '{etag}' is not a valid row version")
        table = state_table(location)
        expires_at = _expiry(ttl_seconds)

        async def write() -> None:
            if version is None:
                insert = pg_insert(table).values(key=key, value=document, expires_at=expires_at)
                statement = insert.on_conflict_do_update(
                    index_elements=[table.c.key],
                    set_={
                        "value": insert.excluded.value,
                        "updated_at": func.now(),
                        "expires_at": insert.excluded.expires_at,
                    },
                )
                await session.execute(statement)
                return
            statement = (
                update(table)
                .where(table.c.key == key, _ROW_VERSION == str(version), _not_expired(table))
                .values(value=document, updated_at=func.now(), expires_at=expires_at)
            )
            result = await session.execute(statement)
            if not result.rowcount:
                raise EtagMismatchError(f"etag '{etag}' does not match key '{key}'")

        await self._with_resources(location, write)

    async def delete(
        self,
        session: AsyncSession,
        location: ResolvedLocation,
        key: str,
        *,
        etag: str | None = None,
    ) -> None:
        version = None
        if etag:
            version = parse_etag(etag)
            if version is None:
                raise EtagInvalidError(f"etag '{etag}' is not a valid row version")
        table = state_table(location)

        async def remove() -> None:
            statement = delete(table).where(table.c.key == key)
            if version is not None:
                statement = statement.where(_ROW_VERSION == str(version))
            result = await session.execute(statement)
            if version is not None and not result.rowcount:
                raise EtagMismatchError(f"etag '{etag}' does not match key '{key}'")

        await self._with_resources(location, remove)
