from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateIndex, CreateSchema, CreateTable

from tenantstate.core.config import METADATA_SCHEMA
from tenantstate.domain.models import TenantRegistry, state_table, tenant_last_swept_index
from tenantstate.domain.state import ResolvedLocation


@dataclass(frozen=True)
class RegisteredTenant:
    tenant_key: str
    location: ResolvedLocation


async def ensure_registry(conn: AsyncConnection) -> None:
    # Idempotent so every process can run it on first activation.
    await conn.execute(CreateSchema(METADATA_SCHEMA, if_not_exists=True))
    await conn.execute(CreateTable(TenantRegistry.__table__, if_not_exists=True))
    await conn.execute(CreateIndex(tenant_last_swept_index, if_not_exists=True))


async def next_tenant_to_sweep(conn: AsyncConnection) -> RegisteredTenant | None:
    # Least recently swept first; never-swept tenants (NULL) lead the queue.
    row = (
        await conn.execute(
            select(TenantRegistry.tenant_key, TenantRegistry.schema_id, TenantRegistry.table_id)
            .order_by(TenantRegistry.last_swept_at.asc().nulls_first())
            .limit(1)
        )
    ).first()
    if row is None:
        return None
    return RegisteredTenant(tenant_key=row[0], location=ResolvedLocation(schema=row[1], table=row[2]))


async def delete_expired(conn: AsyncConnection, location: ResolvedLocation) -> int:
    table = state_table(location)
    result = await conn.execute(
        delete(table).where(table.c.expires_at.is_not(None), table.c.expires_at < func.now())
    )
    return result.rowcount or 0


async def mark_swept(conn: AsyncConnection, tenant_key: str) -> None:
    await conn.execute(
        update(TenantRegistry)
        .where(TenantRegistry.tenant_key == tenant_key)
        .values(last_swept_at=func.now())
    )


async def last_swept_at(conn: AsyncConnection, tenant_key: str):
    return (
        await conn.execute(select(TenantRegistry.last_swept_at).where(TenantRegistry.tenant_key == tenant_key))
    ).scalar_one_or_none()
