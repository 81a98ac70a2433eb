from __future__ import annotations

from datetime import datetime
from functools import lru_cache

from sqlalchemy import Column, DateTime, Index, MetaData, String, Table, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tenantstate.core.config import METADATA_SCHEMA, METADATA_TABLE
from tenantstate.domain.state import ResolvedLocation


class Base(DeclarativeBase):
    pass


class TenantRegistry(Base):
    __tablename__ = METADATA_TABLE
    __table_args__ = {"schema": METADATA_SCHEMA}

    # Quoted "schema"."table" pair; one row per provisioned tenant table.
    tenant_key: Mapped[str] = mapped_column(String, primary_key=True)
    schema_id: Mapped[str] = mapped_column(String, nullable=False)
    table_id: Mapped[str] = mapped_column(String, nullable=False)
    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    # Null until the first sweep so new tenants are picked up first.
    last_swept_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# Sweeper picks the least recently swept tenant; keep that ordering indexed.
tenant_last_swept_index = Index(
    "ix_tenant_last_swept_at",
    TenantRegistry.last_swept_at.asc().nulls_first(),
)


@lru_cache(maxsize=4096)
def state_table(location: ResolvedLocation) -> Table:
    # Tenant tables share one layout but live under per-tenant identifiers.
    metadata = MetaData(schema=location.schema)
    return Table(
        location.table,
        metadata,
        Column("key", Text, primary_key=True),
        Column("value", JSONB, nullable=False),
        Column("inserted_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=True),
        Column("expires_at", DateTime(timezone=True), nullable=True),
    )
