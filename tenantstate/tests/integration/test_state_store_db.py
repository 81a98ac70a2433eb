from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.schema import DropSchema, DropTable

from tenantstate.core.config import Settings
from tenantstate.core.errors import EtagInvalidError, EtagMismatchError, ResourceMissingError
from tenantstate.domain.models import TenantRegistry, state_table
from tenantstate.domain.state import (
    DeleteOperation,
    DeleteRequest,
    GetRequest,
    ResolvedLocation,
    SetOperation,
    SetRequest,
    TransactRequest,
)
from tenantstate.persistence.db import get_engine
from tenantstate.persistence.ledger import ResourceLedger
from tenantstate.persistence.repos import registry as registry_repo
from tenantstate.services.state_store import TenantStateStore
from tenantstate.services.sweeper import ExpirySweeper
from tenantstate.services.tenancy import TenantResolver
from tenantstate.tests.utils.db import database_test_url, new_tenant_id, requires_db, tenant_metadata


pytestmark = requires_db


class _Harness:
    def __init__(self, mode: str) -> None:
        self.url = database_test_url() or ""
        self.properties = {"connectionString": self.url, "tenant": mode}
        self.resolver = TenantResolver.from_properties(self.properties)
        self.ledger = ResourceLedger()
        self.sweeper = ExpirySweeper(interval_s=60)
        self.store = TenantStateStore(
            f"it-{uuid4().hex[:8]}",
            ledger=self.ledger,
            sweeper=self.sweeper,
            settings=Settings(_env_file=None, registry_wait_timeout_s=10.0),
        )
        self.tenants: list[str] = []

    def tenant(self) -> dict[str, str]:
        tenant_id = new_tenant_id()
        self.tenants.append(tenant_id)
        return tenant_metadata(tenant_id)

    def location(self, metadata: dict[str, str]) -> ResolvedLocation:
        return self.resolver.resolve(metadata)

    async def start(self) -> None:
        # Init blocks on the handshake until a sweep pass establishes the registry.
        init = asyncio.create_task(self.store.init(self.properties))
        await asyncio.sleep(0)
        await self.sweeper.run_once()
        await init

    async def cleanup(self) -> None:
        engine = get_engine(self.url)
        async with engine.begin() as conn:
            for tenant_id in self.tenants:
                location = self.location(tenant_metadata(tenant_id))
                if self.resolver.config.tenant_mode == "schema":
                    await conn.execute(DropSchema(location.schema, cascade=True, if_exists=True))
                else:
                    await conn.execute(DropTable(state_table(location), if_exists=True))
                await conn.execute(delete(TenantRegistry).where(TenantRegistry.tenant_key == location.tenant_key))


@pytest.fixture(params=["schema", "table"])
async def harness(request):
    harness = _Harness(request.param)
    await harness.start()
    try:
        yield harness
    finally:
        await harness.cleanup()


def _json(data: bytes):
    return json.loads(data.decode("utf-8"))


@pytest.mark.asyncio
async def test_round_trip_and_etag(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b'{"a":1}', metadata=meta))

    result = await harness.store.get(GetRequest(key="k", metadata=meta))

    assert result is not None
    assert _json(result.data) == {"a": 1}
    assert result.etag.isdigit()


@pytest.mark.asyncio
async def test_tenants_are_isolated(harness: _Harness) -> None:
    first, second = harness.tenant(), harness.tenant()
    await harness.store.set(SetRequest(key="shared", value=b'"first"', metadata=first))

    assert await harness.store.get(GetRequest(key="shared", metadata=second)) is None

    await harness.store.set(SetRequest(key="shared", value=b'"second"', metadata=second))
    first_value = await harness.store.get(GetRequest(key="shared", metadata=first))
    assert first_value is not None and _json(first_value.data) == "first"


@pytest.mark.asyncio
async def test_blind_update_overwrites_and_changes_etag(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b"1", metadata=meta))
    before = await harness.store.get(GetRequest(key="k", metadata=meta))
    await harness.store.set(SetRequest(key="k", value=b"2", metadata=meta))
    after = await harness.store.get(GetRequest(key="k", metadata=meta))

    assert before is not None and after is not None
    assert _json(after.data) == 2
    assert after.etag != before.etag


@pytest.mark.asyncio
async def test_conditional_update_rejects_stale_etag(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b'"v1"', metadata=meta))
    v1 = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert v1 is not None

    await harness.store.set(SetRequest(key="k", value=b'"v2"', etag=v1.etag, metadata=meta))
    with pytest.raises(EtagMismatchError):
        await harness.store.set(SetRequest(key="k", value=b'"v3"', etag=v1.etag, metadata=meta))

    current = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert current is not None and _json(current.data) == "v2"


@pytest.mark.asyncio
async def test_conditional_update_of_missing_key_is_mismatch(harness: _Harness) -> None:
    meta = harness.tenant()
    with pytest.raises(EtagMismatchError):
        await harness.store.set(SetRequest(key="absent", value=b"1", etag="12345", metadata=meta))
    assert await harness.store.get(GetRequest(key="absent", metadata=meta)) is None


@pytest.mark.asyncio
async def test_malformed_etag_is_invalid(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b"1", metadata=meta))
    with pytest.raises(EtagInvalidError):
        await harness.store.set(SetRequest(key="k", value=b"2", etag="abc", metadata=meta))
    with pytest.raises(EtagInvalidError):
        await harness.store.delete(DeleteRequest(key="k", etag="-1", metadata=meta))


@pytest.mark.asyncio
async def test_ttl_hides_expired_rows_and_blocks_conditional_update(harness: _Harness) -> None:
    meta = harness.tenant()
    ttl_meta = {**meta, "ttlInSeconds": "1"}
    await harness.store.set(SetRequest(key="k", value=b'"short"', metadata=ttl_meta))
    live = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert live is not None

    await asyncio.sleep(2)

    assert await harness.store.get(GetRequest(key="k", metadata=meta)) is None
    with pytest.raises(EtagMismatchError):
        await harness.store.set(SetRequest(key="k", value=b'"late"', etag=live.etag, metadata=meta))


@pytest.mark.asyncio
async def test_blind_update_without_ttl_clears_expiry(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b"1", metadata={**meta, "ttlInSeconds": "1"}))
    await harness.store.set(SetRequest(key="k", value=b"2", metadata=meta))

    await asyncio.sleep(2)

    result = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert result is not None and _json(result.data) == 2


@pytest.mark.asyncio
async def test_delete_with_and_without_etag(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b"1", metadata=meta))
    stale = await harness.store.get(GetRequest(key="k", metadata=meta))
    await harness.store.set(SetRequest(key="k", value=b"2", metadata=meta))
    current = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert stale is not None and current is not None

    with pytest.raises(EtagMismatchError):
        await harness.store.delete(DeleteRequest(key="k", etag=stale.etag, metadata=meta))
    await harness.store.delete(DeleteRequest(key="k", etag=current.etag, metadata=meta))
    assert await harness.store.get(GetRequest(key="k", metadata=meta)) is None

    # Unconditional delete of a missing key is a no-op.
    await harness.store.delete(DeleteRequest(key="k", metadata=meta))


@pytest.mark.asyncio
async def test_parallel_first_writes_all_succeed(harness: _Harness) -> None:
    meta = harness.tenant()
    keys = [f"k{i}" for i in range(20)]

    await asyncio.gather(
        *(harness.store.set(SetRequest(key=key, value=json.dumps(key).encode(), metadata=meta)) for key in keys)
    )

    for key in keys:
        result = await harness.store.get(GetRequest(key=key, metadata=meta))
        assert result is not None and _json(result.data) == key


@pytest.mark.asyncio
async def test_transaction_is_all_or_nothing(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="a", value=b'"kept"', metadata=meta))
    stale = await harness.store.get(GetRequest(key="a", metadata=meta))
    await harness.store.set(SetRequest(key="a", value=b'"still kept"', metadata=meta))
    assert stale is not None

    with pytest.raises(EtagMismatchError):
        await harness.store.transact(
            TransactRequest(
                operations=[
                    SetOperation(key="b", value=b'"new"'),
                    DeleteOperation(key="a", etag=stale.etag),
                ],
                metadata=meta,
            )
        )

    assert await harness.store.get(GetRequest(key="b", metadata=meta)) is None
    kept = await harness.store.get(GetRequest(key="a", metadata=meta))
    assert kept is not None and _json(kept.data) == "still kept"


@pytest.mark.asyncio
async def test_transaction_spans_tenants(harness: _Harness) -> None:
    first, second = harness.tenant(), harness.tenant()
    await harness.store.transact(
        TransactRequest(
            operations=[
                SetOperation(key="k", value=b"1"),
                SetOperation(key="k", value=b"2", metadata=second),
            ],
            metadata=first,
        )
    )

    first_value = await harness.store.get(GetRequest(key="k", metadata=first))
    second_value = await harness.store.get(GetRequest(key="k", metadata=second))
    assert first_value is not None and _json(first_value.data) == 1
    assert second_value is not None and _json(second_value.data) == 2


@pytest.mark.asyncio
async def test_dropped_table_reports_missing_then_reprovisions(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b"1", metadata=meta))
    location = harness.location(meta)
    async with get_engine(harness.url).begin() as conn:
        await conn.execute(DropTable(state_table(location)))

    with pytest.raises(ResourceMissingError):
        await harness.store.set(SetRequest(key="k", value=b"2", metadata=meta))
    assert not harness.ledger.contains(location.table_resource)

    await harness.store.set(SetRequest(key="k", value=b"3", metadata=meta))
    result = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert result is not None and _json(result.data) == 3


@pytest.mark.asyncio
async def test_sweeper_purges_expired_rows(harness: _Harness) -> None:
    meta = harness.tenant()
    location = harness.location(meta)
    await harness.store.set(SetRequest(key="gone", value=b"1", metadata={**meta, "ttlInSeconds": "1"}))
    await harness.store.set(SetRequest(key="kept", value=b"2", metadata=meta))
    await asyncio.sleep(2)

    engine = get_engine(harness.url)
    # Other tenants may sit ahead in the queue; sweep until this one has been visited.
    swept_at = None
    for _ in range(50):
        await harness.sweeper.run_once()
        async with engine.begin() as conn:
            swept_at = await registry_repo.last_swept_at(conn, location.tenant_key)
        if swept_at is not None:
            break
    assert swept_at is not None

    table = state_table(location)
    async with engine.begin() as conn:
        remaining = (await conn.execute(select(table.c.key).order_by(table.c.key))).scalars().all()
        registered = (
            await conn.execute(
                select(func.count()).select_from(TenantRegistry).where(TenantRegistry.tenant_key == location.tenant_key)
            )
        ).scalar_one()
    assert remaining == ["kept"]
    assert registered == 1


@pytest.mark.asyncio
async def test_resave_with_longer_ttl_extends_expiry(harness: _Harness) -> None:
    meta = harness.tenant()
    await harness.store.set(SetRequest(key="k", value=b'"v1"', metadata={**meta, "ttlInSeconds": "1"}))
    await harness.store.set(SetRequest(key="k", value=b'"v2"', metadata={**meta, "ttlInSeconds": "10"}))

    await asyncio.sleep(2)

    result = await harness.store.get(GetRequest(key="k", metadata=meta))
    assert result is not None and _json(result.data) == "v2"


async def _sweep_until_stamp_changes(harness: _Harness, tenant_key: str, previous):
    engine = get_engine(harness.url)
    stamp = previous
    for _ in range(50):
        await harness.sweeper.run_once()
        async with engine.begin() as conn:
            stamp = await registry_repo.last_swept_at(conn, tenant_key)
        if stamp is not None and stamp != previous:
            return stamp
    return stamp


@pytest.mark.asyncio
async def test_repeated_sweeps_advance_last_swept_at(harness: _Harness) -> None:
    meta = harness.tenant()
    location = harness.location(meta)
    await harness.store.set(SetRequest(key="k", value=b"1", metadata=meta))

    first = await _sweep_until_stamp_changes(harness, location.tenant_key, None)
    assert first is not None
    second = await _sweep_until_stamp_changes(harness, location.tenant_key, first)

    assert second is not None
    assert second > first
