from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Callable, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantstate.core.config import get_settings
from tenantstate.persistence import db as db_module
from tenantstate.persistence.repos import registry as registry_repo
from tenantstate.services.handshake import RegistryHandshake


logger = logging.getLogger(__name__)

SweeperState = Literal["idle", "first_run", "sweeping", "stopped"]


@dataclass(frozen=True)
class _RegisteredStore:
    instance_id: str
    connection_string: str
    handshake: RegistryHandshake


@dataclass
class SweepReport:
    sequence: int
    tenants_swept: list[str] = field(default_factory=list)
    rows_deleted: int = 0


class ExpirySweeper:
    """Background purge of expired rows, one tenant per database per pass.

    The sweeper owns the shared tenant registry: the first pass against a
    database creates it and releases every store instance waiting on that
    database's handshake.
    """

    def __init__(
        self,
        *,
        interval_s: float | None = None,
        engine_factory: Callable[[str], AsyncEngine] | None = None,
    ) -> None:
        self.interval_s = float(interval_s if interval_s is not None else get_settings().sweep_interval_s)
        self._engine_factory = engine_factory or db_module.get_engine
        self._stores: dict[str, _RegisteredStore] = {}
        self._established: set[str] = set()
        self._sequence = 0
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.state: SweeperState = "idle"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_store(self, instance_id: str, connection_string: str, handshake: RegistryHandshake) -> None:
        # First registration wins for an instance id, matching host re-init behavior.
        normalized = db_module.normalize_connection_string(connection_string)
        if instance_id not in self._stores:
            self._stores[instance_id] = _RegisteredStore(instance_id, normalized, handshake)
        if normalized in self._established:
            handshake.release()
        # Skip the remaining interval so a waiting init is released promptly.
        self._wake.set()

    def _release_handshakes(self, connection_string: str) -> None:
        for store in self._stores.values():
            if store.connection_string == connection_string and not store.handshake.released:
                store.handshake.release()
                logger.info("store_init_released", extra={"instance_id": store.instance_id})

    async def _sweep_database(self, connection_string: str, report: SweepReport) -> None:
        engine = self._engine_factory(connection_string)
        if connection_string not in self._established:
            self.state = "first_run"
            async with engine.begin() as conn:
                await registry_repo.ensure_registry(conn)
            self._established.add(connection_string)
            logger.info("tenant_registry_established")
        self._release_handshakes(connection_string)

        self.state = "sweeping"
        async with engine.begin() as conn:
            tenant = await registry_repo.next_tenant_to_sweep(conn)
        if tenant is None:
            logger.info("sweep_registry_empty", extra={"seq": report.sequence})
            return

        try:
            async with engine.begin() as conn:
                deleted = await registry_repo.delete_expired(conn, tenant.location)
            report.rows_deleted += deleted
            logger.info(
                "sweep_tenant_purged",
                extra={"tenant_key": tenant.tenant_key, "rows_deleted": deleted, "seq": report.sequence},
            )
        except SQLAlchemyError:
            # Stamp anyway below so one broken tenant cannot monopolize the queue.
            logger.exception("sweep_tenant_failed", extra={"tenant_key": tenant.tenant_key})

        async with engine.begin() as conn:
            await registry_repo.mark_swept(conn, tenant.tenant_key)
        report.tenants_swept.append(tenant.tenant_key)

    async def run_once(self) -> SweepReport:
        self._sequence += 1
        report = SweepReport(sequence=self._sequence)
        connection_strings = list(dict.fromkeys(store.connection_string for store in self._stores.values()))
        if not connection_strings:
            logger.info("sweep_no_stores", extra={"seq": report.sequence})
            return report
        logger.debug("sweep_pass", extra={"seq": report.sequence, "stores": len(self._stores)})
        for connection_string in connection_strings:
            try:
                await self._sweep_database(connection_string, report)
            except Exception:  # noqa: BLE001 - one unreachable database must not block the others.
                logger.exception("sweep_database_failed", extra={"seq": report.sequence})
        self.state = "idle"
        return report

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def run(self) -> None:
        # Sweep on a fixed cadence and keep going after failures; only stop/cancel ends the loop.
        logger.info("expiry_sweeper_started", extra={"interval_s": self.interval_s})
        try:
            while not self._stopping.is_set():
                try:
                    await self.run_once()
                except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                    logger.exception("sweep_pass_failed")
                    self.state = "idle"
                if self._stopping.is_set():
                    break
                await self._sleep()
        finally:
            self.state = "stopped"
            logger.info("expiry_sweeper_stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name="expiry-sweeper")
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        self._wake.set()
        task = self._task
        if task is None:
            self.state = "stopped"
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
