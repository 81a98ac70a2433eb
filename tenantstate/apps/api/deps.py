from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from tenantstate.core.config import Settings, get_settings
from tenantstate.persistence.db import dispose_engines
from tenantstate.persistence.ledger import ResourceLedger
from tenantstate.services.state_store import TenantStateStore
from tenantstate.services.sweeper import ExpirySweeper


logger = logging.getLogger(__name__)


class ServiceContainer:
    """Process-wide wiring: one ledger and one sweeper shared by every store."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.ledger = ResourceLedger()
        self.sweeper = ExpirySweeper(interval_s=self.settings.sweep_interval_s)
        self.stores: dict[str, TenantStateStore] = {
            self.settings.component_name: TenantStateStore(
                self.settings.component_name,
                ledger=self.ledger,
                sweeper=self.sweeper,
                settings=self.settings,
            )
        }

    async def startup(self) -> None:
        self.sweeper.start()
        properties = self.settings.component_properties()
        if not properties:
            logger.warning("component_properties_missing", extra={"component": self.settings.component_name})
            return
        for store in self.stores.values():
            await store.init(properties)

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await dispose_engines()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_store(store_name: str, request: Request) -> TenantStateStore:
    # Unknown component names map to 404 like the sidecar does.
    store = get_container(request).stores.get(store_name)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "ERR_STATE_STORE_NOT_FOUND", "message": f"state store {store_name} is not found"},
        )
    return store


def request_metadata(request: Request) -> dict[str, str]:
    # Sidecar convention: per-request metadata travels as `metadata.<name>` query parameters.
    prefix = "metadata."
    return {
        name[len(prefix):]: value
        for name, value in request.query_params.items()
        if name.startswith(prefix) and len(name) > len(prefix)
    }
