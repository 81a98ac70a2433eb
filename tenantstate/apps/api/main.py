from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from tenantstate.apps.api.deps import ServiceContainer
from tenantstate.apps.api.errors import (
    http_exception_handler,
    state_store_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantstate.apps.api.routes.health import router as health_router
from tenantstate.apps.api.routes.state import router as state_router
from tenantstate.core.config import Settings, get_settings
from tenantstate.core.errors import StateStoreError
from tenantstate.core.logging import configure_logging


def create_app(settings: Settings | None = None) -> FastAPI:
    configure_logging()
    settings = settings or get_settings()
    container = ServiceContainer(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        # Sweeper starts before store init so the registry handshake can complete.
        await container.startup()
        try:
            yield
        finally:
            await container.shutdown()

    app = FastAPI(title="tenantstate", lifespan=lifespan)
    app.state.container = container

    app.add_exception_handler(StateStoreError, state_store_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(state_router)
    return app
