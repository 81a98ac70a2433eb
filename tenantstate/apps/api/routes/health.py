from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantstate.apps.api.deps import get_container

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    sweeper: str
    stores: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    # Report readiness per store so a sidecar can hold traffic until init completes.
    container = get_container(request)
    return HealthResponse(
        status="ok",
        sweeper=container.sweeper.state,
        stores={name: store.initialized for name, store in container.stores.items()},
    )
