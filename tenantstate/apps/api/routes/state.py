from __future__ import annotations

import json
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, Request, Response, status
from pydantic import BaseModel, Field

from tenantstate.apps.api.deps import get_container, get_store, request_metadata
from tenantstate.domain.state import (
    DeleteOperation,
    DeleteRequest,
    GetRequest,
    Operation,
    SetOperation,
    SetRequest,
    TransactRequest,
)
from tenantstate.services.state_store import TenantStateStore


router = APIRouter(prefix="/v1.0", tags=["state"])


class StateItem(BaseModel):
    key: str = Field(min_length=1)
    value: Any = None
    etag: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class TransactionItem(BaseModel):
    operation: Literal["upsert", "delete"]
    request: StateItem


class TransactionBody(BaseModel):
    operations: list[TransactionItem] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class FeaturesResponse(BaseModel):
    features: list[str]


def _encode_value(value: Any) -> bytes:
    # Clients send JSON values; the store keeps their serialized form.
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def _to_operation(item: TransactionItem) -> Operation:
    if item.operation == "upsert":
        return SetOperation(
            key=item.request.key,
            value=_encode_value(item.request.value),
            etag=item.request.etag,
            metadata=item.request.metadata,
        )
    return DeleteOperation(key=item.request.key, etag=item.request.etag, metadata=item.request.metadata)


def _timeout(request: Request) -> float | None:
    timeout_s = get_container(request).settings.operation_timeout_s
    return timeout_s if timeout_s > 0 else None


@router.get("/state/{store_name}/{key}")
async def get_state(
    key: str,
    request: Request,
    store: TenantStateStore = Depends(get_store),
) -> Response:
    result = await store.get(GetRequest(key=key, metadata=request_metadata(request)), timeout_s=_timeout(request))
    if result is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return Response(content=result.data, media_type="application/json", headers={"ETag": result.etag})


@router.post("/state/{store_name}", status_code=status.HTTP_204_NO_CONTENT)
async def save_state(
    items: list[StateItem],
    request: Request,
    store: TenantStateStore = Depends(get_store),
) -> Response:
    # Bulk saves are applied one by one; use the transaction endpoint for atomic batches.
    query_metadata = request_metadata(request)
    for item in items:
        await store.set(
            SetRequest(
                key=item.key,
                value=_encode_value(item.value),
                etag=item.etag,
                metadata={**query_metadata, **item.metadata},
            ),
            timeout_s=_timeout(request),
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/state/{store_name}/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_state(
    key: str,
    request: Request,
    store: TenantStateStore = Depends(get_store),
    if_match: str | None = Header(default=None),
) -> Response:
    await store.delete(
        DeleteRequest(key=key, etag=if_match, metadata=request_metadata(request)),
        timeout_s=_timeout(request),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/state/{store_name}/transaction", status_code=status.HTTP_204_NO_CONTENT)
async def transact_state(
    body: TransactionBody,
    request: Request,
    store: TenantStateStore = Depends(get_store),
) -> Response:
    metadata = {**request_metadata(request), **body.metadata}
    await store.transact(
        TransactRequest(operations=[_to_operation(item) for item in body.operations], metadata=metadata),
        timeout_s=_timeout(request),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/metadata/{store_name}/features", response_model=FeaturesResponse)
async def get_features(store: TenantStateStore = Depends(get_store)) -> FeaturesResponse:
    return FeaturesResponse(features=await store.features())
