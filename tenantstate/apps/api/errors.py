from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantstate.core.errors import (
    ConfigError,
    EtagInvalidError,
    EtagMismatchError,
    OperationError,
    ResourceMissingError,
    StateStoreError,
)


logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[StateStoreError], int], ...] = (
    (EtagMismatchError, 409),
    (EtagInvalidError, 400),
    (OperationError, 400),
    (ResourceMissingError, 503),
    (ConfigError, 500),
)


def status_for(exc: StateStoreError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def error_body(code: str, message: str) -> dict[str, str]:
    # Mirror the sidecar's error payload so existing clients parse it unchanged.
    return {"errorCode": code, "message": message}


async def state_store_exception_handler(request: Request, exc: StateStoreError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("state_request_failed", extra={"path": request.url.path}, exc_info=exc)
    return JSONResponse(content=error_body(exc.code, str(exc)), status_code=status_code)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    if isinstance(detail, dict):
        return str(detail.get("code") or f"ERR_HTTP_{status_code}"), str(detail.get("message") or "Request failed")
    if isinstance(detail, str):
        return f"ERR_HTTP_{status_code}", detail
    return f"ERR_HTTP_{status_code}", "Request failed"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(content=error_body(code, message), status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(content=error_body("ERR_MALFORMED_REQUEST", str(exc.errors())), status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error payload.
    logger.exception("unhandled_request_error", extra={"path": request.url.path})
    return JSONResponse(content=error_body("ERR_INTERNAL", "Internal server error"), status_code=500)
