from __future__ import annotations

from typing import Mapping

from tenantstate.core.errors import OperationError
from tenantstate.domain.state import TENANT_ID_KEY, TTL_KEY


# NAMEDATALEN - 1 on a stock PostgreSQL build.
MAX_IDENTIFIER_BYTES = 63


def require_tenant_id(metadata: Mapping[str, str] | None) -> str:
    # Every state operation is tenant scoped; never fall back to a default tenant.
    tenant_id = (metadata or {}).get(TENANT_ID_KEY)
    if not tenant_id:
        raise OperationError("missing tenant id")
    return tenant_id


def parse_ttl_seconds(metadata: Mapping[str, str] | None) -> int | None:
    # Absent TTL means the record never expires; zero or negative values mean the same.
    raw = (metadata or {}).get(TTL_KEY)
    if raw is None or raw == "":
        return None
    try:
        ttl = int(raw)
    except (TypeError, ValueError) as exc:
        raise OperationError(f"'{TTL_KEY}' must be an integer number of seconds, got '{raw}'") from exc
    return ttl if ttl > 0 else None


def require_identifier(value: str | None, *, name: str) -> str:
    # Identifiers end up quoted in DDL; refuse empty or NUL-bearing names up front.
    if not value:
        raise OperationError(f"'{name}' is not set")
    if "\x00" in value:
        raise OperationError(f"'{name}' contains a NUL character")
    # PostgreSQL silently truncates longer names, which would merge distinct tenants.
    if len(value.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        raise OperationError(
            f"'{name}' identifier '{value}' exceeds {MAX_IDENTIFIER_BYTES} bytes; use a shorter tenant id"
        )
    return value
