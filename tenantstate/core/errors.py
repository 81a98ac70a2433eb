from __future__ import annotations


class StateStoreError(Exception):
    """Base error for tenantstate."""

    code = "ERR_STATE_STORE"


class ConfigError(StateStoreError):
    """Missing or invalid component configuration; fatal at startup."""

    code = "ERR_CONFIG"


class OperationError(StateStoreError):
    """Request-level failure such as a missing tenant id."""

    code = "ERR_OPERATION"


class ValueInvalidError(OperationError):
    """State value is not a UTF-8 JSON document."""

    code = "ERR_VALUE_INVALID"


class EtagInvalidError(StateStoreError):
    """Caller supplied an etag that is not a valid row version."""

    code = "ERR_ETAG_INVALID"


class EtagMismatchError(StateStoreError):
    """Etag is stale or the row is missing or expired."""

    code = "ERR_ETAG_MISMATCH"


class ResourceMissingError(StateStoreError):
    """Tenant schema or table vanished; retry re-provisions it."""

    code = "ERR_RESOURCE_MISSING"


class DatabaseError(StateStoreError):
    """Database layer failure."""

    code = "ERR_DATABASE"
