from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence, Union


TenantMode = Literal["schema", "table"]

TENANT_MODE_SCHEMA: TenantMode = "schema"
TENANT_MODE_TABLE: TenantMode = "table"
TENANT_MODES: tuple[str, ...] = (TENANT_MODE_SCHEMA, TENANT_MODE_TABLE)

# Request metadata keys defined by the plugin host.
TENANT_ID_KEY = "tenantId"
TTL_KEY = "ttlInSeconds"

FEATURE_ETAG = "ETAG"
FEATURE_TRANSACTIONAL = "TRANSACTIONAL"


@dataclass(frozen=True)
class TenantConfig:
    tenant_mode: TenantMode
    default_schema: str
    default_table: str
    connection_string: str


@dataclass(frozen=True)
class ResolvedLocation:
    schema: str
    table: str

    @property
    def tenant_key(self) -> str:
        # Registry identity mirrors how the table is addressed in SQL.
        return f'"{self.schema}"."{self.table}"'

    @property
    def schema_resource(self) -> str:
        return f"schema:{self.schema}"

    @property
    def table_resource(self) -> str:
        return f"table:{self.schema}.{self.table}"


@dataclass(frozen=True)
class StoredRecord:
    value: str
    etag: str


@dataclass(frozen=True)
class GetRequest:
    key: str
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GetResponse:
    data: bytes
    etag: str


@dataclass(frozen=True)
class SetOperation:
    key: str
    value: bytes
    etag: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteOperation:
    key: str
    etag: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


# Single set/delete requests share the shape of their transactional counterparts.
SetRequest = SetOperation
DeleteRequest = DeleteOperation

Operation = Union[SetOperation, DeleteOperation]


@dataclass(frozen=True)
class TransactRequest:
    operations: Sequence[Operation]
    metadata: Mapping[str, str] = field(default_factory=dict)
