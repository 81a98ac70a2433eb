from __future__ import annotations

from typing import Mapping

from tenantstate.core.errors import ConfigError
from tenantstate.domain.state import (
    TENANT_MODE_SCHEMA,
    TENANT_MODE_TABLE,
    TENANT_MODES,
    ResolvedLocation,
    TenantConfig,
)
from tenantstate.persistence.guards import require_identifier, require_tenant_id


CONNECTION_STRING_PROPERTY = "connectionString"
TENANT_PROPERTY = "tenant"
SCHEMA_PROPERTY = "schema"
TABLE_PROPERTY = "table"

DEFAULT_SCHEMA = "public"
DEFAULT_TABLE = "state"


def _optional_property(properties: Mapping[str, str], name: str, default: str) -> str:
    if name not in properties:
        return default
    value = properties[name]
    if not value:
        raise ConfigError(f"Component property '{name}' is set but empty")
    return value


def tenant_config_from_properties(properties: Mapping[str, str]) -> TenantConfig:
    """Validate component properties once at init.

    `connectionString` and `tenant` are mandatory; `schema` and `table`
    default to `public` and `state`.
    """
    connection_string = properties.get(CONNECTION_STRING_PROPERTY)
    if not connection_string:
        raise ConfigError(f"Mandatory '{CONNECTION_STRING_PROPERTY}' component property not specified")
    tenant_mode = properties.get(TENANT_PROPERTY)
    if not tenant_mode:
        raise ConfigError(f"Mandatory '{TENANT_PROPERTY}' component property not specified")
    if tenant_mode not in TENANT_MODES:
        raise ConfigError(
            f"Unsupported '{TENANT_PROPERTY}' component property value '{tenant_mode}'; "
            f"use '{TENANT_MODE_SCHEMA}' or '{TENANT_MODE_TABLE}'"
        )
    return TenantConfig(
        tenant_mode=tenant_mode,  # type: ignore[arg-type]
        default_schema=_optional_property(properties, SCHEMA_PROPERTY, DEFAULT_SCHEMA),
        default_table=_optional_property(properties, TABLE_PROPERTY, DEFAULT_TABLE),
        connection_string=connection_string,
    )


def resolve_tenant(config: TenantConfig, tenant_id: str) -> ResolvedLocation:
    # Prefix the tenant onto whichever identifier the mode isolates on.
    if config.tenant_mode == TENANT_MODE_SCHEMA:
        schema, table = f"{tenant_id}-{config.default_schema}", config.default_table
    elif config.tenant_mode == TENANT_MODE_TABLE:
        schema, table = config.default_schema, f"{tenant_id}-{config.default_table}"
    else:
        raise ConfigError(f"Unsupported tenant mode '{config.tenant_mode}'")
    return ResolvedLocation(
        schema=require_identifier(schema, name="schema"),
        table=require_identifier(table, name="table"),
    )


class TenantResolver:
    def __init__(self, config: TenantConfig) -> None:
        if config.tenant_mode not in TENANT_MODES:
            raise ConfigError(f"Unsupported tenant mode '{config.tenant_mode}'")
        if not config.connection_string:
            raise ConfigError("Connection string is not configured")
        if not config.default_schema or not config.default_table:
            raise ConfigError("Default schema and table must be configured")
        self.config = config

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "TenantResolver":
        return cls(tenant_config_from_properties(properties))

    def resolve(self, metadata: Mapping[str, str] | None) -> ResolvedLocation:
        return resolve_tenant(self.config, require_tenant_id(metadata))
