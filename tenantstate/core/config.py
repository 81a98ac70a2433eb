from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Shared registry location is fixed so every store instance and sweeper agree on it.
METADATA_SCHEMA = "pluggable_metadata"
METADATA_TABLE = "tenant"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "tenantstate"
    log_level: str = "INFO"
    # Emit one JSON object per line instead of plain text log records.
    log_json: bool = False

    # Fixed sweep cadence keeps per-tenant expiry latency bounded.
    sweep_interval_s: float = 5.0
    # Bound how long a store init waits for the sweeper to establish the tenant registry.
    registry_wait_timeout_s: float = 30.0
    # Block store init until the sweeper confirms the registry exists.
    wait_for_registry: bool = True
    # Default per-operation deadline applied by the HTTP surface.
    operation_timeout_s: float = 30.0

    # Configure bounded asyncpg pools for predictable latency under load.
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_statement_timeout_ms: int = 0

    # Component served by the HTTP surface; the plugin host passes the same keys on init.
    component_name: str = "postgresql-tenant"
    state_connection_string: str | None = None
    state_tenant_mode: str | None = None
    state_schema: str | None = None
    state_table: str | None = None

    def component_properties(self) -> dict[str, str]:
        # Map env-driven settings onto the host's component property names.
        properties: dict[str, str] = {}
        if self.state_connection_string is not None:
            properties["connectionString"] = self.state_connection_string
        if self.state_tenant_mode is not None:
            properties["tenant"] = self.state_tenant_mode
        if self.state_schema is not None:
            properties["schema"] = self.state_schema
        if self.state_table is not None:
            properties["table"] = self.state_table
        return properties


@lru_cache
def get_settings() -> Settings:
    return Settings()
