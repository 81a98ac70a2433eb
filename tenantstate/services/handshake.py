from __future__ import annotations

import asyncio

from tenantstate.core.errors import ConfigError


class RegistryHandshake:
    """One-shot latch the sweeper fires once the tenant registry exists.

    Store instances wait on it during init so no tenant is provisioned into a
    registry that has not been created yet.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def released(self) -> bool:
        return self._event.is_set()

    def release(self) -> None:
        self._event.set()

    async def wait(self, timeout_s: float) -> None:
        # A sweeper that never runs must surface as a startup failure, not a hang.
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise ConfigError(
                f"Expiry sweeper did not establish the tenant registry within {timeout_s:g}s"
            ) from exc
