from __future__ import annotations

import pytest

from tenantstate.core.config import get_settings
from tenantstate.domain.models import state_table
from tenantstate.persistence.db import dispose_engines


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; clear them so env overrides in one test do not leak.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def dispose_engines_between_tests() -> None:
    # Dispose cached async engines to prevent cross-loop connection reuse between tests.
    yield
    await dispose_engines()
    state_table.cache_clear()
