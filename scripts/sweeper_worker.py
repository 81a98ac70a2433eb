from __future__ import annotations

import argparse
import asyncio
import logging

from tenantstate.core.config import get_settings
from tenantstate.core.logging import configure_logging
from tenantstate.persistence.db import dispose_engines
from tenantstate.services.handshake import RegistryHandshake
from tenantstate.services.sweeper import ExpirySweeper


logger = logging.getLogger(__name__)


async def _main(once: bool) -> None:
    # Boot a dedicated sweeper process so expired rows are purged without request traffic.
    configure_logging()
    settings = get_settings()
    if not settings.state_connection_string:
        raise SystemExit("STATE_CONNECTION_STRING is required")
    sweeper = ExpirySweeper(interval_s=settings.sweep_interval_s)
    sweeper.register_store("sweeper-worker", settings.state_connection_string, RegistryHandshake())
    try:
        if once:
            report = await sweeper.run_once()
            print(f"swept_tenants={len(report.tenants_swept)} rows_deleted={report.rows_deleted}")
            return
        await sweeper.run()
    finally:
        await dispose_engines()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Purge expired tenant state rows.")
    parser.add_argument("--once", action="store_true", help="run a single sweep pass and exit")
    args = parser.parse_args()
    asyncio.run(_main(args.once))
