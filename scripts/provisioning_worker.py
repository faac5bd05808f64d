from __future__ import annotations

import asyncio
import logging
import signal

from hostplane.core.config import get_settings
from hostplane.core.logging import configure_logging
from hostplane.providers.factory import close_provider_clients
from hostplane.workers.pool import build_worker_pool


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Run the provisioning pool without arq; cron jobs (reconcile, reclaim) are not scheduled here.
    configure_logging()
    settings = get_settings()
    pool = build_worker_pool()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await pool.start()
    try:
        await stop.wait()
    finally:
        logger.info("provisioning_worker_stopping")
        await pool.stop(timeout_s=settings.worker_shutdown_grace_s)
        await close_provider_clients()


if __name__ == "__main__":
    asyncio.run(_main())
