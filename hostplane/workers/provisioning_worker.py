from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from hostplane.core.config import get_settings
from hostplane.core.logging import configure_logging
from hostplane.providers.factory import close_provider_clients
from hostplane.services.provisioning.queue import RedisTaskQueue, set_worker_heartbeat
from hostplane.services.provisioning.reconciliation import reconcile_provider
from hostplane.workers.pool import build_worker_pool


logger = logging.getLogger(__name__)


async def reconcile_resources(ctx) -> dict:
    # Periodic sweep: adopt orphans, flag drift, report unknown labelled servers.
    settings = get_settings()
    report = await reconcile_provider(settings.provider_default, queue=ctx.get("task_queue"))
    return {
        "checked": report.checked,
        "adopted": len(report.adopted),
        "drifted": len(report.drifted),
        "orphans": len(report.orphans),
    }


async def reclaim_expired_tasks(ctx) -> int:
    # Make tasks whose worker died visible again.
    queue = ctx.get("task_queue") or RedisTaskQueue()
    reclaimed = await queue.reclaim_expired()
    if reclaimed:
        logger.warning("tasks_reclaimed count=%s", reclaimed)
    return reclaimed


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - heartbeat gaps surface as a stale worker, not a crash
            logger.exception("worker_heartbeat_failed")
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    # Boot the provisioning pool and heartbeat alongside arq's own loop.
    configure_logging()
    queue = RedisTaskQueue()
    pool = build_worker_pool(queue)
    await pool.start()
    ctx["task_queue"] = queue
    ctx["worker_pool"] = pool
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Stop heartbeats first so ops sees the worker go stale while tasks drain.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    pool = ctx.get("worker_pool")
    if pool is not None:
        await pool.stop(timeout_s=get_settings().worker_shutdown_grace_s)
    await close_provider_clients()


def _reconcile_minutes() -> set[int]:
    interval = max(1, min(60, int(get_settings().reconcile_interval_minutes)))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = f"{settings.queue_prefix}:arq"
    cron_jobs = [
        cron(reconcile_resources, minute=_reconcile_minutes(), run_at_startup=True),
        cron(reclaim_expired_tasks),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
