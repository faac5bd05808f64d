from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from hostplane.apps.api.deps import get_queue
from hostplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hostplane.apps.api.response import SuccessEnvelope, success_response
from hostplane.core.errors import QueueUnavailableError
from hostplane.persistence.db import pool_stats
from hostplane.services.cache import get_result_cache
from hostplane.services.provisioning.queue import (
    TaskQueue,
    get_worker_heartbeat,
    heartbeat_is_stale,
    is_inline_mode,
)
from hostplane.services.telemetry import counters_snapshot, gauges_snapshot, provider_call_summary


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class QueueStatusResponse(BaseModel):
    status: str
    mode: str
    lanes: dict[str, int] | None
    reserved: int | None
    dead_letter: int | None
    worker_heartbeat_at: str | None
    worker_heartbeat_stale: bool


class DeadLetterResponse(BaseModel):
    task_id: str
    resource_id: str
    operation: str
    lane: str
    attempts: int
    last_error: str | None


@router.get("/queue", response_model=SuccessEnvelope[QueueStatusResponse])
async def queue_status(request: Request, queue: TaskQueue = Depends(get_queue)) -> dict:
    # Degrade instead of failing when the broker is unreachable.
    try:
        depth = await queue.depth()
    except QueueUnavailableError:
        depth = None
    heartbeat = await get_worker_heartbeat()
    inline = is_inline_mode()
    stale = False if inline else heartbeat_is_stale(heartbeat, now=datetime.now(timezone.utc))
    payload = QueueStatusResponse(
        status="ok" if depth is not None and not stale else "degraded",
        mode="inline" if inline else "redis",
        lanes={lane: count for lane, count in depth.items() if lane not in {"reserved", "dead_letter"}}
        if depth is not None
        else None,
        reserved=depth.get("reserved") if depth is not None else None,
        dead_letter=depth.get("dead_letter") if depth is not None else None,
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        worker_heartbeat_stale=stale,
    )
    return success_response(request=request, data=payload)


@router.get("/dead-letters", response_model=SuccessEnvelope[list[DeadLetterResponse]])
async def dead_letters(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    tasks = await queue.dead_letters(limit=limit)
    items = [
        DeadLetterResponse(
            task_id=task.task_id,
            resource_id=task.resource_id,
            operation=task.operation,
            lane=task.lane,
            attempts=task.attempts,
            last_error=task.last_error,
        )
        for task in tasks
    ]
    return success_response(request=request, data=items)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def metrics(request: Request, window_s: int = Query(default=300, ge=1, le=86400)) -> dict:
    cache = get_result_cache()
    payload = {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "provider_calls": provider_call_summary(window_s),
        "result_cache": {"entries": len(cache), "hits": cache.hits, "misses": cache.misses},
        "db_pool": pool_stats(),
    }
    return success_response(request=request, data=payload)
