from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.apps.api.deps import get_db
from hostplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hostplane.apps.api.response import SuccessEnvelope, success_response
from hostplane.core.config import get_settings
from hostplane.services.provisioning.queue import is_inline_mode


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    queue_mode: str
    provider: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Liveness plus a state store probe; the broker is reported by /ops/queue.
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("health_db_probe_failed error=%s", exc)
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        queue_mode="inline" if is_inline_mode() else "redis",
        provider=get_settings().provider_default,
    )
    return success_response(request=request, data=payload)
