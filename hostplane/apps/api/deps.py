from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.persistence.db import get_session
from hostplane.services.provisioning.queue import TaskQueue, get_task_queue


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_queue() -> TaskQueue:
    return get_task_queue()


async def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    # Tenant scoping only; authentication sits in front of this service.
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return x_tenant_id.strip()


async def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    return (x_actor_id or "anonymous").strip() or "anonymous"
