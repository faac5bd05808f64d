from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.domain.models import AuditEvent


async def list_resource_events(session: AsyncSession, resource_id: str) -> list[AuditEvent]:
    # Oldest first so callers can read a resource's history in order.
    result = await session.execute(
        select(AuditEvent)
        .where(AuditEvent.resource_type == "server", AuditEvent.resource_id == resource_id)
        .order_by(AuditEvent.id)
    )
    return list(result.scalars().all())


async def count_events_before(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(select(func.count()).select_from(AuditEvent).where(AuditEvent.occurred_at < older_than))
    return int(result.scalar_one())


async def prune_events(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < older_than))
    return int(result.rowcount or 0)
