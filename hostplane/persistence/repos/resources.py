from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.core.errors import InvalidTransitionError
from hostplane.domain.models import ManagedResource
from hostplane.domain.state import STATUS_FAILED, STATUS_PROVISIONING, STATUS_QUEUED, predecessors


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_resource(
    session: AsyncSession,
    *,
    resource_id: str,
    tenant_id: str,
    owner_id: str,
    provider: str,
    name: str,
    spec: dict[str, Any],
    kind: str = "server",
) -> ManagedResource:
    # New rows always start queued; the orchestrator owns every later status.
    resource = ManagedResource(
        id=resource_id,
        tenant_id=tenant_id,
        owner_id=owner_id,
        provider=provider,
        kind=kind,
        name=name,
        status=STATUS_QUEUED,
        spec_json=dict(spec),
        current_size=spec.get("size"),
        attempts=0,
    )
    session.add(resource)
    return resource


async def get_resource(session: AsyncSession, tenant_id: str, resource_id: str) -> ManagedResource | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(ManagedResource)
        .where(ManagedResource.id == resource_id, ManagedResource.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_resource_by_id(session: AsyncSession, resource_id: str) -> ManagedResource | None:
    # Worker-side lookup; always re-read the row so conditional updates are visible.
    result = await session.execute(
        select(ManagedResource)
        .where(ManagedResource.id == resource_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_resources(
    session: AsyncSession,
    tenant_id: str,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ManagedResource]:
    stmt = select(ManagedResource).where(ManagedResource.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(ManagedResource.status == status)
    stmt = stmt.order_by(ManagedResource.created_at, ManagedResource.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_by_status(
    session: AsyncSession,
    statuses: Iterable[str],
    *,
    provider: str | None = None,
) -> list[ManagedResource]:
    # Cross-tenant scan used by the reconciliation sweep only.
    stmt = select(ManagedResource).where(ManagedResource.status.in_(list(statuses)))
    if provider:
        stmt = stmt.where(ManagedResource.provider == provider)
    result = await session.execute(stmt.order_by(ManagedResource.id))
    return list(result.scalars().all())


async def _raise_rejected(session: AsyncSession, resource_id: str, target: str) -> None:
    current = await get_resource_by_id(session, resource_id)
    if current is None:
        raise InvalidTransitionError(f"resource {resource_id} does not exist")
    raise InvalidTransitionError(f"resource {resource_id} cannot move from {current.status} to {target}")


async def transition_status(
    session: AsyncSession,
    resource_id: str,
    *,
    to_status: str,
    expected: str | Iterable[str] | None = None,
    last_error: str | None = None,
    **fields: Any,
) -> None:
    """Move a resource along one edge of the lifecycle graph.

    The update is conditional on the current status being a predecessor of
    ``to_status`` (and one of ``expected`` when given), so concurrent workers
    cannot both apply the same transition. ``last_error`` is cleared on every
    transition except into ``failed``.
    """
    allowed = set(predecessors(to_status))
    if expected is not None:
        allowed &= {expected} if isinstance(expected, str) else set(expected)
    if not allowed:
        raise InvalidTransitionError(f"no edge into {to_status} from {expected}")
    now = _utc_now()
    values: dict[str, Any] = {
        "status": to_status,
        "updated_at": now,
        "last_error": last_error if to_status == STATUS_FAILED else None,
    }
    values.update(fields)
    result = await session.execute(
        update(ManagedResource)
        .where(ManagedResource.id == resource_id, ManagedResource.status.in_(sorted(allowed)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await _raise_rejected(session, resource_id, to_status)


async def record_provider_resource(
    session: AsyncSession,
    resource_id: str,
    *,
    provider_resource_id: str,
    public_ipv4: str | None,
) -> None:
    # Persist the external id and enter provisioning in one statement; the id is write-once.
    result = await session.execute(
        update(ManagedResource)
        .where(
            ManagedResource.id == resource_id,
            ManagedResource.status == STATUS_QUEUED,
            or_(
                ManagedResource.provider_resource_id.is_(None),
                ManagedResource.provider_resource_id == provider_resource_id,
            ),
        )
        .values(
            provider_resource_id=provider_resource_id,
            public_ipv4=public_ipv4,
            status=STATUS_PROVISIONING,
            last_error=None,
            updated_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await _raise_rejected(session, resource_id, STATUS_PROVISIONING)


async def claim_resource(
    session: AsyncSession,
    resource_id: str,
    *,
    owner: str,
    lease_s: int,
    statuses: Iterable[str],
) -> bool:
    # Take the per-resource lease when it is free, expired, or already ours.
    now = _utc_now()
    result = await session.execute(
        update(ManagedResource)
        .where(
            ManagedResource.id == resource_id,
            ManagedResource.status.in_(list(statuses)),
            or_(
                ManagedResource.lease_owner.is_(None),
                ManagedResource.lease_owner == owner,
                ManagedResource.lease_expires_at < now,
            ),
        )
        .values(
            lease_owner=owner,
            lease_expires_at=now + timedelta(seconds=lease_s),
            attempts=ManagedResource.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_claim(session: AsyncSession, resource_id: str, *, owner: str) -> None:
    await session.execute(
        update(ManagedResource)
        .where(ManagedResource.id == resource_id, ManagedResource.lease_owner == owner)
        .values(lease_owner=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )


async def reset_for_retry(session: AsyncSession, resource_id: str) -> None:
    # Operator retry: failed -> queued with a fresh attempt counter.
    await transition_status(
        session,
        resource_id,
        to_status=STATUS_QUEUED,
        expected=STATUS_FAILED,
        attempts=0,
        lease_owner=None,
        lease_expires_at=None,
    )
