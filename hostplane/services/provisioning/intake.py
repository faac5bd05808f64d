from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.core.config import get_settings
from hostplane.core.errors import InvalidTransitionError, ResourceNotFoundError
from hostplane.domain.models import ManagedResource
from hostplane.domain.state import (
    OPERATIONS,
    STATUS_DELETED,
    STATUS_FAILED,
    STATUS_PROVISIONING,
    STATUS_QUEUED,
    STATUS_READY,
    STATUS_RESIZING,
    Operation,
)
from hostplane.persistence.repos import resources as resources_repo
from hostplane.services.audit import record_event
from hostplane.services.provisioning.queue import ProvisioningTask, TaskQueue


logger = logging.getLogger(__name__)

REQUIRED_SPEC_KEYS = ("size", "location", "image")
# Statuses from which a resize request is accepted; non-ready ones wait in the queue.
_RESIZABLE_STATUSES = (STATUS_QUEUED, STATUS_PROVISIONING, STATUS_READY, STATUS_RESIZING)


async def enqueue_provisioning(
    session: AsyncSession,
    queue: TaskQueue,
    resource_id: str,
    operation: Operation,
    payload: dict[str, Any] | None = None,
    *,
    task_id: str | None = None,
) -> ProvisioningTask:
    # The row must already be committed; enqueue is idempotent on task_id.
    if operation not in OPERATIONS:
        raise ValueError(f"unknown operation {operation!r}")
    resource = await resources_repo.get_resource_by_id(session, resource_id)
    if resource is None:
        raise ResourceNotFoundError(f"resource {resource_id} not found")
    task = ProvisioningTask.build(
        resource_id=resource_id, operation=operation, payload=payload, task_id=task_id
    )
    created = await queue.enqueue(task)
    logger.info(
        "task_enqueued task_id=%s operation=%s resource_id=%s lane=%s duplicate=%s",
        task.task_id,
        operation,
        resource_id,
        task.lane,
        not created,
    )
    return task


async def request_server(
    session: AsyncSession,
    queue: TaskQueue,
    *,
    tenant_id: str,
    owner_id: str,
    name: str,
    spec: dict[str, Any],
    provider: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
) -> tuple[ManagedResource, ProvisioningTask]:
    """Persist a queued server and enqueue its create task.

    A repeated request with the same ``resource_id`` returns the existing row
    and re-enqueues the same task id, which the queue deduplicates.
    """
    missing = [key for key in REQUIRED_SPEC_KEYS if not spec.get(key)]
    if missing:
        raise ValueError(f"server spec missing {', '.join(missing)}")
    resource_id = resource_id or str(uuid.uuid4())
    resource = await resources_repo.get_resource_by_id(session, resource_id)
    if resource is not None and resource.tenant_id != tenant_id:
        raise ResourceNotFoundError(f"resource {resource_id} not found")
    if resource is None:
        resource = await resources_repo.create_resource(
            session,
            resource_id=resource_id,
            tenant_id=tenant_id,
            owner_id=owner_id,
            provider=(provider or get_settings().provider_default).lower(),
            name=name,
            spec=spec,
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type="user",
            actor_id=owner_id,
            event_type="resource.requested",
            outcome="success",
            resource_type="server",
            resource_id=resource_id,
            request_id=request_id,
            metadata={"name": name, "spec": spec},
        )
        # Commit before enqueueing so a worker never sees a task without its row.
        await session.commit()
    task = await enqueue_provisioning(session, queue, resource_id, "create", task_id=f"create:{resource_id}")
    return resource, task


async def request_delete(
    session: AsyncSession,
    queue: TaskQueue,
    *,
    tenant_id: str,
    resource_id: str,
) -> ProvisioningTask | None:
    resource = await get_resource_status(session, resource_id, tenant_id)
    if resource.status == STATUS_DELETED:
        return None
    return await enqueue_provisioning(session, queue, resource_id, "delete", task_id=f"delete:{resource_id}")


async def request_resize(
    session: AsyncSession,
    queue: TaskQueue,
    *,
    tenant_id: str,
    resource_id: str,
    size: str,
) -> ProvisioningTask:
    resource = await get_resource_status(session, resource_id, tenant_id)
    if resource.status not in _RESIZABLE_STATUSES:
        raise InvalidTransitionError(f"resource {resource_id} is {resource.status} and cannot be resized")
    return await enqueue_provisioning(
        session, queue, resource_id, "resize", {"size": size}, task_id=f"resize:{resource_id}:{size}"
    )


async def retry_resource(
    session: AsyncSession,
    queue: TaskQueue,
    *,
    tenant_id: str,
    resource_id: str,
) -> ProvisioningTask:
    # Operator retry of a failed create: failed -> queued, then a fresh create task.
    resource = await get_resource_status(session, resource_id, tenant_id)
    if resource.status != STATUS_FAILED:
        raise InvalidTransitionError(f"resource {resource_id} is {resource.status}; only failed resources retry")
    if resource.provisioned_at is not None:
        # Once ready, a resource never returns to queued; a failed resize or drift is cleared by delete.
        raise InvalidTransitionError(f"resource {resource_id} was provisioned before failing; delete it instead")
    await resources_repo.reset_for_retry(session, resource_id)
    await session.commit()
    return await enqueue_provisioning(
        session, queue, resource_id, "create", task_id=f"create:{resource_id}:retry-{uuid.uuid4().hex[:8]}"
    )


async def get_resource_status(session: AsyncSession, resource_id: str, tenant_id: str) -> ManagedResource:
    # Read straight from the store; status is never served from the cache.
    resource = await resources_repo.get_resource(session, tenant_id, resource_id)
    if resource is None:
        raise ResourceNotFoundError(f"resource {resource_id} not found")
    return resource
