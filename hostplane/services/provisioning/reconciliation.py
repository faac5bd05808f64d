from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.core.config import RESOURCE_LABEL_KEY
from hostplane.core.errors import InvalidTransitionError, ProviderNotFoundError
from hostplane.domain.state import (
    STATUS_DELETING,
    STATUS_FAILED,
    STATUS_PROVISIONING,
    STATUS_QUEUED,
    STATUS_READY,
    STATUS_RESIZING,
)
from hostplane.persistence.repos import resources as resources_repo
from hostplane.providers.base import ProviderClient
from hostplane.providers.factory import get_provider_client
from hostplane.services.audit import record_system_event
from hostplane.services.provisioning.queue import ProvisioningTask, TaskQueue
from hostplane.services.resilience import retry_async
from hostplane.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_TRACKED_STATUSES = (
    STATUS_QUEUED,
    STATUS_PROVISIONING,
    STATUS_READY,
    STATUS_RESIZING,
    STATUS_DELETING,
    STATUS_FAILED,
)


@dataclass
class ReconcileReport:
    provider: str
    checked: int = 0
    adopted: list[str] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)


async def reconcile_provider(
    provider_name: str,
    *,
    session_factory: Callable[[], AsyncSession] | None = None,
    provider: ProviderClient | None = None,
    queue: TaskQueue | None = None,
) -> ReconcileReport:
    """Compare provider servers carrying our label with the resource table.

    Queued rows whose server already exists are adopted (and a create task
    is enqueued to finish the readiness wait). Ready rows whose server is
    gone are marked failed. Labelled servers with no live row are reported
    as orphans and left untouched.
    """
    if session_factory is None:
        from hostplane.persistence.db import SessionLocal

        session_factory = SessionLocal
    provider = provider or get_provider_client(provider_name)
    report = ReconcileReport(provider=provider_name)

    # Rows first: a row that turns ready mid-sweep must not be judged against an older server listing.
    async with session_factory() as session:
        rows = await resources_repo.list_by_status(session, _TRACKED_STATUSES, provider=provider_name)
    report.checked = len(rows)
    known_ids = {row.id for row in rows}

    servers = await retry_async(
        lambda: provider.find_by_label(RESOURCE_LABEL_KEY), operation="reconcile_list_servers"
    )
    servers_by_resource = {server.labels.get(RESOURCE_LABEL_KEY): server for server in servers}
    server_ids = {server.id for server in servers}

    for row in rows:
        if row.status == STATUS_QUEUED and row.provider_resource_id is None:
            server = servers_by_resource.get(row.id)
            if server is None:
                continue
            try:
                async with session_factory() as session:
                    await resources_repo.record_provider_resource(
                        session, row.id, provider_resource_id=server.id, public_ipv4=server.public_ipv4
                    )
                    await session.commit()
            except InvalidTransitionError:
                # A worker got there first.
                continue
            report.adopted.append(row.id)
            logger.info("reconcile_adopted resource_id=%s provider_resource_id=%s", row.id, server.id)
            await record_system_event(
                event_type="resource.adopted",
                tenant_id=row.tenant_id,
                resource_id=row.id,
                metadata={"provider_resource_id": server.id, "source": "reconcile"},
                session_factory=session_factory,
            )
            if queue is not None:
                await queue.enqueue(
                    ProvisioningTask.build(
                        resource_id=row.id, operation="create", task_id=f"create:{row.id}:reconcile"
                    )
                )
        elif row.status == STATUS_READY and row.provider_resource_id not in server_ids:
            if not await _server_is_gone(provider, row.provider_resource_id):
                continue
            message = f"server {row.provider_resource_id} no longer exists at {provider_name}"
            try:
                async with session_factory() as session:
                    await resources_repo.transition_status(
                        session, row.id, to_status=STATUS_FAILED, expected=STATUS_READY, last_error=message
                    )
                    await session.commit()
            except InvalidTransitionError:
                continue
            report.drifted.append(row.id)
            logger.warning("reconcile_drift_detected resource_id=%s error=%s", row.id, message)
            await record_system_event(
                event_type="resource.drift_detected",
                outcome="failure",
                tenant_id=row.tenant_id,
                resource_id=row.id,
                metadata={"provider_resource_id": row.provider_resource_id},
                error_code="server_missing",
                session_factory=session_factory,
            )

    for resource_id, server in servers_by_resource.items():
        if resource_id in known_ids:
            continue
        report.orphans.append(server.id)
        logger.warning(
            "reconcile_orphan_detected provider=%s provider_resource_id=%s label=%s",
            provider_name,
            server.id,
            resource_id,
        )
        await record_system_event(
            event_type="resource.orphan_detected",
            outcome="failure",
            metadata={"provider": provider_name, "provider_resource_id": server.id, "label": resource_id},
            error_code="orphan",
            session_factory=session_factory,
        )

    increment_counter("reconcile_runs_total")
    set_gauge(f"reconcile_orphans.{provider_name}", float(len(report.orphans)))
    logger.info(
        "reconcile_finished provider=%s checked=%s adopted=%s drifted=%s orphans=%s",
        provider_name,
        report.checked,
        len(report.adopted),
        len(report.drifted),
        len(report.orphans),
    )
    return report


async def _server_is_gone(provider: ProviderClient, provider_resource_id: str) -> bool:
    # The label listing can miss a server; only a direct 404 counts as drift.
    try:
        await retry_async(
            lambda: provider.get(provider_resource_id, fresh=True), operation="reconcile_confirm_missing"
        )
    except ProviderNotFoundError:
        return True
    return False
