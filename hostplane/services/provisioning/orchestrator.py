from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.core.config import RESOURCE_LABEL_KEY, Settings, get_settings
from hostplane.core.errors import (
    InvalidTransitionError,
    PermanentProviderError,
    ProviderError,
    ProviderNotFoundError,
    ProvisioningTimeoutError,
    TransientProviderError,
)
from hostplane.domain.models import ManagedResource
from hostplane.domain.state import (
    STATUS_DELETED,
    STATUS_DELETING,
    STATUS_FAILED,
    STATUS_PROVISIONING,
    STATUS_QUEUED,
    STATUS_READY,
    STATUS_RESIZING,
)
from hostplane.persistence.repos import resources as resources_repo
from hostplane.providers.base import ProviderClient, ProviderServer, ServerSpec
from hostplane.providers.factory import get_provider_client
from hostplane.services.audit import record_system_event
from hostplane.services.provisioning.queue import ProvisioningTask
from hostplane.services.resilience import RetryPolicy, default_retry_policy, poll_until, retry_async
from hostplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_DONE = "done"
OUTCOME_DEFERRED = "deferred"

# Statuses a dead-lettered task of each operation can leave behind; they are closed out as failed.
_ABANDONABLE_STATUSES = {
    "create": (STATUS_QUEUED, STATUS_PROVISIONING),
    "delete": (STATUS_DELETING,),
    "resize": (STATUS_RESIZING,),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(exc: Exception) -> str:
    code = getattr(exc, "code", None)
    return str(code) if code else type(exc).__name__


def _tolerate_transient(exc: Exception) -> bool:
    return isinstance(exc, (TransientProviderError, TimeoutError, OSError))


class ProvisioningOrchestrator:
    """Drive one task through the resource lifecycle.

    Every status write is a conditional update, and each task claims a
    per-resource lease first, so a redelivered or concurrent task for the
    same resource is a no-op rather than a second provider call. Provider
    failures end as ``failed`` + ``last_error``; only infrastructure errors
    (database, cancellation) escape to the worker pool.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        provider_resolver: Callable[[str], ProviderClient] = get_provider_client,
        policy: RetryPolicy | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from hostplane.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._provider_resolver = provider_resolver
        self._policy = policy or default_retry_policy()
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._sleep = sleep
        self._clock = clock
        self._settings = settings or get_settings()

    async def handle(self, task: ProvisioningTask) -> str:
        logger.info(
            "task_started task_id=%s operation=%s resource_id=%s attempts=%s",
            task.task_id,
            task.operation,
            task.resource_id,
            task.attempts,
        )
        if task.operation == "create":
            outcome = await self.create(task)
        elif task.operation == "delete":
            outcome = await self.delete(task)
        elif task.operation == "resize":
            outcome = await self.resize(task)
        else:
            logger.error("task_unknown_operation task_id=%s operation=%s", task.task_id, task.operation)
            return OUTCOME_DONE
        logger.info("task_finished task_id=%s outcome=%s", task.task_id, outcome)
        return outcome

    async def _load(self, resource_id: str) -> ManagedResource | None:
        async with self._session_factory() as session:
            return await resources_repo.get_resource_by_id(session, resource_id)

    async def _claim(self, resource_id: str, *, owner: str, lease_s: int, statuses: tuple[str, ...]) -> bool:
        async with self._session_factory() as session:
            claimed = await resources_repo.claim_resource(
                session, resource_id, owner=owner, lease_s=lease_s, statuses=statuses
            )
            await session.commit()
        return claimed

    async def _release(self, resource_id: str, *, owner: str) -> None:
        async with self._session_factory() as session:
            await resources_repo.release_claim(session, resource_id, owner=owner)
            await session.commit()

    async def _transition(self, resource_id: str, **kwargs: Any) -> None:
        async with self._session_factory() as session:
            await resources_repo.transition_status(session, resource_id, **kwargs)
            await session.commit()

    def _new_owner(self, task: ProvisioningTask) -> str:
        return f"{self._worker_id}:{task.task_id}:{uuid.uuid4().hex[:6]}"

    def _call_timeout(self) -> float:
        return self._settings.provider_call_timeout_s

    async def _retry(self, func: Callable[[], Awaitable[Any]], *, operation: str) -> Any:
        return await retry_async(func, policy=self._policy, sleep=self._sleep, operation=operation)

    async def _poll(
        self,
        probe: Callable[[], Awaitable[Any]],
        predicate: Callable[[Any], bool],
        *,
        timeout_s: float,
        description: str,
    ) -> Any:
        return await poll_until(
            probe,
            predicate,
            interval_s=self._settings.poll_interval_s,
            timeout_s=timeout_s,
            description=description,
            tolerate=_tolerate_transient,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def _audit(
        self,
        resource: ManagedResource,
        event_type: str,
        *,
        outcome: str = "success",
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        await record_system_event(
            event_type=event_type,
            outcome=outcome,
            tenant_id=resource.tenant_id,
            resource_id=resource.id,
            metadata=metadata,
            error_code=error_code,
            session_factory=self._session_factory,
        )

    async def _mark_failed(
        self,
        resource: ManagedResource,
        exc: Exception,
        *,
        operation: str,
        expected: tuple[str, ...],
    ) -> None:
        message = str(exc)[:1000] or type(exc).__name__
        logger.warning(
            "resource_failed resource_id=%s operation=%s error_type=%s error=%s",
            resource.id,
            operation,
            type(exc).__name__,
            message,
        )
        increment_counter(f"provisioning_{operation}_failed_total")
        try:
            await self._transition(
                resource.id,
                to_status=STATUS_FAILED,
                expected=expected,
                last_error=message,
                lease_owner=None,
                lease_expires_at=None,
            )
        except InvalidTransitionError as transition_exc:
            # Another actor moved the resource on; its state wins.
            logger.warning("resource_fail_transition_rejected resource_id=%s error=%s", resource.id, transition_exc)
            return
        await self._audit(
            resource,
            f"resource.{operation}",
            outcome="failure",
            metadata={"operation": operation, "error": message},
            error_code=_error_code(exc),
        )

    async def _find_orphans(self, provider: ProviderClient, resource_id: str) -> list[ProviderServer]:
        return await self._retry(
            lambda: provider.find_by_label(RESOURCE_LABEL_KEY, resource_id, timeout_s=self._call_timeout()),
            operation="find_by_label",
        )

    async def _adopt_or_create(self, resource: ManagedResource, provider: ProviderClient) -> str:
        orphans = await self._find_orphans(provider, resource.id)
        if len(orphans) > 1:
            raise PermanentProviderError(
                f"{len(orphans)} provider servers carry label {RESOURCE_LABEL_KEY}={resource.id}"
            )
        if orphans:
            orphan = orphans[0]
            logger.info("create_orphan_adopted resource_id=%s provider_resource_id=%s", resource.id, orphan.id)
            increment_counter("provisioning_orphans_adopted_total")
            provider_resource_id, public_ipv4 = orphan.id, orphan.public_ipv4
            await self._audit(resource, "resource.adopted", metadata={"provider_resource_id": orphan.id})
        else:
            spec = ServerSpec.from_resource(resource_id=resource.id, name=resource.name, spec_json=resource.spec_json)
            attempt = 0

            async def _create_once():
                nonlocal attempt
                attempt += 1
                if attempt > 1:
                    # A lost response may still have created the server; look before creating again.
                    existing = await provider.find_by_label(
                        RESOURCE_LABEL_KEY, resource.id, timeout_s=self._call_timeout()
                    )
                    if existing:
                        logger.info(
                            "create_retry_found_existing resource_id=%s provider_resource_id=%s",
                            resource.id,
                            existing[0].id,
                        )
                        return existing[0].id, existing[0].public_ipv4
                result = await provider.create(spec, timeout_s=self._call_timeout())
                return result.provider_resource_id, result.public_ipv4

            provider_resource_id, public_ipv4 = await self._retry(_create_once, operation="create")

        # Record the external id before anything else can fail.
        async with self._session_factory() as session:
            await resources_repo.record_provider_resource(
                session,
                resource.id,
                provider_resource_id=provider_resource_id,
                public_ipv4=public_ipv4,
            )
            await session.commit()
        return provider_resource_id

    async def create(self, task: ProvisioningTask) -> str:
        resource = await self._load(task.resource_id)
        if resource is None:
            logger.warning("task_resource_missing task_id=%s resource_id=%s", task.task_id, task.resource_id)
            return OUTCOME_DONE
        if resource.status not in (STATUS_QUEUED, STATUS_PROVISIONING):
            logger.info(
                "create_duplicate_delivery resource_id=%s status=%s", resource.id, resource.status
            )
            return OUTCOME_DONE

        owner = self._new_owner(task)
        if not await self._claim(
            resource.id,
            owner=owner,
            lease_s=self._settings.task_timeout_create_s,
            statuses=(STATUS_QUEUED, STATUS_PROVISIONING),
        ):
            logger.info("create_claim_held_elsewhere resource_id=%s", resource.id)
            return OUTCOME_DONE

        try:
            provider = self._provider_resolver(resource.provider)
            provider_resource_id = resource.provider_resource_id
            if provider_resource_id is None:
                provider_resource_id = await self._adopt_or_create(resource, provider)
            else:
                logger.info(
                    "create_resume_polling resource_id=%s provider_resource_id=%s status=%s",
                    resource.id,
                    provider_resource_id,
                    resource.status,
                )
                if resource.status == STATUS_QUEUED:
                    # Operator retry of a create whose server already exists.
                    await self._transition(resource.id, to_status=STATUS_PROVISIONING, expected=STATUS_QUEUED)

            server = await self._poll(
                lambda: provider.get(provider_resource_id, timeout_s=self._call_timeout(), fresh=True),
                lambda current: current.is_ready,
                timeout_s=self._settings.ready_timeout_s,
                description=f"server {provider_resource_id} running",
            )
            await self._transition(
                resource.id,
                to_status=STATUS_READY,
                expected=STATUS_PROVISIONING,
                public_ipv4=server.public_ipv4,
                current_size=server.size or resource.current_size,
                provisioned_at=_utc_now(),
                lease_owner=None,
                lease_expires_at=None,
            )
        except (ProviderError, ProvisioningTimeoutError) as exc:
            await self._mark_failed(
                resource, exc, operation="create", expected=(STATUS_QUEUED, STATUS_PROVISIONING)
            )
            return OUTCOME_DONE
        finally:
            await self._release(resource.id, owner=owner)

        increment_counter("provisioning_create_succeeded_total")
        logger.info(
            "resource_ready resource_id=%s provider_resource_id=%s ipv4=%s",
            resource.id,
            provider_resource_id,
            server.public_ipv4,
        )
        await self._audit(
            resource,
            "resource.create",
            metadata={
                "provider": resource.provider,
                "provider_resource_id": provider_resource_id,
                "size": server.size,
                "location": server.location,
            },
        )
        return OUTCOME_DONE

    async def delete(self, task: ProvisioningTask) -> str:
        resource = await self._load(task.resource_id)
        if resource is None:
            logger.warning("task_resource_missing task_id=%s resource_id=%s", task.task_id, task.resource_id)
            return OUTCOME_DONE
        if resource.status == STATUS_DELETED:
            logger.info("delete_already_deleted resource_id=%s", resource.id)
            return OUTCOME_DONE
        if resource.status == STATUS_QUEUED or resource.status in (STATUS_PROVISIONING, STATUS_RESIZING):
            # Let the in-flight operation settle first.
            logger.info("delete_deferred resource_id=%s status=%s", resource.id, resource.status)
            return OUTCOME_DEFERRED

        owner = self._new_owner(task)
        if not await self._claim(
            resource.id,
            owner=owner,
            lease_s=self._settings.task_timeout_delete_s,
            statuses=(STATUS_READY, STATUS_FAILED, STATUS_DELETING),
        ):
            logger.info("delete_deferred_claim_held resource_id=%s", resource.id)
            return OUTCOME_DEFERRED

        try:
            if resource.status != STATUS_DELETING:
                await self._transition(
                    resource.id, to_status=STATUS_DELETING, expected=(STATUS_READY, STATUS_FAILED)
                )
            provider_resource_id = resource.provider_resource_id
            if provider_resource_id is not None:
                provider = self._provider_resolver(resource.provider)
                try:
                    await self._retry(
                        lambda: provider.delete(provider_resource_id, timeout_s=self._call_timeout()),
                        operation="delete",
                    )
                except ProviderNotFoundError:
                    logger.info("delete_provider_not_found resource_id=%s", resource.id)

                async def _gone() -> bool:
                    try:
                        await provider.get(provider_resource_id, timeout_s=self._call_timeout(), fresh=True)
                    except ProviderNotFoundError:
                        return True
                    return False

                await self._poll(
                    _gone,
                    bool,
                    timeout_s=self._settings.delete_timeout_s,
                    description=f"server {provider_resource_id} removed",
                )
            await self._transition(
                resource.id,
                to_status=STATUS_DELETED,
                expected=STATUS_DELETING,
                deleted_at=_utc_now(),
                lease_owner=None,
                lease_expires_at=None,
            )
        except (ProviderError, ProvisioningTimeoutError) as exc:
            await self._mark_failed(resource, exc, operation="delete", expected=(STATUS_DELETING,))
            return OUTCOME_DONE
        finally:
            await self._release(resource.id, owner=owner)

        increment_counter("provisioning_delete_succeeded_total")
        logger.info("resource_deleted resource_id=%s", resource.id)
        await self._audit(
            resource,
            "resource.delete",
            metadata={"provider": resource.provider, "provider_resource_id": resource.provider_resource_id},
        )
        return OUTCOME_DONE

    async def resize(self, task: ProvisioningTask) -> str:
        target_size = str(task.payload.get("size") or "")
        resource = await self._load(task.resource_id)
        if resource is None:
            logger.warning("task_resource_missing task_id=%s resource_id=%s", task.task_id, task.resource_id)
            return OUTCOME_DONE
        if not target_size:
            logger.error("resize_missing_size task_id=%s resource_id=%s", task.task_id, resource.id)
            return OUTCOME_DONE
        if resource.status in (STATUS_QUEUED, STATUS_PROVISIONING):
            logger.info("resize_deferred resource_id=%s status=%s", resource.id, resource.status)
            return OUTCOME_DEFERRED
        if resource.status not in (STATUS_READY, STATUS_RESIZING):
            logger.info("resize_skipped resource_id=%s status=%s", resource.id, resource.status)
            return OUTCOME_DONE

        owner = self._new_owner(task)
        if not await self._claim(
            resource.id,
            owner=owner,
            lease_s=self._settings.task_timeout_resize_s,
            statuses=(STATUS_READY, STATUS_RESIZING),
        ):
            logger.info("resize_deferred_claim_held resource_id=%s", resource.id)
            return OUTCOME_DEFERRED

        provider = self._provider_resolver(resource.provider)
        provider_resource_id = resource.provider_resource_id
        previous_size = resource.current_size
        started = resource.status == STATUS_RESIZING
        try:
            if provider_resource_id is None:
                raise PermanentProviderError(f"resource {resource.id} has no provider server to resize")
            current = await self._retry(
                lambda: provider.get(provider_resource_id, timeout_s=self._call_timeout(), fresh=True),
                operation="get",
            )
            if resource.status == STATUS_READY and current.size == target_size:
                logger.info("resize_noop resource_id=%s size=%s", resource.id, target_size)
                return OUTCOME_DONE
            previous_size = current.size or previous_size

            if resource.status == STATUS_READY:
                await self._transition(resource.id, to_status=STATUS_RESIZING, expected=STATUS_READY)
                started = True
            if current.size != target_size:
                await self._retry(
                    lambda: provider.resize(provider_resource_id, target_size, timeout_s=self._call_timeout()),
                    operation="resize",
                )
            server = await self._poll(
                lambda: provider.get(provider_resource_id, timeout_s=self._call_timeout(), fresh=True),
                lambda polled: polled.is_ready and polled.size == target_size,
                timeout_s=self._settings.resize_timeout_s,
                description=f"server {provider_resource_id} running as {target_size}",
            )
            await self._transition(
                resource.id,
                to_status=STATUS_READY,
                expected=STATUS_RESIZING,
                current_size=target_size,
                public_ipv4=server.public_ipv4 or resource.public_ipv4,
                lease_owner=None,
                lease_expires_at=None,
            )
        except (ProviderError, ProvisioningTimeoutError) as exc:
            if not started and isinstance(exc, TransientProviderError):
                # Nothing changed yet; a ready server stays ready and the task is redelivered.
                raise
            await self._mark_failed(resource, exc, operation="resize", expected=(STATUS_READY, STATUS_RESIZING))
            return OUTCOME_DONE
        finally:
            await self._release(resource.id, owner=owner)

        increment_counter("provisioning_resize_succeeded_total")
        logger.info("resource_resized resource_id=%s from=%s to=%s", resource.id, previous_size, target_size)
        await self._audit(
            resource,
            "resource.resize",
            metadata={"from_size": previous_size, "to_size": target_size},
        )
        return OUTCOME_DONE

    async def abandon(self, task: ProvisioningTask, error: str) -> None:
        """Close out a resource whose task was dead-lettered mid-flight."""
        resource = await self._load(task.resource_id)
        if resource is None:
            return
        if resource.status not in _ABANDONABLE_STATUSES.get(task.operation, ()):
            return
        await self._mark_failed(
            resource,
            ProvisioningTimeoutError(f"{task.operation} task dead-lettered: {error}"),
            operation=task.operation,
            expected=(resource.status,),
        )
