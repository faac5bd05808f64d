from __future__ import annotations

# Re-export provisioning services for centralized imports.

from hostplane.services.provisioning.queue import (
    InMemoryTaskQueue,
    ProvisioningTask,
    RedisTaskQueue,
    TaskQueue,
    get_task_queue,
)
from hostplane.services.provisioning.intake import (
    enqueue_provisioning,
    get_resource_status,
    request_delete,
    request_resize,
    request_server,
    retry_resource,
)
from hostplane.services.provisioning.orchestrator import OUTCOME_DEFERRED, OUTCOME_DONE, ProvisioningOrchestrator
from hostplane.services.provisioning.reconciliation import ReconcileReport, reconcile_provider

__all__ = [
    "InMemoryTaskQueue",
    "ProvisioningTask",
    "RedisTaskQueue",
    "TaskQueue",
    "get_task_queue",
    "enqueue_provisioning",
    "get_resource_status",
    "request_delete",
    "request_resize",
    "request_server",
    "retry_resource",
    "OUTCOME_DEFERRED",
    "OUTCOME_DONE",
    "ProvisioningOrchestrator",
    "ReconcileReport",
    "reconcile_provider",
]
