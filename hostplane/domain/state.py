from __future__ import annotations

from typing import Literal


ResourceStatus = Literal[
    "queued",
    "provisioning",
    "ready",
    "resizing",
    "deleting",
    "deleted",
    "failed",
]
Operation = Literal["create", "delete", "resize"]

STATUS_QUEUED = "queued"
STATUS_PROVISIONING = "provisioning"
STATUS_READY = "ready"
STATUS_RESIZING = "resizing"
STATUS_DELETING = "deleting"
STATUS_DELETED = "deleted"
STATUS_FAILED = "failed"

OPERATIONS: tuple[str, ...] = ("create", "delete", "resize")

# Allowed lifecycle edges; anything else is rejected by the store.
TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_QUEUED: frozenset({STATUS_PROVISIONING, STATUS_FAILED}),
    STATUS_PROVISIONING: frozenset({STATUS_READY, STATUS_FAILED}),
    STATUS_READY: frozenset({STATUS_DELETING, STATUS_RESIZING, STATUS_FAILED}),
    STATUS_RESIZING: frozenset({STATUS_READY, STATUS_FAILED}),
    STATUS_DELETING: frozenset({STATUS_DELETED, STATUS_FAILED}),
    STATUS_DELETED: frozenset(),
    # Operator retry re-enters the graph at queued; failed rows can still be torn down.
    STATUS_FAILED: frozenset({STATUS_QUEUED, STATUS_DELETING}),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def predecessors(target: str) -> frozenset[str]:
    # Statuses from which `target` is reachable in one step.
    return frozenset(status for status, targets in TRANSITIONS.items() if target in targets)


def is_valid_history(statuses: list[str]) -> bool:
    # Validate an observed status sequence; repeated observations of one status are allowed.
    for previous, current in zip(statuses, statuses[1:]):
        if previous == current:
            continue
        if not can_transition(previous, current):
            return False
    return True
