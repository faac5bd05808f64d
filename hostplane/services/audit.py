from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "user_data", "ssh_key"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` with credential and cloud-init fields redacted."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def _write(session: AsyncSession, event: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        if not best_effort:
            logger.error("audit_event_write_failed event_type=%s resource_id=%s", event.event_type, event.resource_id)
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s resource_id=%s", event.event_type, event.resource_id, exc_info=exc
        )


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Failed inserts are logged and dropped unless best_effort is False.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is not None:
        # Caller owns the transaction unless it asks for a commit.
        await _write(session, event, commit=bool(commit), best_effort=best_effort)
        return
    if session_factory is None:
        from hostplane.persistence.db import SessionLocal

        session_factory = SessionLocal
    async with session_factory() as audit_session:
        await _write(audit_session, event, commit=True, best_effort=best_effort)


async def record_system_event(
    *,
    event_type: str,
    outcome: str = "success",
    tenant_id: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> None:
    # Shorthand for events emitted by workers rather than users.
    await record_event(
        session_factory=session_factory,
        tenant_id=tenant_id,
        actor_type="system",
        actor_id=None,
        event_type=event_type,
        outcome=outcome,
        resource_type="server" if resource_id else None,
        resource_id=resource_id,
        metadata=metadata,
        error_code=error_code,
    )
