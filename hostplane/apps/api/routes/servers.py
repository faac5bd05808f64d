from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.apps.api.deps import get_actor_id, get_db, get_queue, get_tenant_id
from hostplane.apps.api.errors import bad_request
from hostplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hostplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from hostplane.domain.models import AuditEvent, ManagedResource
from hostplane.persistence.repos import audit as audit_repo
from hostplane.persistence.repos import resources as resources_repo
from hostplane.services.audit import sanitize_metadata
from hostplane.services.provisioning.intake import (
    get_resource_status,
    request_delete,
    request_resize,
    request_server,
    retry_resource,
)
from hostplane.services.provisioning.queue import TaskQueue


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/servers", tags=["servers"], responses=DEFAULT_ERROR_RESPONSES)

# Hetzner server names must be valid hostnames.
_NAME_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"


class ServerCreateRequest(BaseModel):
    name: str = Field(pattern=_NAME_PATTERN)
    size: str = Field(min_length=1)
    location: str = Field(min_length=1)
    image: str = Field(min_length=1)
    ssh_keys: list[str] = Field(default_factory=list)
    user_data: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    provider: str | None = None
    # Client-chosen id makes retries of this request idempotent.
    resource_id: str | None = Field(default=None, min_length=1, max_length=64)

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "name": "web-1",
                    "size": "cx22",
                    "location": "fsn1",
                    "image": "debian-12",
                    "ssh_keys": ["deploy"],
                    "labels": {"env": "prod"},
                }
            ]
        },
    }


class ServerResizeRequest(BaseModel):
    size: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class ServerResponse(BaseModel):
    id: str
    tenant_id: str
    owner_id: str
    provider: str
    name: str
    status: str
    provider_resource_id: str | None
    public_ipv4: str | None
    size: str | None
    spec: dict[str, Any]
    last_error: str | None
    attempts: int
    created_at: str | None
    updated_at: str | None
    provisioned_at: str | None
    deleted_at: str | None


class ServerListResponse(BaseModel):
    items: list[ServerResponse]
    offset: int
    limit: int


class TaskAcceptedResponse(BaseModel):
    resource_id: str
    status: str
    task_id: str | None
    operation: str
    status_url: str


class ServerEventResponse(BaseModel):
    id: int
    occurred_at: str | None
    event_type: str
    outcome: str
    actor_type: str
    error_code: str | None
    metadata: dict[str, Any]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_response(resource: ManagedResource) -> ServerResponse:
    return ServerResponse(
        id=resource.id,
        tenant_id=resource.tenant_id,
        owner_id=resource.owner_id,
        provider=resource.provider,
        name=resource.name,
        status=resource.status,
        provider_resource_id=resource.provider_resource_id,
        public_ipv4=resource.public_ipv4,
        size=resource.current_size,
        # user_data and similar fields are redacted before leaving the service.
        spec=sanitize_metadata(resource.spec_json or {}),
        last_error=resource.last_error,
        attempts=resource.attempts or 0,
        created_at=_iso(resource.created_at),
        updated_at=_iso(resource.updated_at),
        provisioned_at=_iso(resource.provisioned_at),
        deleted_at=_iso(resource.deleted_at),
    )


def _event_response(event: AuditEvent) -> ServerEventResponse:
    return ServerEventResponse(
        id=event.id,
        occurred_at=_iso(event.occurred_at),
        event_type=event.event_type,
        outcome=event.outcome,
        actor_type=event.actor_type,
        error_code=event.error_code,
        metadata=event.metadata_json or {},
    )


def _accepted(request: Request, resource_id: str, status: str, task_id: str | None, operation: str) -> dict:
    payload = TaskAcceptedResponse(
        resource_id=resource_id,
        status=status,
        task_id=task_id,
        operation=operation,
        status_url=str(request.url_for("get_server", resource_id=resource_id).path),
    )
    return success_response(request=request, data=payload)


@router.post("", status_code=202, response_model=SuccessEnvelope[TaskAcceptedResponse])
async def create_server(
    request: Request,
    body: ServerCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    spec = body.model_dump(include={"size", "location", "image", "ssh_keys", "user_data", "labels"})
    try:
        resource, task = await request_server(
            db,
            queue,
            tenant_id=tenant_id,
            owner_id=actor_id,
            name=body.name,
            spec=spec,
            provider=body.provider,
            resource_id=body.resource_id,
            request_id=get_request_id(request),
        )
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return _accepted(request, resource.id, resource.status, task.task_id, "create")


@router.get("", response_model=SuccessEnvelope[ServerListResponse])
async def list_servers(
    request: Request,
    status: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await resources_repo.list_resources(db, tenant_id, status=status, offset=offset, limit=limit)
    payload = ServerListResponse(items=[_to_response(row) for row in rows], offset=offset, limit=limit)
    return success_response(request=request, data=payload)


@router.get("/{resource_id}", name="get_server", response_model=SuccessEnvelope[ServerResponse])
async def get_server(
    request: Request,
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resource = await get_resource_status(db, resource_id, tenant_id)
    return success_response(request=request, data=_to_response(resource))


@router.get("/{resource_id}/events", response_model=SuccessEnvelope[list[ServerEventResponse]])
async def list_server_events(
    request: Request,
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_resource_status(db, resource_id, tenant_id)
    events = await audit_repo.list_resource_events(db, resource_id)
    return success_response(request=request, data=[_event_response(event) for event in events])


@router.delete("/{resource_id}", status_code=202, response_model=SuccessEnvelope[TaskAcceptedResponse])
async def delete_server(
    request: Request,
    response: Response,
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    task = await request_delete(db, queue, tenant_id=tenant_id, resource_id=resource_id)
    resource = await get_resource_status(db, resource_id, tenant_id)
    if task is None:
        # Already deleted: nothing to schedule.
        response.status_code = 200
    return _accepted(request, resource_id, resource.status, task.task_id if task else None, "delete")


@router.post("/{resource_id}/resize", status_code=202, response_model=SuccessEnvelope[TaskAcceptedResponse])
async def resize_server(
    request: Request,
    resource_id: str,
    body: ServerResizeRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    task = await request_resize(db, queue, tenant_id=tenant_id, resource_id=resource_id, size=body.size)
    resource = await get_resource_status(db, resource_id, tenant_id)
    return _accepted(request, resource_id, resource.status, task.task_id, "resize")


@router.post("/{resource_id}/retry", status_code=202, response_model=SuccessEnvelope[TaskAcceptedResponse])
async def retry_server(
    request: Request,
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    task = await retry_resource(db, queue, tenant_id=tenant_id, resource_id=resource_id)
    resource = await get_resource_status(db, resource_id, tenant_id)
    logger.info("resource_retry_requested resource_id=%s task_id=%s", resource_id, task.task_id)
    return _accepted(request, resource_id, resource.status, task.task_id, "create")
