from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from hostplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hostplane.apps.api.response import SuccessEnvelope, success_response
from hostplane.providers.factory import get_provider_client
from hostplane.services.pricing import estimate_monthly_cost

router = APIRouter(prefix="/catalog", tags=["catalog"], responses=DEFAULT_ERROR_RESPONSES)


class CatalogOptionResponse(BaseModel):
    id: str
    name: str
    description: str | None
    attributes: dict[str, Any]


class CatalogResponse(BaseModel):
    provider: str
    kind: str
    items: list[CatalogOptionResponse]


@router.get("/{kind}", response_model=SuccessEnvelope[CatalogResponse])
async def get_catalog(
    request: Request,
    kind: Literal["size", "location", "image", "ssh_key"],
    provider: str | None = Query(default=None),
) -> dict:
    # Served through the result cache; catalog data changes rarely.
    client = get_provider_client(provider)
    options = await client.list_catalog(kind)
    payload = CatalogResponse(
        provider=client.name,
        kind=kind,
        items=[
            CatalogOptionResponse(
                id=option.id, name=option.name, description=option.description, attributes=option.attributes
            )
            for option in options
        ],
    )
    return success_response(request=request, data=payload)


class CostEstimateResponse(BaseModel):
    provider: str
    size: str
    location: str
    hourly: Decimal
    monthly: Decimal
    backups: bool


@router.get("/size/{size}/cost", response_model=SuccessEnvelope[CostEstimateResponse])
async def get_size_cost(
    request: Request,
    size: str,
    location: str | None = Query(default=None),
    backups: bool = Query(default=False),
    provider: str | None = Query(default=None),
) -> dict:
    client = get_provider_client(provider)
    estimate = await estimate_monthly_cost(client, size, location=location, with_backups=backups)
    payload = CostEstimateResponse(
        provider=estimate.provider,
        size=estimate.size,
        location=estimate.location,
        hourly=estimate.hourly,
        monthly=estimate.monthly,
        backups=estimate.backups,
    )
    return success_response(request=request, data=payload)
