from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from hostplane.core.errors import CatalogEntryNotFoundError
from hostplane.providers.base import ProviderClient


logger = logging.getLogger(__name__)

# Backups are billed as a fixed share of the server price.
BACKUP_SURCHARGE_PERCENT = Decimal("20")
_PRICE_PRECISION = Decimal("0.0001")


@dataclass(frozen=True)
class CostEstimate:
    provider: str
    size: str
    location: str
    hourly: Decimal
    monthly: Decimal
    backups: bool


async def estimate_monthly_cost(
    client: ProviderClient,
    size: str,
    *,
    location: str | None = None,
    with_backups: bool = False,
) -> CostEstimate:
    """Price a server size from the provider's size catalog.

    The catalog read goes through whatever client is passed in, so the API's
    cached client serves repeated estimates without provider calls. Gross
    prices are used; without a location the first listed price applies.
    """
    options = await client.list_catalog("size")
    option = next((entry for entry in options if entry.name == size), None)
    if option is None:
        raise CatalogEntryNotFoundError(f"size {size!r} is not offered by {client.name}")
    prices = option.attributes.get("prices") or []
    if location is not None:
        prices = [price for price in prices if price.get("location") == location]
    if not prices:
        where = f" in {location}" if location else ""
        raise CatalogEntryNotFoundError(f"no price listed for size {size!r}{where}")
    price = prices[0]
    hourly = Decimal(str(price["price_hourly"]["gross"]))
    monthly = Decimal(str(price["price_monthly"]["gross"]))
    if with_backups:
        monthly += monthly * BACKUP_SURCHARGE_PERCENT / 100
    logger.debug("cost_estimated provider=%s size=%s location=%s backups=%s", client.name, size, location, with_backups)
    return CostEstimate(
        provider=client.name,
        size=size,
        location=price.get("location") or "",
        hourly=hourly.quantize(_PRICE_PRECISION),
        monthly=monthly.quantize(_PRICE_PRECISION),
        backups=with_backups,
    )
