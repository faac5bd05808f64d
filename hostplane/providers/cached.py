from __future__ import annotations

from hostplane.core.config import get_settings
from hostplane.providers.base import CatalogOption, CreateResult, ProviderClient, ProviderServer, ServerSpec
from hostplane.services.cache import ResultCache, cache_key, get_result_cache


class CachedProviderClient:
    """Wrap a provider client with the shared result cache.

    Catalog reads and status reads are cached; mutations invalidate the
    affected server entry. ``get(..., fresh=True)`` always reaches the
    provider, which is what readiness polling needs.
    """

    def __init__(self, inner: ProviderClient, *, cache: ResultCache | None = None) -> None:
        self.inner = inner
        self.name = inner.name
        self._cache = cache or get_result_cache()
        self._settings = get_settings()

    def _server_key(self, provider_resource_id: str) -> str:
        return cache_key(self.name, "get", provider_resource_id)

    async def create(self, spec: ServerSpec, *, timeout_s: float | None = None) -> CreateResult:
        return await self.inner.create(spec, timeout_s=timeout_s)

    async def delete(self, provider_resource_id: str, *, timeout_s: float | None = None) -> None:
        try:
            await self.inner.delete(provider_resource_id, timeout_s=timeout_s)
        finally:
            self._cache.invalidate(self._server_key(provider_resource_id))

    async def resize(self, provider_resource_id: str, new_size: str, *, timeout_s: float | None = None) -> None:
        try:
            await self.inner.resize(provider_resource_id, new_size, timeout_s=timeout_s)
        finally:
            self._cache.invalidate(self._server_key(provider_resource_id))

    async def get(
        self, provider_resource_id: str, *, timeout_s: float | None = None, fresh: bool = False
    ) -> ProviderServer:
        key = self._server_key(provider_resource_id)
        if fresh:
            server = await self.inner.get(provider_resource_id, timeout_s=timeout_s)
            # Drop the stale entry so the next cached read sees this state or newer.
            self._cache.invalidate(key)
            return server
        return await self._cache.get_or_load(
            key,
            lambda: self.inner.get(provider_resource_id, timeout_s=timeout_s),
            ttl_s=self._settings.status_cache_ttl_s,
        )

    async def list_catalog(self, kind: str, *, timeout_s: float | None = None) -> list[CatalogOption]:
        return await self._cache.get_or_load(
            cache_key(self.name, "catalog", kind),
            lambda: self.inner.list_catalog(kind, timeout_s=timeout_s),
            ttl_s=self._settings.catalog_cache_ttl_s,
        )

    async def find_by_label(
        self, key: str, value: str | None = None, *, timeout_s: float | None = None
    ) -> list[ProviderServer]:
        # Orphan detection must see the provider's current view.
        return await self.inner.find_by_label(key, value, timeout_s=timeout_s)

    async def aclose(self) -> None:
        await self.inner.aclose()
