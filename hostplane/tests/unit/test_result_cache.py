from __future__ import annotations

import asyncio

import pytest

from hostplane.core.errors import TransientProviderError
from hostplane.providers.base import ProviderServer
from hostplane.providers.cached import CachedProviderClient
from hostplane.providers.fake import FakeProvider
from hostplane.services.cache import ResultCache, cache_key


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_load() -> None:
    cache = ResultCache()
    calls = {"count": 0}

    async def loader() -> list[str]:
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return ["cx22", "cx32"]

    results = await asyncio.gather(
        *[cache.get_or_load("fake:catalog:size", loader, ttl_s=60) for _ in range(100)]
    )
    assert calls["count"] == 1
    assert all(result == ["cx22", "cx32"] for result in results)
    assert cache.misses == 1
    assert cache.hits == 99


@pytest.mark.asyncio
async def test_entries_expire_after_ttl(fake_clock) -> None:
    cache = ResultCache(clock=fake_clock)
    calls = {"count": 0}

    async def loader() -> int:
        calls["count"] += 1
        return calls["count"]

    assert await cache.get_or_load("k", loader, ttl_s=10) == 1
    fake_clock.now = 9.0
    assert await cache.get_or_load("k", loader, ttl_s=10) == 1
    fake_clock.now = 10.5
    assert await cache.get_or_load("k", loader, ttl_s=10) == 2


@pytest.mark.asyncio
async def test_loader_errors_are_shared_but_not_cached() -> None:
    # Every waiter of a failed load sees the error; the next call loads again.
    cache = ResultCache()
    calls = {"count": 0}

    async def failing() -> str:
        calls["count"] += 1
        await asyncio.sleep(0.01)
        raise TransientProviderError("provider down")

    results = await asyncio.gather(
        *[cache.get_or_load("k", failing, ttl_s=60) for _ in range(5)], return_exceptions=True
    )
    assert calls["count"] == 1
    assert all(isinstance(result, TransientProviderError) for result in results)

    async def healthy() -> str:
        return "ok"

    assert await cache.get_or_load("k", healthy, ttl_s=60) == "ok"


@pytest.mark.asyncio
async def test_invalidate_prefix_drops_matching_keys() -> None:
    cache = ResultCache()

    async def value() -> str:
        return "v"

    await cache.get_or_load("fake:get:a", value, ttl_s=60)
    await cache.get_or_load("fake:get:b", value, ttl_s=60)
    await cache.get_or_load("fake:catalog:c", value, ttl_s=60)
    assert cache.invalidate_prefix("fake:get:") == 2
    assert len(cache) == 1
    assert cache.peek("fake:catalog:c") == "v"


def test_cache_key_is_stable_per_arguments() -> None:
    assert cache_key("hetzner", "catalog", "size") == cache_key("hetzner", "catalog", "size")
    assert cache_key("hetzner", "catalog", "size") != cache_key("hetzner", "catalog", "image")
    assert cache_key("hetzner", "get", "1").startswith("hetzner:get:")


@pytest.mark.asyncio
async def test_catalog_reads_hit_provider_once() -> None:
    # 100 concurrent catalog reads against a slow provider cost one provider call.
    provider = FakeProvider(latency_s=0.02)
    client = CachedProviderClient(provider, cache=ResultCache())

    results = await asyncio.gather(*[client.list_catalog("size") for _ in range(100)])
    assert provider.calls["list_catalog"] == 1
    assert all([option.name for option in result] == ["cx22", "cx32", "cx42"] for result in results)


@pytest.mark.asyncio
async def test_status_reads_are_cached_unless_fresh() -> None:
    provider = FakeProvider()
    provider.add_server(ProviderServer(id="7", name="web", state="running", size="cx22"))
    client = CachedProviderClient(provider, cache=ResultCache())

    await client.get("7")
    await client.get("7")
    assert provider.calls["get"] == 1

    await client.get("7", fresh=True)
    assert provider.calls["get"] == 2


@pytest.mark.asyncio
async def test_mutations_invalidate_cached_status() -> None:
    provider = FakeProvider()
    provider.add_server(ProviderServer(id="7", name="web", state="running", size="cx22"))
    client = CachedProviderClient(provider, cache=ResultCache())

    assert (await client.get("7")).size == "cx22"
    await client.resize("7", "cx32")
    assert (await client.get("7")).size == "cx32"
    assert provider.calls["get"] == 2
