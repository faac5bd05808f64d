from __future__ import annotations

from hostplane.core.config import get_settings
from hostplane.core.errors import ProviderConfigError
from hostplane.providers.base import ProviderClient
from hostplane.providers.cached import CachedProviderClient
from hostplane.providers.fake import FakeProvider
from hostplane.providers.hetzner import HetznerProvider


SUPPORTED_PROVIDERS = ("hetzner", "fake")

_clients: dict[str, CachedProviderClient] = {}


def build_provider(name: str) -> ProviderClient:
    provider = name.lower()
    if provider == "hetzner":
        return HetznerProvider()
    if provider == "fake":
        return FakeProvider()
    raise ProviderConfigError(f"Unsupported provider: {name}")


def get_provider_client(name: str | None = None) -> CachedProviderClient:
    # Reuse one cached client per provider so HTTP connections and cache entries are shared.
    provider = (name or get_settings().provider_default or "").lower()
    client = _clients.get(provider)
    if client is None:
        client = CachedProviderClient(build_provider(provider))
        _clients[provider] = client
    return client


def register_provider_client(client: ProviderClient) -> CachedProviderClient:
    # Tests and local scripts swap in a prepared client under its provider name.
    cached = client if isinstance(client, CachedProviderClient) else CachedProviderClient(client)
    _clients[cached.name] = cached
    return cached


async def close_provider_clients() -> None:
    clients = list(_clients.values())
    _clients.clear()
    for client in clients:
        await client.aclose()
