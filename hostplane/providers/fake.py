from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from dataclasses import dataclass, field, replace

from hostplane.core.errors import ProviderNotFoundError, TransientProviderError
from hostplane.providers.base import OFF_STATE, READY_STATE, CatalogOption, CreateResult, ProviderServer, ServerSpec


def _prices(hourly: str, monthly: str) -> list[dict]:
    # Same shape as Hetzner's server_types[].prices; amounts are decimal strings.
    return [
        {
            "location": location,
            "price_hourly": {"net": hourly, "gross": hourly},
            "price_monthly": {"net": monthly, "gross": monthly},
        }
        for location in ("fsn1", "nbg1", "hel1")
    ]


_SIZES = [
    CatalogOption(
        id="1",
        name="cx22",
        description="CX22",
        attributes={"cores": 2, "memory_gb": 4.0, "disk_gb": 40, "prices": _prices("0.0060", "3.7900")},
    ),
    CatalogOption(
        id="2",
        name="cx32",
        description="CX32",
        attributes={"cores": 4, "memory_gb": 8.0, "disk_gb": 80, "prices": _prices("0.0110", "6.8000")},
    ),
    CatalogOption(
        id="3",
        name="cx42",
        description="CX42",
        attributes={"cores": 8, "memory_gb": 16.0, "disk_gb": 160, "prices": _prices("0.0260", "16.4000")},
    ),
]
_LOCATIONS = [
    CatalogOption(id="1", name="fsn1", description="Falkenstein DC Park 1", attributes={"country": "DE"}),
    CatalogOption(id="2", name="nbg1", description="Nuremberg DC Park 1", attributes={"country": "DE"}),
    CatalogOption(id="3", name="hel1", description="Helsinki DC Park 1", attributes={"country": "FI"}),
]
_IMAGES = [
    CatalogOption(id="1", name="debian-12", description="Debian 12", attributes={"os_flavor": "debian"}),
    CatalogOption(id="2", name="ubuntu-24.04", description="Ubuntu 24.04", attributes={"os_flavor": "ubuntu"}),
]
_SSH_KEYS = [
    CatalogOption(
        id="1",
        name="ops",
        attributes={"fingerprint": "b7:2f:30:a0:2f:6c:58:6c:21:04:58:61:ba:06:3b:2f", "labels": {}},
    ),
]


@dataclass
class _FakeServer:
    server: ProviderServer
    polls_until_ready: int


@dataclass
class FakeProvider:
    """In-memory provider for local runs and tests.

    Servers report ``initializing`` (or ``off`` after a resize) for
    ``ready_after_polls`` reads before turning ``running``. Failures can be
    queued per operation with ``inject_failure``.
    """

    ready_after_polls: int = 0
    latency_s: float = 0.0
    name: str = "fake"
    calls: Counter = field(default_factory=Counter)
    _servers: dict[str, _FakeServer] = field(default_factory=dict)
    _failures: dict[str, list[Exception]] = field(default_factory=dict)
    _lose_create_responses: int = 0
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1000))

    def inject_failure(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([exc] * times)

    def lose_next_create_response(self) -> None:
        # The server is created but the caller sees a network error.
        self._lose_create_responses += 1

    def add_server(self, server: ProviderServer, *, polls_until_ready: int = 0) -> None:
        self._servers[server.id] = _FakeServer(server=server, polls_until_ready=polls_until_ready)

    def server_ids(self) -> list[str]:
        return list(self._servers)

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def create(self, spec: ServerSpec, *, timeout_s: float | None = None) -> CreateResult:
        await self._enter("create")
        server_id = str(next(self._ids))
        address = f"203.0.113.{int(server_id) % 250 + 1}"
        self._servers[server_id] = _FakeServer(
            server=ProviderServer(
                id=server_id,
                name=spec.name,
                state="initializing" if self.ready_after_polls else READY_STATE,
                size=spec.size,
                location=spec.location,
                image=spec.image,
                public_ipv4=address,
                labels=dict(spec.labels),
            ),
            polls_until_ready=self.ready_after_polls,
        )
        if self._lose_create_responses:
            self._lose_create_responses -= 1
            raise TransientProviderError("fake create response lost")
        return CreateResult(provider_resource_id=server_id, public_ipv4=address)

    async def delete(self, provider_resource_id: str, *, timeout_s: float | None = None) -> None:
        await self._enter("delete")
        if self._servers.pop(provider_resource_id, None) is None:
            raise ProviderNotFoundError(f"server {provider_resource_id} not found", status_code=404, code="not_found")

    async def resize(self, provider_resource_id: str, new_size: str, *, timeout_s: float | None = None) -> None:
        await self._enter("resize")
        record = self._servers.get(provider_resource_id)
        if record is None:
            raise ProviderNotFoundError(f"server {provider_resource_id} not found", status_code=404, code="not_found")
        state = OFF_STATE if self.ready_after_polls else READY_STATE
        record.server = replace(record.server, size=new_size, state=state)
        record.polls_until_ready = self.ready_after_polls

    async def get(
        self, provider_resource_id: str, *, timeout_s: float | None = None, fresh: bool = False
    ) -> ProviderServer:
        await self._enter("get")
        record = self._servers.get(provider_resource_id)
        if record is None:
            raise ProviderNotFoundError(f"server {provider_resource_id} not found", status_code=404, code="not_found")
        if record.polls_until_ready > 0:
            record.polls_until_ready -= 1
            return record.server
        if record.server.state != READY_STATE:
            record.server = replace(record.server, state=READY_STATE)
        return record.server

    async def list_catalog(self, kind: str, *, timeout_s: float | None = None) -> list[CatalogOption]:
        await self._enter("list_catalog")
        catalog = {"size": _SIZES, "location": _LOCATIONS, "image": _IMAGES, "ssh_key": _SSH_KEYS}
        if kind not in catalog:
            raise ProviderNotFoundError(f"unknown catalog kind {kind!r}")
        return list(catalog[kind])

    async def find_by_label(
        self, key: str, value: str | None = None, *, timeout_s: float | None = None
    ) -> list[ProviderServer]:
        await self._enter("find_by_label")
        matches = []
        for record in self._servers.values():
            if key not in record.server.labels:
                continue
            if value is not None and record.server.labels[key] != value:
                continue
            matches.append(record.server)
        return matches

    async def aclose(self) -> None:
        return None
