from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from hostplane.core.config import RESOURCE_LABEL_KEY


CATALOG_KINDS = ("size", "location", "image", "ssh_key")
# Provider state that counts as "ready" for a server.
READY_STATE = "running"
OFF_STATE = "off"


@dataclass(frozen=True)
class ServerSpec:
    name: str
    size: str
    location: str
    image: str
    ssh_keys: tuple[str, ...] = ()
    user_data: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_resource(cls, *, resource_id: str, name: str, spec_json: dict[str, Any]) -> "ServerSpec":
        # Every server carries the resource id label so it can be found again after a crash.
        labels = {str(k): str(v) for k, v in (spec_json.get("labels") or {}).items()}
        labels[RESOURCE_LABEL_KEY] = resource_id
        return cls(
            name=name,
            size=str(spec_json["size"]),
            location=str(spec_json["location"]),
            image=str(spec_json["image"]),
            ssh_keys=tuple(str(key) for key in spec_json.get("ssh_keys") or ()),
            user_data=spec_json.get("user_data"),
            labels=labels,
        )


@dataclass(frozen=True)
class CreateResult:
    provider_resource_id: str
    public_ipv4: str | None


@dataclass(frozen=True)
class ProviderServer:
    id: str
    name: str
    state: str
    size: str | None
    location: str | None = None
    image: str | None = None
    public_ipv4: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.state == READY_STATE


@dataclass(frozen=True)
class CatalogOption:
    id: str
    name: str
    description: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    name: str

    async def create(self, spec: ServerSpec, *, timeout_s: float | None = None) -> CreateResult:
        ...

    async def delete(self, provider_resource_id: str, *, timeout_s: float | None = None) -> None:
        ...

    async def resize(self, provider_resource_id: str, new_size: str, *, timeout_s: float | None = None) -> None:
        ...

    async def get(
        self, provider_resource_id: str, *, timeout_s: float | None = None, fresh: bool = False
    ) -> ProviderServer:
        ...

    async def list_catalog(self, kind: str, *, timeout_s: float | None = None) -> list[CatalogOption]:
        ...

    async def find_by_label(
        self, key: str, value: str | None = None, *, timeout_s: float | None = None
    ) -> list[ProviderServer]:
        ...

    async def aclose(self) -> None:
        ...
