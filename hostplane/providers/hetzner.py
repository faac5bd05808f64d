from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from hostplane.core.config import get_settings
from hostplane.core.errors import (
    PermanentProviderError,
    ProviderAuthError,
    ProviderConfigError,
    ProviderNotFoundError,
    TransientProviderError,
)
from hostplane.providers.base import CATALOG_KINDS, OFF_STATE, CatalogOption, CreateResult, ProviderServer, ServerSpec
from hostplane.services.rate_limit import TokenBucket, get_provider_bucket
from hostplane.services.resilience import poll_until
from hostplane.services.telemetry import OUTCOME_OK, OUTCOME_PERMANENT, OUTCOME_TRANSIENT, record_provider_call


logger = logging.getLogger(__name__)

# Hetzner error codes that describe a busy or degraded API rather than a bad request.
_TRANSIENT_ERROR_CODES = {
    "conflict",
    "locked",
    "rate_limit_exceeded",
    "server_error",
    "timeout",
    "unavailable",
    "maintenance",
    "robot_unavailable",
}
_PAGE_SIZE = 50


def _error_body(response: httpx.Response) -> tuple[str | None, str]:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("code"), str(error.get("message") or f"http_{response.status_code}")
    return None, f"http_{response.status_code}"


def _retry_after_s(response: httpx.Response) -> float | None:
    # Prefer Retry-After; fall back to Hetzner's RateLimit-Reset epoch header.
    raw = response.headers.get("Retry-After")
    if raw:
        try:
            return max(0.0, float(raw))
        except ValueError:
            return None
    reset = response.headers.get("RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


def classify_response(response: httpx.Response, *, operation: str) -> None:
    """Raise the error family for a non-2xx provider response."""
    status = response.status_code
    if status < 400:
        return
    code, message = _error_body(response)
    detail = f"hetzner {operation} failed: {message}"
    if status == 429 or (code in _TRANSIENT_ERROR_CODES):
        raise TransientProviderError(
            detail, status_code=status, code=code, retry_after_s=_retry_after_s(response)
        )
    if status >= 500:
        raise TransientProviderError(detail, status_code=status, code=code)
    if status in {401, 403}:
        raise ProviderAuthError(detail, status_code=status, code=code)
    if status == 404:
        raise ProviderNotFoundError(detail, status_code=status, code=code)
    raise PermanentProviderError(detail, status_code=status, code=code)


def _to_server(payload: dict[str, Any]) -> ProviderServer:
    public_net = payload.get("public_net") or {}
    ipv4 = public_net.get("ipv4") or {}
    datacenter = payload.get("datacenter") or {}
    location = (datacenter.get("location") or {}).get("name") or (payload.get("location") or {}).get("name")
    image = payload.get("image") or {}
    server_type = payload.get("server_type") or {}
    return ProviderServer(
        id=str(payload["id"]),
        name=str(payload.get("name") or ""),
        state=str(payload.get("status") or "unknown"),
        size=server_type.get("name"),
        location=location,
        image=image.get("name"),
        public_ipv4=ipv4.get("ip"),
        labels={str(k): str(v) for k, v in (payload.get("labels") or {}).items()},
    )


class HetznerProvider:
    """Hetzner Cloud REST client returning provider-neutral types."""

    name = "hetzner"

    def __init__(
        self,
        *,
        api_token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        bucket: TokenBucket | None = None,
    ) -> None:
        self._settings = get_settings()
        self._token = api_token or self._settings.hetzner_api_token
        if not self._token:
            raise ProviderConfigError("HETZNER_API_TOKEN is required for the hetzner provider")
        self._base_url = (base_url or self._settings.hetzner_api_base_url).rstrip("/")
        self._client = client
        self._bucket = bucket

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # One pooled client per provider instance.
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._settings.provider_call_timeout_s,
        )
        return self._client

    def _get_bucket(self) -> TokenBucket:
        if self._bucket is None:
            self._bucket = get_provider_bucket(self.name)
        return self._bucket

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        await self._get_bucket().acquire()
        client = self._get_client()
        timeout = timeout_s if timeout_s is not None else self._settings.provider_call_timeout_s
        start = time.monotonic()
        try:
            response = await client.request(
                method,
                path,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            self._record(operation, start, outcome=OUTCOME_TRANSIENT)
            raise TransientProviderError(f"hetzner {operation} timed out") from exc
        except httpx.TransportError as exc:
            self._record(operation, start, outcome=OUTCOME_TRANSIENT)
            raise TransientProviderError(f"hetzner {operation} network error: {exc}") from exc

        try:
            classify_response(response, operation=operation)
        except TransientProviderError:
            self._record(operation, start, outcome=OUTCOME_TRANSIENT)
            raise
        except PermanentProviderError:
            self._record(operation, start, outcome=OUTCOME_PERMANENT)
            raise
        self._record(operation, start, outcome=OUTCOME_OK)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _record(self, operation: str, start: float, *, outcome: str) -> None:
        record_provider_call(
            provider=self.name,
            operation=operation,
            latency_ms=(time.monotonic() - start) * 1000.0,
            outcome=outcome,
        )

    async def _list_all(
        self, path: str, key: str, *, operation: str, params: dict[str, Any] | None = None, timeout_s: float | None = None
    ) -> list[dict[str, Any]]:
        # Follow Hetzner pagination until next_page is null.
        items: list[dict[str, Any]] = []
        page: int | None = 1
        while page is not None:
            query = dict(params or {})
            query.update({"page": page, "per_page": _PAGE_SIZE})
            payload = await self._request("GET", path, operation=operation, params=query, timeout_s=timeout_s)
            items.extend(payload.get(key) or [])
            pagination = (payload.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    async def _wait_for_action(self, action: dict[str, Any] | None, *, timeout_s: float | None) -> None:
        # Provider actions run asynchronously; block until this one settles.
        if not action or action.get("status") == "success":
            return
        action_id = action["id"]

        async def _probe() -> dict[str, Any]:
            payload = await self._request("GET", f"/actions/{action_id}", operation="get_action")
            return payload.get("action") or {}

        settled = await poll_until(
            _probe,
            lambda current: current.get("status") in {"success", "error"},
            interval_s=self._settings.action_poll_interval_s,
            timeout_s=timeout_s or self._settings.resize_timeout_s,
            description=f"hetzner action {action_id}",
            tolerate=lambda exc: isinstance(exc, TransientProviderError),
        )
        if settled.get("status") == "error":
            error = settled.get("error") or {}
            raise PermanentProviderError(
                f"hetzner action {settled.get('command')} failed: {error.get('message') or 'unknown error'}",
                code=error.get("code"),
            )

    async def create(self, spec: ServerSpec, *, timeout_s: float | None = None) -> CreateResult:
        logger.info(
            "provider_create_server provider=hetzner name=%s size=%s location=%s",
            spec.name,
            spec.size,
            spec.location,
        )
        body: dict[str, Any] = {
            "name": spec.name,
            "server_type": spec.size,
            "location": spec.location,
            "image": spec.image,
            "labels": dict(spec.labels),
            "start_after_create": True,
        }
        if spec.ssh_keys:
            body["ssh_keys"] = list(spec.ssh_keys)
        if spec.user_data:
            body["user_data"] = spec.user_data
        payload = await self._request("POST", "/servers", operation="create", json=body, timeout_s=timeout_s)
        server = _to_server(payload["server"])
        logger.info("provider_server_created provider=hetzner server_id=%s", server.id)
        return CreateResult(provider_resource_id=server.id, public_ipv4=server.public_ipv4)

    async def delete(self, provider_resource_id: str, *, timeout_s: float | None = None) -> None:
        logger.info("provider_delete_server provider=hetzner server_id=%s", provider_resource_id)
        await self._request("DELETE", f"/servers/{provider_resource_id}", operation="delete", timeout_s=timeout_s)

    async def resize(self, provider_resource_id: str, new_size: str, *, timeout_s: float | None = None) -> None:
        # change_type requires a stopped server: power off, change type, power back on.
        logger.info("provider_resize_server provider=hetzner server_id=%s new_size=%s", provider_resource_id, new_size)
        server = await self.get(provider_resource_id, timeout_s=timeout_s)
        if server.state != OFF_STATE:
            payload = await self._request(
                "POST", f"/servers/{provider_resource_id}/actions/poweroff", operation="poweroff", timeout_s=timeout_s
            )
            await self._wait_for_action(payload.get("action"), timeout_s=None)
        payload = await self._request(
            "POST",
            f"/servers/{provider_resource_id}/actions/change_type",
            operation="change_type",
            json={"server_type": new_size, "upgrade_disk": True},
            timeout_s=timeout_s,
        )
        await self._wait_for_action(payload.get("action"), timeout_s=None)
        await self._request(
            "POST", f"/servers/{provider_resource_id}/actions/poweron", operation="poweron", timeout_s=timeout_s
        )

    async def get(
        self, provider_resource_id: str, *, timeout_s: float | None = None, fresh: bool = False
    ) -> ProviderServer:
        payload = await self._request("GET", f"/servers/{provider_resource_id}", operation="get", timeout_s=timeout_s)
        return _to_server(payload["server"])

    async def list_catalog(self, kind: str, *, timeout_s: float | None = None) -> list[CatalogOption]:
        if kind == "size":
            rows = await self._list_all("/server_types", "server_types", operation="list_sizes", timeout_s=timeout_s)
            return [
                CatalogOption(
                    id=str(row["id"]),
                    name=row["name"],
                    description=row.get("description"),
                    attributes={
                        "cores": row.get("cores"),
                        "memory_gb": row.get("memory"),
                        "disk_gb": row.get("disk"),
                        "cpu_type": row.get("cpu_type"),
                        "architecture": row.get("architecture"),
                        "deprecated": bool(row.get("deprecated") or row.get("deprecation")),
                        "prices": row.get("prices") or [],
                    },
                )
                for row in rows
            ]
        if kind == "location":
            rows = await self._list_all("/locations", "locations", operation="list_locations", timeout_s=timeout_s)
            return [
                CatalogOption(
                    id=str(row["id"]),
                    name=row["name"],
                    description=row.get("description"),
                    attributes={
                        "country": row.get("country"),
                        "city": row.get("city"),
                        "network_zone": row.get("network_zone"),
                    },
                )
                for row in rows
            ]
        if kind == "image":
            rows = await self._list_all(
                "/images",
                "images",
                operation="list_images",
                params={"type": "system", "sort": "name:asc"},
                timeout_s=timeout_s,
            )
            return [
                CatalogOption(
                    id=str(row["id"]),
                    name=row.get("name") or str(row["id"]),
                    description=row.get("description"),
                    attributes={
                        "os_flavor": row.get("os_flavor"),
                        "os_version": row.get("os_version"),
                        "architecture": row.get("architecture"),
                    },
                )
                for row in rows
            ]
        if kind == "ssh_key":
            rows = await self._list_all("/ssh_keys", "ssh_keys", operation="list_ssh_keys", timeout_s=timeout_s)
            return [
                CatalogOption(
                    id=str(row["id"]),
                    name=row["name"],
                    attributes={"fingerprint": row.get("fingerprint"), "labels": row.get("labels") or {}},
                )
                for row in rows
            ]
        raise PermanentProviderError(f"unknown catalog kind {kind!r}; expected one of {', '.join(CATALOG_KINDS)}")

    async def find_by_label(
        self, key: str, value: str | None = None, *, timeout_s: float | None = None
    ) -> list[ProviderServer]:
        selector = key if value is None else f"{key}=={value}"
        rows = await self._list_all(
            "/servers", "servers", operation="list_servers", params={"label_selector": selector}, timeout_s=timeout_s
        )
        return [_to_server(row) for row in rows]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
