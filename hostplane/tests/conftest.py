from __future__ import annotations

import os
from datetime import datetime

# Settings are read at import time by the db module; pin a test profile before any hostplane import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["QUEUE_EXECUTION_MODE"] = "inline"
os.environ["PROVIDER_DEFAULT"] = "fake"
os.environ["POLL_INTERVAL_S"] = "0.01"
os.environ["ACTION_POLL_INTERVAL_S"] = "0.01"
os.environ["QUEUE_REQUEUE_DELAY_S"] = "0"
os.environ.pop("HETZNER_API_TOKEN", None)

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from hostplane.core.config import get_settings
from hostplane.domain.models import Base, ManagedResource
from hostplane.providers import factory
from hostplane.providers.fake import FakeProvider
from hostplane.services.cache import reset_result_cache
from hostplane.services.provisioning.queue import reset_task_queue
from hostplane.services.rate_limit import reset_provider_buckets
from hostplane.services.telemetry import reset_telemetry


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_process_state():
    # Process-wide singletons must not leak between tests.
    get_settings.cache_clear()
    reset_result_cache()
    reset_provider_buckets()
    reset_telemetry()
    reset_task_queue()
    factory._clients.clear()
    yield
    factory._clients.clear()
    reset_task_queue()
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hostplane.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fake_provider() -> FakeProvider:
    provider = FakeProvider()
    factory.register_provider_client(provider)
    return provider


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def seed_resource(session_factory):
    # Insert a resource row directly in the given status, bypassing the lifecycle graph.
    async def _seed(
        *,
        status: str = "queued",
        tenant_id: str = "t-1",
        provider: str = "fake",
        provider_resource_id: str | None = None,
        size: str = "cx22",
        resource_id: str | None = None,
        provisioned_at: datetime | None = None,
    ) -> str:
        resource_id = resource_id or f"res-{os.urandom(4).hex()}"
        async with session_factory() as session:
            session.add(
                ManagedResource(
                    id=resource_id,
                    tenant_id=tenant_id,
                    owner_id="u-1",
                    provider=provider,
                    kind="server",
                    name=f"web-{resource_id[-4:]}",
                    status=status,
                    provider_resource_id=provider_resource_id,
                    spec_json={"size": size, "location": "fsn1", "image": "debian-12"},
                    current_size=size,
                    attempts=0,
                    provisioned_at=provisioned_at,
                )
            )
            await session.commit()
        return resource_id

    return _seed
