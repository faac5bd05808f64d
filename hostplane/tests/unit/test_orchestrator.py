from __future__ import annotations

import pytest

from hostplane.core.config import RESOURCE_LABEL_KEY, get_settings
from hostplane.core.errors import PermanentProviderError, TransientProviderError
from hostplane.persistence.repos import audit as audit_repo
from hostplane.persistence.repos import resources as resources_repo
from hostplane.providers.base import ProviderServer
from hostplane.services.provisioning.orchestrator import (
    OUTCOME_DEFERRED,
    OUTCOME_DONE,
    ProvisioningOrchestrator,
)
from hostplane.services.provisioning.queue import ProvisioningTask
from hostplane.services.resilience import RetryPolicy


_POLICY = RetryPolicy(max_attempts=3, base_delay_ms=1, multiplier=2.0, max_delay_ms=5)


def _orchestrator(session_factory, fake_clock, **overrides) -> ProvisioningOrchestrator:
    settings = get_settings().model_copy(update={"poll_interval_s": 5.0, **overrides})
    return ProvisioningOrchestrator(
        session_factory=session_factory,
        policy=_POLICY,
        worker_id="w-test",
        sleep=fake_clock.sleep,
        clock=fake_clock,
        settings=settings,
    )


def _task(resource_id: str, operation: str, **payload) -> ProvisioningTask:
    return ProvisioningTask.build(resource_id=resource_id, operation=operation, payload=payload)


def _server(server_id: str, *, size: str = "cx22", state: str = "running", labels: dict | None = None):
    return ProviderServer(
        id=server_id,
        name=f"web-{server_id}",
        state=state,
        size=size,
        location="fsn1",
        image="debian-12",
        public_ipv4="198.51.100.9",
        labels=labels or {},
    )


async def _load(session_factory, resource_id: str):
    async with session_factory() as session:
        return await resources_repo.get_resource_by_id(session, resource_id)


async def _events(session_factory, resource_id: str) -> list[tuple[str, str]]:
    async with session_factory() as session:
        rows = await audit_repo.list_resource_events(session, resource_id)
    return [(row.event_type, row.outcome) for row in rows]


@pytest.mark.asyncio
async def test_create_provisions_server_until_ready(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.ready_after_polls = 2
    resource_id = await seed_resource()
    orchestrator = _orchestrator(session_factory, fake_clock)

    assert await orchestrator.handle(_task(resource_id, "create")) == OUTCOME_DONE

    resource = await _load(session_factory, resource_id)
    assert resource.status == "ready"
    assert resource.provider_resource_id == "1000"
    assert resource.public_ipv4 == "203.0.113.1"
    assert resource.provisioned_at is not None
    assert resource.lease_owner is None
    assert resource.last_error is None
    assert fake_provider.calls["create"] == 1
    assert fake_provider.calls["get"] == 3
    assert await _events(session_factory, resource_id) == [("resource.create", "success")]


@pytest.mark.asyncio
async def test_created_server_carries_resource_label(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource()
    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))
    servers = await fake_provider.find_by_label(RESOURCE_LABEL_KEY, resource_id)
    assert [server.id for server in servers] == ["1000"]


@pytest.mark.asyncio
async def test_duplicate_create_delivery_is_a_noop(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    # The same create delivered twice reaches the provider once.
    resource_id = await seed_resource()
    orchestrator = _orchestrator(session_factory, fake_clock)
    assert await orchestrator.handle(_task(resource_id, "create")) == OUTCOME_DONE
    assert await orchestrator.handle(_task(resource_id, "create")) == OUTCOME_DONE
    assert fake_provider.calls["create"] == 1
    assert len(fake_provider.server_ids()) == 1


@pytest.mark.asyncio
async def test_create_skips_resource_leased_by_another_worker(
    session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    resource_id = await seed_resource()
    async with session_factory() as session:
        await resources_repo.claim_resource(
            session, resource_id, owner="other-worker", lease_s=300, statuses=("queued",)
        )
        await session.commit()

    assert await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create")) == OUTCOME_DONE
    assert fake_provider.calls["create"] == 0
    assert (await _load(session_factory, resource_id)).status == "queued"


@pytest.mark.asyncio
async def test_lost_create_response_is_adopted_not_duplicated(
    session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    # The provider created the server but the response never arrived; the retry finds it by label.
    fake_provider.lose_next_create_response()
    resource_id = await seed_resource()

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "ready"
    assert resource.provider_resource_id == "1000"
    assert fake_provider.calls["create"] == 1
    assert fake_provider.server_ids() == ["1000"]


@pytest.mark.asyncio
async def test_create_adopts_orphan_from_earlier_crash(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource()
    fake_provider.add_server(_server("777", labels={RESOURCE_LABEL_KEY: resource_id}))

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "ready"
    assert resource.provider_resource_id == "777"
    assert fake_provider.calls["create"] == 0
    assert ("resource.adopted", "success") in await _events(session_factory, resource_id)


@pytest.mark.asyncio
async def test_create_refuses_ambiguous_orphans(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource()
    fake_provider.add_server(_server("777", labels={RESOURCE_LABEL_KEY: resource_id}))
    fake_provider.add_server(_server("778", labels={RESOURCE_LABEL_KEY: resource_id}))

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert "2 provider servers" in resource.last_error
    assert fake_provider.calls["create"] == 0


@pytest.mark.asyncio
async def test_create_resumes_polling_known_server(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    # A redelivered task for a provisioning row polls the existing server instead of creating one.
    fake_provider.add_server(_server("555", state="initializing"), polls_until_ready=2)
    resource_id = await seed_resource(status="provisioning", provider_resource_id="555")

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    assert (await _load(session_factory, resource_id)).status == "ready"
    assert fake_provider.calls["create"] == 0
    assert fake_provider.calls["find_by_label"] == 0


@pytest.mark.asyncio
async def test_create_times_out_into_failed(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.ready_after_polls = 10_000
    resource_id = await seed_resource()

    await _orchestrator(session_factory, fake_clock, ready_timeout_s=30).handle(_task(resource_id, "create"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert "not reached within 30s" in resource.last_error
    assert resource.provider_resource_id == "1000"
    assert resource.lease_owner is None
    assert fake_clock.now >= 30
    assert ("resource.create", "failure") in await _events(session_factory, resource_id)


@pytest.mark.asyncio
async def test_permanent_create_error_is_not_retried(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.inject_failure("create", PermanentProviderError("invalid server type cx99", status_code=422))
    resource_id = await seed_resource()

    assert await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create")) == OUTCOME_DONE

    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert "invalid server type" in resource.last_error
    assert fake_provider.calls["create"] == 1


@pytest.mark.asyncio
async def test_transient_create_errors_exhaust_retries(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.inject_failure("create", TransientProviderError("503", status_code=503), times=3)
    resource_id = await seed_resource()

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert fake_provider.calls["create"] == 3
    assert fake_provider.server_ids() == []


@pytest.mark.asyncio
async def test_transient_create_error_recovers(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.inject_failure("create", TransientProviderError("429", status_code=429, retry_after_s=0.001))
    resource_id = await seed_resource()

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "create"))

    assert (await _load(session_factory, resource_id)).status == "ready"
    assert fake_provider.calls["create"] == 2


@pytest.mark.asyncio
async def test_delete_removes_server(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.add_server(_server("555"))
    resource_id = await seed_resource(status="ready", provider_resource_id="555")
    orchestrator = _orchestrator(session_factory, fake_clock)

    assert await orchestrator.handle(_task(resource_id, "delete")) == OUTCOME_DONE
    resource = await _load(session_factory, resource_id)
    assert resource.status == "deleted"
    assert resource.deleted_at is not None
    assert fake_provider.server_ids() == []

    # A second delete is acknowledged without another provider call.
    assert await orchestrator.handle(_task(resource_id, "delete")) == OUTCOME_DONE
    assert fake_provider.calls["delete"] == 1
    assert await _events(session_factory, resource_id) == [("resource.delete", "success")]


@pytest.mark.asyncio
async def test_delete_treats_missing_server_as_deleted(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource(status="ready", provider_resource_id="999")
    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "delete"))
    assert (await _load(session_factory, resource_id)).status == "deleted"
    assert fake_provider.calls["delete"] == 1


@pytest.mark.asyncio
async def test_delete_failed_resource_without_server(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource(status="failed")
    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "delete"))
    assert (await _load(session_factory, resource_id)).status == "deleted"
    assert fake_provider.calls["delete"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["queued", "provisioning", "resizing"])
async def test_delete_waits_for_in_flight_operation(
    status, session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    resource_id = await seed_resource(status=status, provider_resource_id="555")
    assert await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "delete")) == OUTCOME_DEFERRED
    assert (await _load(session_factory, resource_id)).status == status
    assert fake_provider.calls["delete"] == 0


@pytest.mark.asyncio
async def test_resize_to_current_size_is_a_noop(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    fake_provider.add_server(_server("555", size="cx22"))
    resource_id = await seed_resource(status="ready", provider_resource_id="555", size="cx22")

    assert await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "resize", size="cx22")) == OUTCOME_DONE

    assert (await _load(session_factory, resource_id)).status == "ready"
    assert fake_provider.calls["resize"] == 0
    assert await _events(session_factory, resource_id) == []


@pytest.mark.asyncio
async def test_resize_changes_size_and_returns_to_ready(
    session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    fake_provider.ready_after_polls = 2
    fake_provider.add_server(_server("555", size="cx22"))
    resource_id = await seed_resource(status="ready", provider_resource_id="555", size="cx22")

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "resize", size="cx32"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "ready"
    assert resource.current_size == "cx32"
    assert (await fake_provider.get("555")).size == "cx32"
    assert fake_provider.calls["resize"] == 1
    assert await _events(session_factory, resource_id) == [("resource.resize", "success")]


@pytest.mark.asyncio
async def test_resize_waits_for_create(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource(status="provisioning", provider_resource_id="555")
    outcome = await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "resize", size="cx32"))
    assert outcome == OUTCOME_DEFERRED


@pytest.mark.asyncio
async def test_resize_transient_error_before_start_is_redelivered(
    session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    # Nothing changed at the provider yet, so the task goes back to the queue and the server stays ready.
    fake_provider.add_server(_server("555"))
    fake_provider.inject_failure("get", TransientProviderError("timeout"), times=3)
    resource_id = await seed_resource(status="ready", provider_resource_id="555")

    with pytest.raises(TransientProviderError):
        await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "resize", size="cx32"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "ready"
    assert resource.lease_owner is None


@pytest.mark.asyncio
async def test_resize_rejected_by_provider_fails_resource(
    session_factory, seed_resource, fake_provider, fake_clock
) -> None:
    fake_provider.add_server(_server("555"))
    fake_provider.inject_failure("resize", PermanentProviderError("server type cx12 too small for disk", status_code=422))
    resource_id = await seed_resource(status="ready", provider_resource_id="555")

    await _orchestrator(session_factory, fake_clock).handle(_task(resource_id, "resize", size="cx12"))

    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert "too small" in resource.last_error
    assert ("resource.resize", "failure") in await _events(session_factory, resource_id)


@pytest.mark.asyncio
async def test_abandon_fails_in_flight_resource(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource(status="provisioning", provider_resource_id="555")
    await _orchestrator(session_factory, fake_clock).abandon(_task(resource_id, "create"), "worker crashed")
    resource = await _load(session_factory, resource_id)
    assert resource.status == "failed"
    assert "dead-lettered" in resource.last_error


@pytest.mark.asyncio
async def test_abandon_leaves_settled_resource_alone(session_factory, seed_resource, fake_provider, fake_clock) -> None:
    resource_id = await seed_resource(status="ready", provider_resource_id="555")
    await _orchestrator(session_factory, fake_clock).abandon(_task(resource_id, "delete"), "broker lost")
    assert (await _load(session_factory, resource_id)).status == "ready"


@pytest.mark.asyncio
async def test_task_for_missing_resource_is_acknowledged(session_factory, fake_provider, fake_clock) -> None:
    outcome = await _orchestrator(session_factory, fake_clock).handle(_task("res-missing", "create"))
    assert outcome == OUTCOME_DONE
    assert sum(fake_provider.calls.values()) == 0
