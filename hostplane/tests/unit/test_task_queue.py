from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hostplane.services.provisioning.queue import (
    LANE_CRITICAL,
    LANE_DEFAULT,
    LANE_LOW,
    OUTCOME_DEAD_LETTERED,
    OUTCOME_REQUEUED,
    InMemoryTaskQueue,
    ProvisioningTask,
    heartbeat_is_stale,
    parse_lane_map,
)


def _queue(fake_clock, *, max_attempts: int = 3) -> InMemoryTaskQueue:
    fake_clock.now = 1_000.0
    return InMemoryTaskQueue(visibility_timeout_s=60, max_attempts=max_attempts, clock=fake_clock)


def test_lane_map_defaults_and_overrides() -> None:
    assert parse_lane_map("delete=critical,create=default,resize=low") == {
        "create": LANE_DEFAULT,
        "delete": LANE_CRITICAL,
        "resize": LANE_LOW,
    }
    # Unknown operations and lanes are ignored.
    assert parse_lane_map("resize=urgent,reboot=critical")["resize"] == LANE_DEFAULT


def test_build_assigns_lane_by_operation() -> None:
    assert ProvisioningTask.build(resource_id="r1", operation="delete").lane == LANE_CRITICAL
    assert ProvisioningTask.build(resource_id="r1", operation="create").lane == LANE_DEFAULT
    task = ProvisioningTask.build(resource_id="r1", operation="resize", payload={"size": "cx32"})
    assert task.lane == LANE_LOW
    assert task.task_id.startswith("resize:r1:")


@pytest.mark.asyncio
async def test_higher_lanes_are_served_first(fake_clock) -> None:
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="resize", payload={"size": "cx32"}))
    await queue.enqueue(ProvisioningTask.build(resource_id="r2", operation="create"))
    await queue.enqueue(ProvisioningTask.build(resource_id="r3", operation="delete"))

    order = [(await queue.dequeue()).operation for _ in range(3)]
    assert order == ["delete", "create", "resize"]
    assert await queue.dequeue() is None


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_on_task_id(fake_clock) -> None:
    queue = _queue(fake_clock)
    task = ProvisioningTask.build(resource_id="r1", operation="create", task_id="create:r1")
    assert await queue.enqueue(task) is True
    assert await queue.enqueue(task) is False
    assert (await queue.depth())[LANE_DEFAULT] == 1


@pytest.mark.asyncio
async def test_ack_removes_task(fake_clock) -> None:
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="create"))
    task = await queue.dequeue()
    assert task.visibility_deadline is not None
    assert (await queue.depth())["reserved"] == 1
    await queue.ack(task)
    assert await queue.depth() == {"critical": 0, "default": 0, "low": 0, "reserved": 0, "dead_letter": 0}


@pytest.mark.asyncio
async def test_fail_requeues_then_dead_letters(fake_clock) -> None:
    # Each failure spends one attempt; the last one parks the task in the dead-letter lane.
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="create", task_id="create:r1"))

    task = await queue.dequeue()
    assert await queue.fail(task, "boom 1", retry_in_s=0) == OUTCOME_REQUEUED
    task = await queue.dequeue()
    assert task.attempts == 1
    assert task.last_error == "boom 1"
    assert await queue.fail(task, "boom 2", retry_in_s=0) == OUTCOME_REQUEUED
    task = await queue.dequeue()
    assert await queue.fail(task, "boom 3", retry_in_s=0) == OUTCOME_DEAD_LETTERED

    assert await queue.dequeue() is None
    dead = await queue.dead_letters()
    assert [item.task_id for item in dead] == ["create:r1"]
    assert dead[0].attempts == 3
    assert dead[0].last_error == "boom 3"
    assert (await queue.depth())["dead_letter"] == 1


@pytest.mark.asyncio
async def test_failed_task_waits_for_retry_delay(fake_clock) -> None:
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="create"))
    await queue.fail(await queue.dequeue(), "boom", retry_in_s=30)
    assert await queue.dequeue() is None
    fake_clock.now += 30
    assert (await queue.dequeue()).attempts == 1


@pytest.mark.asyncio
async def test_replay_dead_letter_resets_attempts(fake_clock) -> None:
    queue = _queue(fake_clock, max_attempts=1)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="delete", task_id="delete:r1"))
    await queue.fail(await queue.dequeue(), "provider down")

    assert await queue.replay_dead_letter("delete:r1") is True
    assert await queue.replay_dead_letter("delete:r1") is False
    task = await queue.dequeue()
    assert task.task_id == "delete:r1"
    assert task.attempts == 0
    assert task.last_error is None


@pytest.mark.asyncio
async def test_new_request_supersedes_a_dead_letter_with_the_same_id(fake_clock) -> None:
    queue = _queue(fake_clock, max_attempts=1)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="delete", task_id="delete:r1"))
    assert await queue.fail(await queue.dequeue(), "provider down") == OUTCOME_DEAD_LETTERED

    fresh = ProvisioningTask.build(resource_id="r1", operation="delete", task_id="delete:r1")
    assert await queue.enqueue(fresh) is True
    # Still idempotent while the new task is pending.
    assert await queue.enqueue(fresh) is False

    assert await queue.dead_letters() == []
    task = await queue.dequeue()
    assert task.task_id == "delete:r1"
    assert task.attempts == 0
    assert task.last_error is None


@pytest.mark.asyncio
async def test_defer_does_not_spend_an_attempt(fake_clock) -> None:
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="delete"))
    await queue.defer(await queue.dequeue(), 30)
    assert await queue.dequeue() is None
    fake_clock.now += 31
    task = await queue.dequeue()
    assert task.attempts == 0


@pytest.mark.asyncio
async def test_expired_reservations_are_reclaimed(fake_clock) -> None:
    # A worker that dies mid-task leaves a reservation that becomes visible again.
    queue = _queue(fake_clock, max_attempts=2)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="create", task_id="create:r1"))
    await queue.dequeue()

    assert await queue.reclaim_expired() == 0
    fake_clock.now += 61
    assert await queue.reclaim_expired() == 1
    task = await queue.dequeue()
    assert task.attempts == 1

    fake_clock.now += 61
    assert await queue.reclaim_expired() == 1
    assert await queue.dequeue() is None
    dead = await queue.dead_letters()
    assert dead[0].last_error == "visibility timeout expired"


@pytest.mark.asyncio
async def test_extend_keeps_reservation_alive(fake_clock) -> None:
    queue = _queue(fake_clock)
    await queue.enqueue(ProvisioningTask.build(resource_id="r1", operation="create"))
    task = await queue.dequeue()
    assert await queue.extend(task, 600) is True
    fake_clock.now += 120
    assert await queue.reclaim_expired() == 0
    await queue.ack(task)
    assert await queue.extend(task, 600) is False


def test_heartbeat_staleness() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert heartbeat_is_stale(None, now=now)
    assert not heartbeat_is_stale(now - timedelta(seconds=5), now=now)
    assert heartbeat_is_stale(now - timedelta(minutes=5), now=now)
