from __future__ import annotations

import pytest

from hostplane.core.errors import (
    PermanentProviderError,
    ProviderNotFoundError,
    ProvisioningTimeoutError,
    TransientProviderError,
)
from hostplane.services.resilience import (
    RetryPolicy,
    backoff_delay_s,
    max_total_backoff_s,
    poll_until,
    retry_async,
)


_POLICY = RetryPolicy(max_attempts=3, base_delay_ms=500, multiplier=2.0, max_delay_ms=4000)


@pytest.mark.asyncio
async def test_retry_async_retries_transient(fake_clock) -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TransientProviderError("503 from provider", status_code=503)
        return "ok"

    result = await retry_async(flaky, policy=_POLICY, sleep=fake_clock.sleep)
    assert result == "ok"
    assert calls["count"] == 2
    assert len(fake_clock.sleeps) == 1


@pytest.mark.asyncio
async def test_retry_async_stops_at_max_attempts(fake_clock) -> None:
    # A provider that never recovers is called exactly max_attempts times.
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise TransientProviderError("timeout")

    with pytest.raises(TransientProviderError):
        await retry_async(down, policy=_POLICY, sleep=fake_clock.sleep)
    assert calls["count"] == 3
    assert len(fake_clock.sleeps) == 2
    assert sum(fake_clock.sleeps) <= max_total_backoff_s(_POLICY)


@pytest.mark.asyncio
async def test_retry_async_never_retries_permanent(fake_clock) -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise ProviderNotFoundError("server 1 not found", status_code=404)

    with pytest.raises(PermanentProviderError):
        await retry_async(rejected, policy=_POLICY, sleep=fake_clock.sleep)
    assert calls["count"] == 1
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_retry_async_ignores_unrelated_errors(fake_clock) -> None:
    async def broken() -> None:
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await retry_async(broken, policy=_POLICY, sleep=fake_clock.sleep)
    assert fake_clock.sleeps == []


def test_backoff_grows_and_caps() -> None:
    # Pin jitter to 1.0 so the exponential schedule is visible.
    def no_jitter(low: float, high: float) -> float:
        return 1.0

    assert backoff_delay_s(_POLICY, 1, rand=no_jitter) == 0.5
    assert backoff_delay_s(_POLICY, 2, rand=no_jitter) == 1.0
    assert backoff_delay_s(_POLICY, 3, rand=no_jitter) == 2.0
    assert backoff_delay_s(_POLICY, 10, rand=no_jitter) == 4.0


def test_backoff_jitter_stays_within_bounds() -> None:
    for _ in range(50):
        delay = backoff_delay_s(_POLICY, 2)
        assert 0.5 <= delay <= 1.5


def test_retry_after_raises_floor_but_not_cap() -> None:
    def no_jitter(low: float, high: float) -> float:
        return 1.0

    assert backoff_delay_s(_POLICY, 1, retry_after_s=3, rand=no_jitter) == 3.0
    assert backoff_delay_s(_POLICY, 1, retry_after_s=120, rand=no_jitter) == 4.0


@pytest.mark.asyncio
async def test_retry_async_honours_retry_after(fake_clock) -> None:
    calls = {"count": 0}

    async def throttled() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise TransientProviderError("rate limited", status_code=429, retry_after_s=2.5)
        return "ok"

    assert await retry_async(throttled, policy=_POLICY, sleep=fake_clock.sleep) == "ok"
    assert fake_clock.sleeps[0] >= 2.5


@pytest.mark.asyncio
async def test_poll_until_returns_first_matching_value(fake_clock) -> None:
    states = iter(["initializing", "starting", "running", "running"])

    async def probe() -> str:
        return next(states)

    value = await poll_until(
        probe,
        lambda state: state == "running",
        interval_s=5,
        timeout_s=60,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    assert value == "running"
    assert fake_clock.sleeps == [5, 5]


@pytest.mark.asyncio
async def test_poll_until_times_out(fake_clock) -> None:
    # Time only advances through the injected sleep, so the deadline is exact.
    async def probe() -> str:
        return "initializing"

    with pytest.raises(ProvisioningTimeoutError) as exc_info:
        await poll_until(
            probe,
            lambda state: state == "running",
            interval_s=5,
            timeout_s=12,
            description="server 7 running",
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
    assert "server 7 running" in str(exc_info.value)
    assert fake_clock.now == pytest.approx(12)
    assert fake_clock.sleeps == [5, 5, 2]


@pytest.mark.asyncio
async def test_poll_until_tolerates_selected_errors(fake_clock) -> None:
    calls = {"count": 0}

    async def probe() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise TransientProviderError("blip")
        return "running"

    value = await poll_until(
        probe,
        lambda state: state == "running",
        interval_s=1,
        timeout_s=10,
        tolerate=lambda exc: isinstance(exc, TransientProviderError),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    assert value == "running"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_poll_until_propagates_untolerated_errors(fake_clock) -> None:
    async def probe() -> str:
        raise PermanentProviderError("gone")

    with pytest.raises(PermanentProviderError):
        await poll_until(
            probe,
            lambda state: True,
            interval_s=1,
            timeout_s=10,
            tolerate=lambda exc: isinstance(exc, TransientProviderError),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
