from __future__ import annotations

import pytest

from hostplane.services.rate_limit import (
    TokenBucket,
    _calculate_tokens,
    _wait_s,
    get_provider_bucket,
    reset_provider_buckets,
)


def test_token_refill_respects_burst() -> None:
    tokens = _calculate_tokens(tokens=0.0, last_s=0.0, now_s=10.0, rate=1.0, burst=5)
    assert tokens == 5.0


def test_token_refill_tolerates_clock_skew() -> None:
    # A clock that moves backwards must not drain the bucket.
    tokens = _calculate_tokens(tokens=2.0, last_s=10.0, now_s=5.0, rate=1.0, burst=5)
    assert tokens == 2.0


def test_wait_time_until_next_token() -> None:
    assert _wait_s(1.0, rate=2.0, cost=1.0) == 0.0
    assert _wait_s(0.0, rate=2.0, cost=1.0) == 0.5
    assert _wait_s(0.25, rate=1.0, cost=1.0) == 0.75


@pytest.mark.asyncio
async def test_bucket_makes_callers_wait_once_burst_is_spent(fake_clock) -> None:
    bucket = TokenBucket(rate=2.0, burst=2, clock=fake_clock, sleep=fake_clock.sleep)
    assert await bucket.acquire() == 0.0
    assert await bucket.acquire() == 0.0
    assert await bucket.acquire() == 0.5
    assert fake_clock.now == 0.5
    assert bucket.available == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_bucket_refills_over_time(fake_clock) -> None:
    bucket = TokenBucket(rate=1.0, burst=3, clock=fake_clock, sleep=fake_clock.sleep)
    for _ in range(3):
        await bucket.acquire()
    fake_clock.now += 2
    assert bucket.available == pytest.approx(2.0)
    assert await bucket.acquire() == 0.0


def test_provider_buckets_are_shared_per_provider() -> None:
    assert get_provider_bucket("hetzner") is get_provider_bucket("hetzner")
    assert get_provider_bucket("hetzner") is not get_provider_bucket("fake")
    first = get_provider_bucket("hetzner")
    reset_provider_buckets()
    assert get_provider_bucket("hetzner") is not first
