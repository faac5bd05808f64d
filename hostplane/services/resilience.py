from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from hostplane.core.config import get_settings
from hostplane.core.errors import PermanentProviderError, ProvisioningTimeoutError, TransientProviderError
from hostplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError, TransientProviderError)

Sleep = Callable[[float], Awaitable[Any]]


def _default_retryable(exc: Exception) -> bool:
    # Only transient failures are retried; permanent provider errors surface on the first attempt.
    if isinstance(exc, PermanentProviderError):
        return False
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_ms: int
    multiplier: float
    max_delay_ms: int
    # Optional deadline for each individual attempt.
    attempt_timeout_s: float | None = None


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        multiplier=settings.retry_multiplier,
        max_delay_ms=settings.retry_max_delay_ms,
    )


def backoff_delay_s(
    policy: RetryPolicy,
    attempt: int,
    *,
    retry_after_s: float | None = None,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retry number ``attempt`` (1-based), jittered and capped.

    A provider ``Retry-After`` hint raises the floor but never the cap.
    """
    cap_s = policy.max_delay_ms / 1000.0
    raw_s = (policy.base_delay_ms / 1000.0) * (policy.multiplier ** max(0, attempt - 1))
    delay_s = min(cap_s, raw_s * rand(0.5, 1.5))
    if retry_after_s is not None:
        delay_s = max(delay_s, min(cap_s, float(retry_after_s)))
    return max(0.0, delay_s)


def max_total_backoff_s(policy: RetryPolicy) -> float:
    # Upper bound on time spent sleeping between attempts.
    return max(0, policy.max_attempts - 1) * (policy.max_delay_ms / 1000.0)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
    operation: str = "call",
) -> T:
    # Bounded retries with jittered exponential backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            if policy.attempt_timeout_s is not None:
                return await asyncio.wait_for(func(), timeout=policy.attempt_timeout_s)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max_attempts or not retryable(exc):
                if attempt > 1:
                    logger.warning(
                        "retry_exhausted operation=%s attempts=%s error=%s", operation, attempt, exc
                    )
                raise
            increment_counter("provider_retries_total")
            delay_s = backoff_delay_s(policy, attempt, retry_after_s=getattr(exc, "retry_after_s", None))
            logger.info(
                "retry_scheduled operation=%s attempt=%s delay_s=%.2f error=%s",
                operation,
                attempt,
                delay_s,
                exc,
            )
            await sleep(delay_s)
            attempt += 1


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    interval_s: float,
    timeout_s: float,
    description: str = "condition",
    tolerate: Callable[[Exception], bool] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Invoke ``probe`` every ``interval_s`` until ``predicate`` holds.

    Raises ``ProvisioningTimeoutError`` once ``timeout_s`` has elapsed.
    Exceptions accepted by ``tolerate`` are logged and polling continues;
    anything else propagates.
    """
    deadline = clock() + timeout_s
    polls = 0
    while True:
        polls += 1
        try:
            value = await probe()
        except Exception as exc:  # noqa: BLE001 - tolerated errors keep the loop alive
            if tolerate is None or not tolerate(exc):
                raise
            logger.warning("poll_probe_failed description=%s poll=%s error=%s", description, polls, exc)
        else:
            if predicate(value):
                return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise ProvisioningTimeoutError(f"{description} not reached within {int(timeout_s)}s")
        await sleep(min(interval_s, remaining))
