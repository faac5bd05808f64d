from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


OUTCOME_OK = "ok"
OUTCOME_TRANSIENT = "transient"
OUTCOME_PERMANENT = "permanent"


@dataclass(frozen=True)
class ProviderCallSample:
    ts: float
    provider: str
    operation: str
    latency_ms: float
    outcome: str


_provider_samples: Deque[ProviderCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_provider_call(*, provider: str, operation: str, latency_ms: float, outcome: str) -> None:
    _provider_samples.append(
        ProviderCallSample(
            ts=time.time(),
            provider=provider,
            operation=operation,
            latency_ms=latency_ms,
            outcome=outcome,
        )
    )
    _counters[f"provider_calls_total.{provider}.{outcome}"] += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _percentile(sorted_values: list[float], fraction: float) -> float | None:
    if not sorted_values:
        return None
    return sorted_values[max(0, math.ceil(fraction * len(sorted_values)) - 1)]


def provider_call_summary(window_s: int) -> dict[str, dict[str, dict[str, float | None]]]:
    """Latency percentiles and error-family counts per provider and operation.

    Only samples newer than ``window_s`` seconds are considered. Operations
    with no calls in the window are omitted.
    """
    cutoff = time.time() - window_s
    grouped: dict[tuple[str, str], list[ProviderCallSample]] = defaultdict(list)
    for sample in _provider_samples:
        if sample.ts >= cutoff:
            grouped[(sample.provider, sample.operation)].append(sample)

    summary: dict[str, dict[str, dict[str, float | None]]] = defaultdict(dict)
    for (provider, operation), samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        summary[provider][operation] = {
            "calls": float(len(samples)),
            "p50_ms": _percentile(latencies, 0.50),
            "p95_ms": _percentile(latencies, 0.95),
            "transient": float(sum(1 for s in samples if s.outcome == OUTCOME_TRANSIENT)),
            "permanent": float(sum(1 for s in samples if s.outcome == OUTCOME_PERMANENT)),
        }
    return dict(summary)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _provider_samples.clear()
    _counters.clear()
    _gauges.clear()
