from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for quota, retry and breaker dashboards.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def external_error_rate(integration: str, window_s: int = 300) -> float | None:
    # Share of failed calls for one integration over the window.
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for s in samples if not s.success)
    return failures / len(samples)


def reset_telemetry() -> None:
    # Clear in-process metrics between tests.
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
