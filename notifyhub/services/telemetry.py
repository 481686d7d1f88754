from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Deque, NamedTuple

# In-process counters for the ops endpoint; they reset when the worker restarts.

_SAMPLES_PER_INTEGRATION = 2000


class _CallSample(NamedTuple):
    at: float
    latency_ms: float
    ok: bool


_calls: dict[str, Deque[_CallSample]] = defaultdict(lambda: deque(maxlen=_SAMPLES_PER_INTEGRATION))
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _calls[integration].append(_CallSample(at=time.time(), latency_ms=latency_ms, ok=success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _summarize(samples: list[_CallSample]) -> dict[str, float | int | None]:
    latencies = sorted(sample.latency_ms for sample in samples)
    failures = sum(1 for sample in samples if not sample.ok)
    rank = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {
        "calls": len(samples),
        "failures": failures,
        "failure_rate": round(failures / len(samples), 4),
        "avg": round(sum(latencies) / len(latencies), 3),
        "p95": latencies[rank],
        "max": latencies[-1],
    }


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    """Latency and failure summary per downstream integration over the last ``window_s`` seconds."""
    cutoff = time.time() - window_s
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in _calls.items():
        recent = [sample for sample in samples if sample.at >= cutoff]
        if recent:
            summary[integration] = _summarize(recent)
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _calls.clear()
    _counters.clear()
    _gauges.clear()
