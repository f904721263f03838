"""Process-local counters and request statistics.

Security stages, the guard and the audit recorder bump named counters; the
request context middleware adds one sample per response. The system-stats
route reads both. Nothing here is shared between workers.
"""

from __future__ import annotations

from collections import Counter, deque
import math
import time
from typing import Any, NamedTuple


_MAX_SAMPLES = 20000


class _Sample(NamedTuple):
    at: float
    route_class: str
    status_code: int
    latency_ms: float


_counters: Counter[str] = Counter()
_samples: deque[_Sample] = deque(maxlen=_MAX_SAMPLES)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counter_value(name: str) -> int:
    return _counters[name]


def counters_snapshot() -> dict[str, int]:
    return dict(sorted(_counters.items()))


def record_request(*, route_class: str, status_code: int, latency_ms: float) -> None:
    _samples.append(_Sample(time.time(), route_class, status_code, latency_ms))


def _nearest_rank(ordered: list[float], fraction: float) -> float:
    # ordered is non-empty and ascending.
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def request_stats(window_s: int) -> dict[str, Any]:
    """Summarize requests seen in the last ``window_s`` seconds.

    Availability is the share of responses below 500. Latencies are grouped by
    rate-limit route class so login throttling and admin traffic read apart.
    """
    cutoff = time.time() - window_s
    recent = [sample for sample in _samples if sample.at >= cutoff]
    server_errors = sum(1 for sample in recent if sample.status_code >= 500)
    latencies: dict[str, list[float]] = {}
    for sample in recent:
        latencies.setdefault(sample.route_class, []).append(sample.latency_ms)
    by_route_class: dict[str, dict[str, float | int]] = {}
    for route_class, values in sorted(latencies.items()):
        values.sort()
        by_route_class[route_class] = {
            "requests": len(values),
            "p50_ms": round(_nearest_rank(values, 0.50), 3),
            "p95_ms": round(_nearest_rank(values, 0.95), 3),
            "max_ms": round(values[-1], 3),
        }
    availability_pct = None
    if recent:
        availability_pct = round(100.0 * (len(recent) - server_errors) / len(recent), 3)
    return {
        "window_s": window_s,
        "requests": len(recent),
        "server_errors": server_errors,
        "availability_pct": availability_pct,
        "by_route_class": by_route_class,
    }


def reset_telemetry() -> None:
    _counters.clear()
    _samples.clear()
