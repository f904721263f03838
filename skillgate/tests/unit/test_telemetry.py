from __future__ import annotations

from skillgate.services import telemetry


def test_request_stats_groups_latency_by_route_class() -> None:
    for latency in (10.0, 20.0, 30.0, 40.0):
        telemetry.record_request(route_class="api", status_code=200, latency_ms=latency)
    telemetry.record_request(route_class="login", status_code=503, latency_ms=5.0)

    stats = telemetry.request_stats(60)
    assert stats["requests"] == 5
    assert stats["server_errors"] == 1
    assert stats["availability_pct"] == 80.0
    assert stats["by_route_class"]["api"] == {"requests": 4, "p50_ms": 20.0, "p95_ms": 40.0, "max_ms": 40.0}
    assert list(stats["by_route_class"]) == ["api", "login"]


def test_empty_window_has_no_availability() -> None:
    stats = telemetry.request_stats(60)
    assert stats["requests"] == 0
    assert stats["availability_pct"] is None
    assert stats["by_route_class"] == {}


def test_counters_snapshot_is_sorted() -> None:
    telemetry.increment_counter("b.second")
    telemetry.increment_counter("a.first", 2)
    assert telemetry.counters_snapshot() == {"a.first": 2, "b.second": 1}
    assert telemetry.counter_value("missing") == 0
