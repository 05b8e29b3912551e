"""Tests for the metric collector."""

import random
import threading

import pytest

from chainload.engine.metrics import MetricCollector
from chainload.engine.models import Dialect
from tests.fakes import FakeClock

EVENTS = [
    ("eth_call", 10.0, True),
    ("eth_call", 21.0, False),
    ("eth_call", 12.5, True),
    ("cosmos_block", 100.0, True),
    ("cosmos_block", 300.0, False),
    ("cosmos_block", 0.5, True),
    ("eth_getLogs", 7.0, False),
]


def _aggregates(collector: MetricCollector) -> dict:
    return {
        ep: (collector.count(ep), collector.error_rate(ep), collector.average_latency(ep))
        for ep in collector.endpoints()
    }


class TestMetricCollector:
    def test_counts_and_errors(self):
        collector = MetricCollector()
        for endpoint, duration, success in EVENTS:
            collector.record(endpoint, duration, success)

        assert collector.count("eth_call") == 3
        assert collector.errors("eth_call") == 1
        assert collector.count("missing") == 0
        assert collector.total_requests() == len(EVENTS)
        for endpoint in collector.endpoints():
            assert collector.count(endpoint) >= collector.errors(endpoint)

    def test_error_rate_two_decimals(self):
        collector = MetricCollector()
        for endpoint, duration, success in EVENTS:
            collector.record(endpoint, duration, success)
        assert collector.error_rate("eth_call") == 33.33
        assert collector.error_rate("eth_getLogs") == 100.0
        assert collector.error_rate("missing") == 0.0

    def test_average_latency_rounds_to_integer(self):
        collector = MetricCollector()
        collector.record("a", 1.0, True)
        collector.record("a", 2.0, True)
        assert collector.average_latency("a") == 2
        collector.record("b", 10.2, True)
        assert collector.average_latency("b") == 10

    def test_aggregation_is_order_independent(self):
        baseline = MetricCollector()
        for event in EVENTS:
            baseline.record(*event)
        expected = _aggregates(baseline)

        rng = random.Random(3)
        for _ in range(20):
            shuffled = EVENTS[:]
            rng.shuffle(shuffled)
            collector = MetricCollector()
            for event in shuffled:
                collector.record(*event)
            assert _aggregates(collector) == expected

    def test_rate_limited_counts_as_error(self):
        collector = MetricCollector()
        collector.record("eth_call", 3.0, success=True, rate_limited=True, dialect=Dialect.EVM)
        assert collector.errors("eth_call") == 1
        assert collector.rate_limit_hits == 1

    def test_recent_rate_limit_window(self):
        clock = FakeClock()
        collector = MetricCollector(rate_limit_window_ms=60000, clock=clock)
        for _ in range(3):
            collector.record("a", 1.0, False, rate_limited=True)
        clock.advance(30000)
        collector.record("a", 1.0, False, rate_limited=True)

        assert collector.recent_rate_limit_hits() == 4
        clock.advance(30001)
        assert collector.recent_rate_limit_hits() == 1
        assert collector.recent_rate_limit_hits(window_ms=120000) == 4
        assert collector.rate_limit_hits == 4

    def test_percentiles(self):
        collector = MetricCollector()
        for latency in range(1, 101):
            collector.record("a", float(latency), True)
        p = collector.latency_percentiles("a")
        assert p["p50_ms"] == pytest.approx(50.5)
        assert p["min_ms"] == 1.0
        assert p["max_ms"] == 100.0
        assert p["p50_ms"] <= p["p95_ms"] <= p["p99_ms"]

    def test_periodic_snapshots(self):
        collector = MetricCollector(snapshot_every=3)
        taken = [collector.record("a", 1.0, True) for _ in range(7)]
        assert [s is not None for s in taken] == [False, False, True, False, False, True, False]
        history = collector.snapshots
        assert [s.request_counts["a"] for s in history] == [3, 6]

    def test_snapshot_is_immutable_copy(self):
        collector = MetricCollector()
        collector.record("a", 5.0, True)
        snapshot = collector.snapshot()
        collector.record("a", 5.0, False)
        assert snapshot.request_counts == {"a": 1}
        assert snapshot.error_rates == {"a": 0.0}
        with pytest.raises(AttributeError):
            snapshot.rate_limit_total = 9  # type: ignore[misc]

    def test_snapshot_mappings_are_read_only(self):
        collector = MetricCollector()
        collector.record("a", 5.0, True)
        snapshot = collector.snapshot()
        for mapping in (snapshot.request_counts, snapshot.error_rates, snapshot.average_latencies):
            with pytest.raises(TypeError):
                mapping["a"] = 0  # type: ignore[index]
        assert snapshot.to_dict()["request_counts"] == {"a": 1}

    def test_concurrent_records_are_not_lost(self):
        collector = MetricCollector(snapshot_every=0)

        def worker():
            for _ in range(1000):
                collector.record("a", 1.0, True)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert collector.count("a") == 8000

    def test_finalize(self):
        clock = FakeClock()
        collector = MetricCollector(clock=clock)
        collector.record("b", 10.0, True)
        collector.record("a", 20.0, False, rate_limited=True, dialect=Dialect.EVM)
        clock.advance(1500)

        summary = collector.finalize(patterns_by_endpoint={"b": {}}, anomalies=[])

        assert summary.duration_ms == 1500
        assert summary.total_requests == 2
        assert summary.successful == 1
        assert summary.failed == 1
        assert summary.error_rate == 50.0
        assert summary.average_latency == 15
        assert [ep.endpoint for ep in summary.endpoints] == ["a", "b"]
        assert summary.endpoints[0].rate_limit_hits == 1
        assert summary.rate_limit_by_dialect == {"evm": 1}
        assert len(summary.rate_limit_timeline) == 1

        report = summary.to_dict()
        assert report["requests"] == {"total": 2, "successful": 1, "failed": 1}
        assert report["rate_limit"]["total_hits"] == 1
        assert report["rate_limit"]["recent_hits_in_window"] == 1
        assert report["patterns_by_endpoint"] == {"b": {}}
        assert isinstance(report["snapshots"], list)

    def test_finalize_empty(self):
        summary = MetricCollector().finalize()
        assert summary.total_requests == 0
        assert summary.error_rate == 0.0
        assert summary.average_latency == 0
