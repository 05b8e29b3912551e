"""Per-endpoint request metrics: counts, latencies, error rates, rate-limit hits.

Aggregation is additive per endpoint, so the final numbers do not depend on
the order requests were recorded in; only the snapshot history is ordered.
Workers record concurrently, so every mutation happens under one lock.
"""

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

import numpy as np
import structlog

from chainload.engine.models import EndpointSummary, RunSummary, Snapshot

logger = structlog.get_logger()

DEFAULT_RATE_LIMIT_WINDOW_MS = 60000


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: list[float]) -> float:
    # order-independent mean
    return math.fsum(values) / len(values) if values else 0.0


class MetricCollector:
    """Collects request outcomes per endpoint for one run."""

    def __init__(
        self,
        rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        snapshot_every: int = 100,
        max_rate_limit_timestamps: int = 10000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = clock or _wall_clock_ms
        self._window_ms = rate_limit_window_ms
        self._snapshot_every = snapshot_every
        self._lock = threading.Lock()

        self._counts: dict[str, int] = {}
        self._errors: dict[str, int] = {}
        self._latencies: dict[str, list[float]] = {}
        self._rate_limit_by_endpoint: dict[str, int] = {}
        self._rate_limit_by_dialect: dict[str, int] = {}
        self._rate_limit_hits = 0
        self._rate_limit_timestamps: deque[float] = deque(maxlen=max_rate_limit_timestamps)
        self._snapshots: list[Snapshot] = []
        self._recorded = 0
        self._start_ms = self._clock()

    # ---- recording ------------------------------------------------------------

    def record(
        self,
        endpoint: str,
        duration_ms: float,
        success: bool,
        rate_limited: bool = False,
        dialect: str | None = None,
    ) -> Snapshot | None:
        """Record one request outcome. Returns a snapshot when one is due."""
        failed = not success or rate_limited
        with self._lock:
            self._counts[endpoint] = self._counts.get(endpoint, 0) + 1
            self._latencies.setdefault(endpoint, []).append(float(duration_ms))
            if failed:
                self._errors[endpoint] = self._errors.get(endpoint, 0) + 1
            if rate_limited:
                self._rate_limit_hits += 1
                self._rate_limit_timestamps.append(self._clock())
                self._rate_limit_by_endpoint[endpoint] = (
                    self._rate_limit_by_endpoint.get(endpoint, 0) + 1
                )
                if dialect:
                    self._rate_limit_by_dialect[dialect] = (
                        self._rate_limit_by_dialect.get(dialect, 0) + 1
                    )
            self._recorded += 1
            due = self._snapshot_every > 0 and self._recorded % self._snapshot_every == 0

        if not due:
            return None
        snapshot = self.snapshot()
        logger.info(
            "metrics_snapshot",
            total_requests=sum(snapshot.request_counts.values()),
            recent_rate_limit_hits=snapshot.recent_rate_limit_hits,
        )
        return snapshot

    # ---- queries --------------------------------------------------------------

    def count(self, endpoint: str) -> int:
        return self._counts.get(endpoint, 0)

    def errors(self, endpoint: str) -> int:
        return self._errors.get(endpoint, 0)

    def endpoints(self) -> list[str]:
        return list(self._counts)

    def total_requests(self) -> int:
        return sum(self._counts.values())

    def error_rate(self, endpoint: str) -> float:
        """Errors as a percentage of requests, two decimal places."""
        count = self._counts.get(endpoint, 0)
        if count == 0:
            return 0.0
        return round(self._errors.get(endpoint, 0) / count * 100, 2)

    def average_latency(self, endpoint: str) -> int:
        return _round_half_up(_mean(self._latencies.get(endpoint, [])))

    def latency_percentiles(self, endpoint: str) -> dict[str, float]:
        data = self._latencies.get(endpoint, [])
        if not data:
            return {"p50_ms": 0.0, "p95_ms": 0.0, "p99_ms": 0.0, "min_ms": 0.0, "max_ms": 0.0}
        arr = np.array(data)
        return {
            "p50_ms": round(float(np.percentile(arr, 50)), 2),
            "p95_ms": round(float(np.percentile(arr, 95)), 2),
            "p99_ms": round(float(np.percentile(arr, 99)), 2),
            "min_ms": round(float(arr.min()), 2),
            "max_ms": round(float(arr.max()), 2),
        }

    def recent_rate_limit_hits(self, window_ms: int | None = None) -> int:
        """Rate-limit hits within the trailing window, counted exactly by filtering."""
        window = self._window_ms if window_ms is None else window_ms
        now = self._clock()
        with self._lock:
            return sum(1 for ts in self._rate_limit_timestamps if now - ts <= window)

    @property
    def rate_limit_hits(self) -> int:
        return self._rate_limit_hits

    # ---- aggregation ----------------------------------------------------------

    def snapshot(self) -> Snapshot:
        """Take an immutable copy of the current aggregates and append it to history."""
        recent = self.recent_rate_limit_hits()
        with self._lock:
            snapshot = Snapshot(
                timestamp_ms=self._clock(),
                request_counts=dict(self._counts),
                error_rates={ep: self.error_rate(ep) for ep in self._counts},
                average_latencies={ep: self.average_latency(ep) for ep in self._latencies},
                rate_limit_total=self._rate_limit_hits,
                recent_rate_limit_hits=recent,
            )
            self._snapshots.append(snapshot)
        return snapshot

    @property
    def snapshots(self) -> tuple[Snapshot, ...]:
        return tuple(self._snapshots)

    def endpoint_summary(self, endpoint: str) -> EndpointSummary:
        return EndpointSummary(
            endpoint=endpoint,
            requests=self.count(endpoint),
            errors=self.errors(endpoint),
            error_rate=self.error_rate(endpoint),
            average_latency=self.average_latency(endpoint),
            rate_limit_hits=self._rate_limit_by_endpoint.get(endpoint, 0),
            **self.latency_percentiles(endpoint),
        )

    def finalize(
        self,
        patterns_by_endpoint: dict[str, Any] | None = None,
        anomalies: list[dict[str, Any]] | None = None,
    ) -> RunSummary:
        """Aggregate everything recorded so far into the run summary."""
        with self._lock:
            endpoints = sorted(self._counts)
            total = sum(self._counts.values())
            failed = sum(self._errors.values())
            all_latencies = [lat for values in self._latencies.values() for lat in values]
            timeline = list(self._rate_limit_timestamps)
            by_dialect = dict(self._rate_limit_by_dialect)

        return RunSummary(
            duration_ms=int(self._clock() - self._start_ms),
            total_requests=total,
            successful=total - failed,
            failed=failed,
            average_latency=_round_half_up(_mean(all_latencies)),
            error_rate=round(failed / total * 100, 2) if total else 0.0,
            endpoints=[self.endpoint_summary(ep) for ep in endpoints],
            patterns_by_endpoint=patterns_by_endpoint or {},
            anomalies=anomalies or [],
            rate_limit_total_hits=self._rate_limit_hits,
            rate_limit_recent_hits=self.recent_rate_limit_hits(),
            rate_limit_timeline=timeline,
            rate_limit_by_dialect=by_dialect,
            snapshots=list(self._snapshots),
        )
