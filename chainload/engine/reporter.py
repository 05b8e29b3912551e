"""Reporter sinks for the final run summary."""

import json
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TextIO

import structlog

from chainload.engine.models import RunSummary

logger = structlog.get_logger()


class Reporter(Protocol):
    def report(self, summary: RunSummary) -> None: ...


class JsonFileReporter:
    """Writes ``report-<timestamp>.json`` into a directory, or to a fixed path."""

    def __init__(
        self,
        report_dir: str | Path = "reports",
        path: str | Path | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.report_dir = Path(report_dir)
        self.path = Path(path) if path is not None else None
        self._now = now
        self.last_path: Path | None = None

    def target(self) -> Path:
        if self.path is not None:
            return self.path
        stamp = self._now().strftime("%Y%m%dT%H%M%S%fZ")
        return self.report_dir / f"report-{stamp}.json"

    def report(self, summary: RunSummary) -> None:
        path = self.target()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(summary.to_dict(), indent=2, default=str))
        self.last_path = path
        logger.info("report_written", path=str(path))


class ConsoleReporter:
    """Human-readable summary table."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def report(self, summary: RunSummary) -> None:
        out = self._stream or sys.stderr
        line = "-" * 72
        print(f"\n{line}", file=out)
        print("  LOAD TEST RESULTS SUMMARY", file=out)
        print(line, file=out)
        print(f"  Duration:       {summary.duration_ms / 1000:.1f}s", file=out)
        print(
            f"  Requests:       {summary.total_requests} "
            f"({summary.successful} ok, {summary.failed} failed)",
            file=out,
        )
        print(f"  Error rate:     {summary.error_rate:.2f}%", file=out)
        print(f"  Avg latency:    {summary.average_latency} ms", file=out)
        print(
            f"  Rate limited:   {summary.rate_limit_total_hits} total, "
            f"{summary.rate_limit_recent_hits} in window",
            file=out,
        )

        if summary.endpoints:
            print(
                f"\n  {'Endpoint':<28} {'Count':>7} {'Err %':>7} {'Avg':>6} {'p95':>9} {'429s':>5}",
                file=out,
            )
            print(f"  {'-'*28} {'-'*7} {'-'*7} {'-'*6} {'-'*9} {'-'*5}", file=out)
            for ep in summary.endpoints:
                print(
                    f"  {ep.endpoint:<28} {ep.requests:>7} {ep.error_rate:>7.2f} "
                    f"{ep.average_latency:>6} {ep.p95_ms:>9.2f} {ep.rate_limit_hits:>5}",
                    file=out,
                )

        if summary.anomalies:
            print(f"\n  Response shape anomalies: {len(summary.anomalies)}", file=out)
            for anomaly in summary.anomalies:
                print(
                    f"    {anomaly['endpoint']}: {anomaly['count']} vs dominant "
                    f"{anomaly['dominant_count']}",
                    file=out,
                )

        if summary.discovery:
            found = ", ".join(
                f"{k}={v}" for k, v in summary.discovery.items() if isinstance(v, int) and v
            )
            print(f"\n  Discovered: {found or 'nothing'}", file=out)

        print(f"{line}\n", file=out)
