"""Concurrent worker pool that drains a shared request queue.

Each worker loops: check it is still live, honour the pool-wide rate-limit
backpressure, pull the next descriptor, send it, and route the outcome to the
metric collector and the pattern analyzer. Cancellation is cooperative: a
worker removed from the live set finishes its in-flight request and stops.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Any

import structlog

from chainload.engine.metrics import MetricCollector
from chainload.engine.models import (
    FailureKind,
    RequestDescriptor,
    RequestFailure,
    RequestOutcome,
    RunSummary,
    Scenario,
    ScenarioResult,
)
from chainload.engine.patterns import ResponsePatternAnalyzer
from chainload.engine.requester import Requester

logger = structlog.get_logger()

RATE_LIMIT_THRESHOLD = 10
RATE_LIMIT_COOLDOWN_SECONDS = 1.0

ResultHook = Callable[[RequestDescriptor, RequestOutcome], None]


class ScenarioQueue:
    """Shared, lock-guarded source of descriptors.

    Wraps a finite iterable (batch mode) or an async iterator (streaming
    mode). Every pulled slot goes to exactly one caller.
    """

    def __init__(
        self, source: Iterable[RequestDescriptor] | AsyncIterator[RequestDescriptor]
    ) -> None:
        self._async_source: AsyncIterator[RequestDescriptor] | None = None
        self._sync_source = None
        if hasattr(source, "__anext__"):
            self._async_source = source  # type: ignore[assignment]
        else:
            self._sync_source = iter(source)  # type: ignore[arg-type]
        self._lock = asyncio.Lock()
        self._exhausted = False
        self._pulled = 0

    @classmethod
    def from_batches(cls, batches: Iterable[list[RequestDescriptor]]) -> "ScenarioQueue":
        return cls(descriptor for batch in batches for descriptor in batch)

    @property
    def pulled(self) -> int:
        return self._pulled

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    async def next(self) -> RequestDescriptor | None:
        """Next descriptor, or None once the source is exhausted or closed."""
        async with self._lock:
            if self._exhausted:
                return None
            try:
                if self._async_source is not None:
                    item = await anext(self._async_source)
                else:
                    item = next(self._sync_source)  # type: ignore[arg-type]
            except (StopIteration, StopAsyncIteration):
                self._exhausted = True
                return None
            self._pulled += 1
            return item

    async def aclose(self) -> None:
        async with self._lock:
            self._exhausted = True
            aclose = getattr(self._async_source, "aclose", None)
            if aclose is not None:
                await aclose()


class WorkerPool:
    """Runs workers against a ``ScenarioQueue`` and aggregates their results."""

    def __init__(
        self,
        requester: Requester,
        collector: MetricCollector | None = None,
        analyzer: ResponsePatternAnalyzer | None = None,
        rate_limit_threshold: int = RATE_LIMIT_THRESHOLD,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.requester = requester
        self.collector = collector or MetricCollector()
        self.analyzer = analyzer or ResponsePatternAnalyzer()
        self._threshold = rate_limit_threshold
        self._cooldown = cooldown_seconds
        self._sleep = sleep
        self._live: set[str] = set()

    # ---- worker lifecycle -----------------------------------------------------

    @property
    def live_workers(self) -> frozenset[str]:
        return frozenset(self._live)

    def cancel_worker(self, worker_id: str) -> bool:
        """Stop one worker after its in-flight request. Returns False if unknown."""
        if worker_id not in self._live:
            return False
        self._live.discard(worker_id)
        logger.info("worker_cancelled", worker_id=worker_id)
        return True

    def cancel_all(self) -> None:
        count = len(self._live)
        self._live.clear()
        logger.info("workers_cancelled", count=count)

    async def run(
        self,
        queue: ScenarioQueue,
        concurrency: int,
        on_result: ResultHook | None = None,
    ) -> RunSummary:
        """Run ``concurrency`` workers until the queue is drained or all are cancelled."""
        if concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {concurrency}")
        worker_ids = [uuid.uuid4().hex[:9] for _ in range(concurrency)]
        self._live.update(worker_ids)
        logger.info("workers_started", concurrency=concurrency)

        results = await asyncio.gather(
            *(self._worker(wid, queue, on_result) for wid in worker_ids),
            return_exceptions=True,
        )
        for wid, result in zip(worker_ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    "worker_crashed",
                    worker_id=wid,
                    error=str(result),
                    error_type=type(result).__name__,
                )
        return self.summarize()

    async def run_for(
        self,
        queue: ScenarioQueue,
        concurrency: int,
        duration_seconds: float,
        on_result: ResultHook | None = None,
    ) -> RunSummary:
        """Streaming mode: run workers for a fixed time, then cancel them all."""
        task = asyncio.create_task(self.run(queue, concurrency, on_result))
        done, _ = await asyncio.wait({task}, timeout=duration_seconds)
        if task not in done:
            self.cancel_all()
        summary = await task
        await queue.aclose()
        return summary

    async def _worker(
        self,
        worker_id: str,
        queue: ScenarioQueue,
        on_result: ResultHook | None,
    ) -> None:
        try:
            while worker_id in self._live:
                await self.apply_backpressure()
                if worker_id not in self._live:
                    break
                descriptor = await queue.next()
                if descriptor is None:
                    break
                outcome = await self.execute(descriptor, worker_id=worker_id)
                if on_result is not None:
                    on_result(descriptor, outcome)
        finally:
            self._live.discard(worker_id)

    # ---- request handling -----------------------------------------------------

    async def apply_backpressure(self) -> bool:
        """Pause for the cooldown when recent rate-limit hits exceed the threshold."""
        recent = self.collector.recent_rate_limit_hits()
        if recent <= self._threshold:
            return False
        logger.warning(
            "rate_limit_backpressure",
            recent_hits=recent,
            threshold=self._threshold,
            cooldown_seconds=self._cooldown,
        )
        await self._sleep(self._cooldown)
        return True

    async def execute(
        self, descriptor: RequestDescriptor, worker_id: str | None = None
    ) -> RequestOutcome:
        """Send one descriptor and record its outcome."""
        t0 = time.perf_counter()
        try:
            outcome = await self.requester.send(descriptor)
        except Exception as exc:
            logger.exception("requester_error", endpoint=descriptor.name, worker_id=worker_id)
            outcome = RequestOutcome(
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                failure=RequestFailure(FailureKind.CONNECTION_ERROR, str(exc)),
            )

        self.collector.record(
            descriptor.name,
            outcome.duration_ms,
            success=outcome.ok,
            rate_limited=outcome.rate_limited,
            dialect=descriptor.dialect,
        )
        if outcome.ok:
            self.analyzer.analyze(descriptor.name, outcome.body)
        else:
            failure = outcome.failure
            logger.warning(
                "request_failed",
                endpoint=descriptor.name,
                worker_id=worker_id,
                kind=failure.kind if failure else None,
                status=outcome.status,
                rate_limited=outcome.rate_limited,
            )
        return outcome

    async def run_scenario(self, scenario: Scenario, base_concurrency: int) -> ScenarioResult:
        """Run a scenario's batches one after another, each batch concurrently."""
        concurrency = scenario.effective_concurrency(base_concurrency)
        batches = scenario.batches(base_concurrency)
        result = ScenarioResult(
            name=scenario.name,
            weight=scenario.weight,
            effective_concurrency=concurrency,
        )
        if not batches:
            logger.info("scenario_skipped", scenario=scenario.name, reason="no_requests")
            return result

        logger.info(
            "scenario_started",
            scenario=scenario.name,
            weight=scenario.weight,
            concurrency=concurrency,
            batches=len(batches),
        )
        for batch in batches:
            await self.apply_backpressure()
            outcomes = await asyncio.gather(*(self.execute(d) for d in batch))
            result.batch_sizes.append(len(batch))
            result.requests += len(batch)
            result.failures += sum(1 for o in outcomes if not o.ok)
        logger.info(
            "scenario_completed",
            scenario=scenario.name,
            requests=result.requests,
            failures=result.failures,
        )
        return result

    def summarize(self, **extra: Any) -> RunSummary:
        report = self.analyzer.report()
        summary = self.collector.finalize(
            patterns_by_endpoint=report["patterns_by_endpoint"],
            anomalies=report["anomalies"],
        )
        for key, value in extra.items():
            setattr(summary, key, value)
        return summary
