"""Run orchestration: warmup, discovery, scenarios, main load, cooldown, report."""

import asyncio
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import structlog

from chainload.engine.catalog import Catalog, default_catalog
from chainload.engine.discovery import DiscoveryRunner, default_stages
from chainload.engine.executor import ScenarioQueue, WorkerPool
from chainload.engine.metrics import MetricCollector
from chainload.engine.models import (
    ChainState,
    EngineConfig,
    RunSummary,
    ScenarioResult,
    WeightedKey,
)
from chainload.engine.patterns import ResponsePatternAnalyzer
from chainload.engine.reporter import Reporter
from chainload.engine.requester import Requester
from chainload.engine.scenarios import ScenarioGenerator, build_progressive_scenarios

logger = structlog.get_logger()

WARMUP_PAUSE_SECONDS = 0.1
MODES = ("batch", "stream")


@dataclass
class LoadPlan:
    """What the main phase of a run does."""

    mode: str = "batch"
    batches: int = 10
    duration_seconds: float = 60.0
    discovery: bool = True
    scenarios: bool = True

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.batches < 0:
            raise ValueError(f"batches must be >= 0, got {self.batches}")
        if self.duration_seconds <= 0:
            raise ValueError(f"duration_seconds must be > 0, got {self.duration_seconds}")


class LoadTestEngine:
    """Owns the per-run state and drives one complete load test."""

    def __init__(
        self,
        config: EngineConfig,
        requester: Requester,
        catalog: Catalog | None = None,
        weights: Sequence[WeightedKey] | None = None,
        reporters: Sequence[Reporter] = (),
        discovery: DiscoveryRunner | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        collector: MetricCollector | None = None,
    ) -> None:
        self.config = config
        self.requester = requester
        self.catalog = catalog or default_catalog()
        self.weights = list(weights) if weights is not None else None
        self.reporters = list(reporters)
        self.discovery = discovery or DiscoveryRunner(default_stages(config.block_window))
        self.rng = rng or random.Random()
        self._sleep = sleep

        self.state = ChainState()
        self.collector = collector or MetricCollector(rate_limit_window_ms=config.rate_limit_window_ms)
        self.analyzer = ResponsePatternAnalyzer()
        self.pool = WorkerPool(
            requester,
            self.collector,
            self.analyzer,
            rate_limit_threshold=config.rate_limit_threshold,
            cooldown_seconds=config.rate_limit_cooldown_seconds,
            sleep=sleep,
        )
        self.scenario_results: list[ScenarioResult] = []

    def generator(self) -> ScenarioGenerator:
        """A fresh generator over the current chain state."""
        return ScenarioGenerator(
            self.state,
            self.catalog,
            weights=self.weights,
            batch_size=self.config.batch_size,
            batch_pause_seconds=self.config.batch_pause_seconds,
            rng=self.rng,
            sleep=self._sleep,
        )

    # ---- phases ---------------------------------------------------------------

    async def warmup(self) -> int:
        """Send a few sampled requests one at a time. Not counted in the run metrics."""
        count = self.config.warmup_requests
        if count <= 0:
            return 0
        logger.info("warmup_started", requests=count)
        descriptors = self.generator().generate_batch(count)
        succeeded = 0
        for descriptor in descriptors:
            outcome = await self.requester.send(descriptor)
            if outcome.ok:
                succeeded += 1
            else:
                logger.warning(
                    "warmup_request_failed",
                    endpoint=descriptor.name,
                    kind=outcome.failure.kind if outcome.failure else None,
                    status=outcome.status,
                )
            await self._sleep(WARMUP_PAUSE_SECONDS)
        logger.info("warmup_complete", succeeded=succeeded, attempted=len(descriptors))
        return succeeded

    async def discover(self) -> ChainState:
        self.state = await self.discovery.run(self.state, self.requester)
        return self.state

    async def run_scenarios(self) -> list[ScenarioResult]:
        """Progressive scenario sets in order of increasing weight, one after another."""
        for scenario in build_progressive_scenarios(self.state):
            result = await self.pool.run_scenario(scenario, self.config.concurrency)
            self.scenario_results.append(result)
        return self.scenario_results

    async def run_load(self, plan: LoadPlan) -> None:
        """Main phase: weighted catalog sampling through the worker pool."""
        generator = self.generator()
        if plan.mode == "stream":
            logger.info(
                "load_phase_started",
                mode=plan.mode,
                duration_seconds=plan.duration_seconds,
                concurrency=self.config.concurrency,
            )
            queue = ScenarioQueue(generator.descriptors())
            await self.pool.run_for(queue, self.config.concurrency, plan.duration_seconds)
            return

        logger.info(
            "load_phase_started",
            mode=plan.mode,
            batches=plan.batches,
            batch_size=self.config.batch_size,
            concurrency=self.config.concurrency,
        )
        queue = ScenarioQueue.from_batches(generator.generate_batch() for _ in range(plan.batches))
        await self.pool.run(queue, self.config.concurrency)

    async def cooldown(self) -> None:
        self.pool.cancel_all()
        logger.info("cooldown_started", seconds=self.config.rate_limit_cooldown_seconds)
        await self._sleep(self.config.rate_limit_cooldown_seconds)

    # ---- run ------------------------------------------------------------------

    async def start(self, plan: LoadPlan | None = None) -> RunSummary:
        """Run every phase and hand the summary to the reporters.

        A failing phase is logged and the run moves on to the summary, so a
        (possibly partial) summary is always produced.
        """
        plan = plan or LoadPlan()
        try:
            await self.warmup()
            if plan.discovery:
                await self.discover()
            if plan.scenarios:
                await self.run_scenarios()
            await self.run_load(plan)
        except Exception:
            logger.exception("load_test_phase_failed")
        finally:
            await self.cooldown()

        summary = self.summarize()
        for reporter in self.reporters:
            try:
                reporter.report(summary)
            except Exception:
                logger.exception("reporter_failed", reporter=type(reporter).__name__)
        logger.info(
            "load_test_complete",
            total_requests=summary.total_requests,
            failed=summary.failed,
            error_rate=summary.error_rate,
            duration_ms=summary.duration_ms,
            anomalies=len(summary.anomalies),
        )
        return summary

    def summarize(self) -> RunSummary:
        discovery = self.state.counts()
        discovery["completed_stages"] = list(self.discovery.completed)
        discovery["failed_stages"] = list(self.discovery.failed)
        return self.pool.summarize(discovery=discovery, scenarios=list(self.scenario_results))
