"""End-to-end tests for the load test engine against a scripted chain."""

import random

import pytest

from chainload.engine.catalog import Catalog, CatalogEntry
from chainload.engine.engine import LoadPlan, LoadTestEngine
from chainload.engine.models import EngineConfig, TransportKind, WeightedKey
from chainload.engine.scenarios import SCENARIO_WEIGHTS
from tests.fakes import FakeRequester, RecordingSleep, chain_responder, http_error

ONLY_BLOCK_NUMBER = [WeightedKey("eth_blockNumber", 1)]


class _CapturingReporter:
    def __init__(self):
        self.summaries = []

    def report(self, summary):
        self.summaries.append(summary)


def _config(**overrides) -> EngineConfig:
    values = {
        "base_endpoint": "https://rest.example.org",
        "concurrency": 2,
        "batch_size": 5,
        "warmup_requests": 3,
        "block_window": 2,
        "rate_limit_cooldown_seconds": 1.0,
    }
    values.update(overrides)
    return EngineConfig(**values)


def _engine(requester, config=None, **kwargs):
    sleep = RecordingSleep()
    reporter = _CapturingReporter()
    engine = LoadTestEngine(
        config or _config(),
        requester,
        reporters=[reporter],
        rng=random.Random(0),
        sleep=sleep,
        **kwargs,
    )
    return engine, reporter, sleep


class TestLoadPlan:
    def test_defaults(self):
        plan = LoadPlan()
        assert plan.mode == "batch"
        assert plan.discovery and plan.scenarios

    @pytest.mark.parametrize(
        "kwargs", [{"mode": "burst"}, {"batches": -1}, {"duration_seconds": 0}]
    )
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            LoadPlan(**kwargs)


class TestLoadTestEngine:
    @pytest.mark.asyncio
    async def test_full_batch_run(self):
        requester = FakeRequester(default=chain_responder)
        engine, reporter, sleep = _engine(requester)

        summary = await engine.start(LoadPlan(batches=3))

        assert reporter.summaries == [summary]
        assert summary.discovery["latest_height"] == 100
        assert summary.discovery["blocks"] == 2
        assert summary.discovery["network_id"] == "pacific-1"
        assert summary.discovery["failed_stages"] == []
        assert [s.name for s in summary.scenarios] == list(SCENARIO_WEIGHTS)

        scenario_requests = sum(s.requests for s in summary.scenarios)
        assert summary.total_requests > scenario_requests
        assert summary.total_requests == engine.collector.total_requests()
        assert summary.failed == 0
        assert summary.endpoints
        assert summary.patterns_by_endpoint
        assert sleep.delays[-1] == 1.0
        assert engine.pool.live_workers == frozenset()

    @pytest.mark.asyncio
    async def test_warmup_is_not_counted(self):
        requester = FakeRequester()
        engine, _, sleep = _engine(requester, weights=ONLY_BLOCK_NUMBER)

        summary = await engine.start(LoadPlan(batches=0, discovery=False, scenarios=False))

        assert len(requester.calls) == 3
        assert summary.total_requests == 0
        assert sleep.delays[:3] == [0.1, 0.1, 0.1]

    @pytest.mark.asyncio
    async def test_warmup_failures_are_not_fatal(self):
        requester = FakeRequester(default=http_error(503))
        engine, _, _ = _engine(requester, weights=ONLY_BLOCK_NUMBER)

        summary = await engine.start(LoadPlan(batches=1, discovery=False, scenarios=False))

        assert summary.total_requests == 5
        assert summary.failed == 5
        assert summary.error_rate == 100.0

    @pytest.mark.asyncio
    async def test_weights_restrict_main_load(self):
        requester = FakeRequester()
        engine, _, _ = _engine(
            requester,
            config=_config(warmup_requests=0),
            weights=ONLY_BLOCK_NUMBER,
        )

        summary = await engine.start(LoadPlan(batches=2, discovery=False, scenarios=False))

        assert summary.total_requests == 10
        assert [ep.endpoint for ep in summary.endpoints] == ["eth_blockNumber"]

    @pytest.mark.asyncio
    async def test_rate_limits_show_in_summary(self):
        requester = FakeRequester(default=http_error(429))
        engine, _, sleep = _engine(
            requester,
            config=_config(warmup_requests=0, batch_size=20, rate_limit_threshold=10),
            weights=ONLY_BLOCK_NUMBER,
        )

        summary = await engine.start(LoadPlan(batches=1, discovery=False, scenarios=False))

        assert summary.rate_limit_total_hits == 20
        assert summary.to_dict()["rate_limit"]["total_hits"] == 20
        assert sum(summary.rate_limit_by_dialect.values()) == 20
        # backpressure kicked in once more than ten 429s were seen
        assert sleep.delays.count(1.0) > 1

    @pytest.mark.asyncio
    async def test_stream_mode(self):
        requester = FakeRequester()
        engine, _, _ = _engine(requester, config=_config(warmup_requests=0))

        summary = await engine.start(
            LoadPlan(mode="stream", duration_seconds=0.05, discovery=False, scenarios=False)
        )

        assert summary.total_requests > 0
        assert engine.pool.live_workers == frozenset()

    @pytest.mark.asyncio
    async def test_failing_reporter_does_not_lose_summary(self):
        class _BrokenReporter:
            def report(self, summary):
                raise OSError("disk full")

        requester = FakeRequester()
        capturing = _CapturingReporter()
        engine = LoadTestEngine(
            _config(warmup_requests=0),
            requester,
            weights=ONLY_BLOCK_NUMBER,
            reporters=[_BrokenReporter(), capturing],
            rng=random.Random(0),
            sleep=RecordingSleep(),
        )

        summary = await engine.start(LoadPlan(batches=1, discovery=False, scenarios=False))

        assert summary.total_requests == 5
        assert capturing.summaries == [summary]

    @pytest.mark.asyncio
    async def test_phase_error_still_reports(self):
        def broken_builder(state, rng):
            raise RuntimeError("builder bug")

        catalog = Catalog([("broken", CatalogEntry(TransportKind.JSON_RPC, 1, "broken", broken_builder))])
        engine, reporter, _ = _engine(FakeRequester(), catalog=catalog)

        summary = await engine.start(LoadPlan(batches=1, discovery=False, scenarios=False))

        assert reporter.summaries == [summary]
        assert summary.total_requests == 0
