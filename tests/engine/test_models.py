"""Tests for engine data models."""

import dataclasses

import pytest

from chainload.engine.models import (
    BlockSummary,
    ChainState,
    Dialect,
    EngineConfig,
    EvmState,
    FailureKind,
    RequestDescriptor,
    RequestFailure,
    RequestOutcome,
    Scenario,
    TransportKind,
)
from tests.fakes import rest


class TestEngineConfig:
    def test_evm_endpoint_defaults_to_base(self):
        config = EngineConfig(base_endpoint="https://node.example")
        assert config.evm_endpoint == "https://node.example"

    @pytest.mark.parametrize("field", ["concurrency", "max_requests_per_second", "batch_size"])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValueError, match=field):
            EngineConfig(**{field: 0})


class TestChainState:
    def test_add_block_is_write_once(self):
        state = ChainState()
        assert state.add_block(BlockSummary(height=5, hash="first")) is True
        assert state.add_block(BlockSummary(height=5, hash="second")) is False
        assert state.blocks[5].hash == "first"

    def test_merge_returns_new_state(self):
        base = ChainState(latest_height=10, accounts={"a"}, evm=EvmState(accounts={"0x1"}))
        base.add_block(BlockSummary(height=10, hash="kept"))
        delta = ChainState(network_id="net", accounts={"b"}, evm=EvmState(tokens={"0xt"}))
        delta.add_block(BlockSummary(height=10, hash="ignored"))
        delta.add_block(BlockSummary(height=9))

        merged = base.merge(delta)

        assert merged is not base
        assert merged.latest_height == 10
        assert merged.network_id == "net"
        assert merged.accounts == {"a", "b"}
        assert merged.evm.accounts == {"0x1"}
        assert merged.evm.tokens == {"0xt"}
        assert merged.blocks[10].hash == "kept"
        assert sorted(merged.blocks) == [9, 10]
        assert base.accounts == {"a"}
        assert sorted(base.blocks) == [10]

    def test_merge_prefers_newer_heights(self):
        merged = ChainState(latest_height=10).merge(ChainState(latest_height=12, evm_latest_height=12))
        assert merged.latest_height == 12
        assert merged.evm_latest_height == 12

    def test_counts(self, discovered_state):
        counts = discovered_state.counts()
        assert counts["blocks"] == 2
        assert counts["contracts"] == 1
        assert counts["evm_tokens"] == 1
        assert counts["network_id"] == "pacific-1"


class TestRequestDescriptor:
    def test_is_immutable(self):
        descriptor = rest("node_info")
        with pytest.raises(dataclasses.FrozenInstanceError):
            descriptor.target = "/other"  # type: ignore[misc]

    def test_params_are_frozen(self):
        params = {"height": 5}
        descriptor = RequestDescriptor("block", TransportKind.REST_GET, "/block", params=params)
        params["height"] = 6
        assert descriptor.query_params() == {"height": 5}
        with pytest.raises(TypeError):
            descriptor.params["height"] = 7  # type: ignore[index]

    def test_rpc_params_become_tuple(self):
        descriptor = RequestDescriptor("m", TransportKind.JSON_RPC, "m", params=["0x1", True])
        assert descriptor.params == ("0x1", True)
        assert descriptor.rpc_params() == ["0x1", True]
        assert descriptor.query_params() == {}

    @pytest.mark.parametrize("weight", [0, -1])
    def test_weight_must_be_positive(self, weight):
        with pytest.raises(ValueError):
            RequestDescriptor("m", TransportKind.JSON_RPC, "m", weight=weight)

    def test_dialect_follows_transport(self):
        assert RequestDescriptor("m", TransportKind.JSON_RPC, "m").dialect is Dialect.EVM
        assert RequestDescriptor("m", TransportKind.REST_POST, "/m").dialect is Dialect.COSMOS


class TestRequestOutcome:
    def test_429_is_rate_limited(self):
        failure = RequestFailure(FailureKind.HTTP_ERROR, "Too Many Requests", status=429)
        outcome = RequestOutcome(duration_ms=3, status=429, failure=failure)
        assert not outcome.ok
        assert outcome.rate_limited

    def test_other_failures_are_not_rate_limited(self):
        assert not RequestFailure(FailureKind.HTTP_ERROR, "boom", status=500).rate_limited
        assert not RequestFailure(FailureKind.TIMEOUT, "slow").rate_limited
        assert RequestOutcome(duration_ms=1, status=200).ok


class TestScenario:
    def test_effective_concurrency_rounds_up(self):
        assert Scenario("s", 1.5).effective_concurrency(3) == 5
        assert Scenario("s", 0.1).effective_concurrency(2) == 1

    def test_batches_chunk_by_effective_concurrency(self):
        scenario = Scenario("s", 1, tuple(rest(f"r{i}") for i in range(5)))
        batches = scenario.batches(2)
        assert [len(b) for b in batches] == [2, 2, 1]
        assert [d.name for b in batches for d in b] == ["r0", "r1", "r2", "r3", "r4"]

    def test_batch_never_larger_than_list(self):
        scenario = Scenario("s", 5, (rest("a"), rest("b")))
        assert [len(b) for b in scenario.batches(10)] == [2]

    def test_empty_scenario_has_no_batches(self):
        assert Scenario("s", 1).batches(4) == []
