"""Shared test fixtures for chainload tests."""

import random

import pytest

from chainload.engine.models import BlockSummary, ChainState, EvmState
from tests.fakes import (
    COSMOS_RECIPIENT,
    COSMOS_SENDER,
    EVM_RECIPIENT,
    EVM_SENDER,
    EVM_TOKEN,
    WASM_CONTRACT,
    FakeRequester,
    chain_responder,
)


@pytest.fixture
def chain_requester() -> FakeRequester:
    return FakeRequester(default=chain_responder)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def discovered_state() -> ChainState:
    return ChainState(
        latest_height=100,
        evm_latest_height=100,
        network_id="pacific-1",
        blocks={
            100: BlockSummary(height=100, hash="HASH100"),
            99: BlockSummary(height=99, hash="HASH99"),
        },
        accounts={COSMOS_SENDER, COSMOS_RECIPIENT},
        contracts={WASM_CONTRACT},
        tokens={"usei"},
        transactions={"0xtx100a", "ABCDEF0123"},
        evm=EvmState(
            accounts={EVM_SENDER, EVM_RECIPIENT},
            contracts={EVM_TOKEN},
            tokens={EVM_TOKEN},
        ),
    )
