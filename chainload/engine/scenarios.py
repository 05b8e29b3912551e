"""Turn discovered chain state into request scenarios.

Two sources of load:

1. Weighted sampling over the request catalog, either one fixed-size batch
   at a time (batch mode) or as an endless stream of batches with a pause
   between them (streaming mode).
2. Progressive scenario sets of increasing structural weight, built from
   whatever discovery found: basic chain queries, then per-block,
   per-account, per-token, per-contract, and finally mixed queries.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

import structlog

from chainload.engine.catalog import Catalog, validate_weights
from chainload.engine.models import (
    ChainState,
    RequestDescriptor,
    Scenario,
    TransportKind,
    WeightedKey,
)

logger = structlog.get_logger()


def weighted_choice(weights: Sequence[WeightedKey], rng: random.Random) -> str:
    """Pick a key with probability ``weight / total``.

    Draws uniformly from ``[0, total)`` and walks the table in order; the
    first key whose cumulative weight is strictly greater than the draw wins,
    so zero-weight keys are never selected.
    """
    total = sum(item.weight for item in weights)
    draw = rng.random() * total
    cumulative = 0.0
    for item in weights:
        cumulative += item.weight
        if cumulative > draw:
            return item.key
    # Float accumulation can leave the last boundary a hair short
    return next(item.key for item in reversed(weights) if item.weight > 0)


class ScenarioGenerator:
    """Samples request descriptors from a catalog using discovered state.

    A generator streams at most once; start a new instance to restart.
    """

    def __init__(
        self,
        state: ChainState,
        catalog: Catalog,
        weights: Sequence[WeightedKey] | None = None,
        batch_size: int = 100,
        batch_pause_seconds: float = 0.1,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {batch_size}")
        if weights is not None:
            catalog = catalog.with_weights(weights)
        self._weights = validate_weights(catalog.weighted_keys())
        self._state = state
        self._catalog = catalog
        self._batch_size = batch_size
        self._batch_pause = batch_pause_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._streaming = False

    @property
    def weights(self) -> list[WeightedKey]:
        return list(self._weights)

    def sample_method(self) -> str:
        return weighted_choice(self._weights, self._rng)

    def generate_batch(self, size: int | None = None) -> list[RequestDescriptor]:
        """Draw ``size`` methods with replacement and build their descriptors.

        Methods whose template the current state cannot fill are dropped, so a
        batch may come back shorter than ``size``.
        """
        batch: list[RequestDescriptor] = []
        for _ in range(size or self._batch_size):
            name = self.sample_method()
            descriptor = self._catalog[name].build(name, self._state, self._rng)
            if descriptor is not None:
                batch.append(descriptor)
        return batch

    async def stream(self) -> AsyncIterator[list[RequestDescriptor]]:
        """Yield batches forever, pausing between them."""
        if self._streaming:
            raise RuntimeError("generator already streamed; create a new ScenarioGenerator")
        self._streaming = True
        while True:
            yield self.generate_batch()
            await self._sleep(self._batch_pause)

    async def descriptors(self) -> AsyncIterator[RequestDescriptor]:
        """Flatten ``stream()`` into single descriptors."""
        async for batch in self.stream():
            for descriptor in batch:
                yield descriptor


# ---------------------------------------------------------------------------
# Progressive scenario sets
# ---------------------------------------------------------------------------

SCENARIO_WEIGHTS: dict[str, float] = {
    "basic-chain-queries": 1,
    "block-queries": 2,
    "account-queries": 3,
    "token-queries": 3,
    "contract-queries": 4,
    "complex-mixed": 5,
}


def _rest(name: str, path: str, weight: float, **params: object) -> RequestDescriptor:
    return RequestDescriptor(
        name=name, transport=TransportKind.REST_GET, target=path, params=params, weight=weight
    )


def _rpc(name: str, method: str, weight: float, *params: object) -> RequestDescriptor:
    return RequestDescriptor(
        name=name, transport=TransportKind.JSON_RPC, target=method, params=list(params), weight=weight
    )


def _basic(weight: float) -> list[RequestDescriptor]:
    return [
        _rest("cosmos_latest_block", "/cosmos/base/tendermint/v1beta1/blocks/latest", weight),
        _rest("node_info", "/cosmos/base/tendermint/v1beta1/node_info", weight),
        _rpc("eth_blockNumber", "eth_blockNumber", weight),
        _rpc("eth_gasPrice", "eth_gasPrice", weight),
    ]


def _complex(state: ChainState, weight: float) -> list[RequestDescriptor]:
    queries: list[RequestDescriptor] = []
    if state.contracts:
        queries.append(_rest("wasm_codes", "/cosmwasm/wasm/v1/code", weight, **{"pagination.limit": "50"}))
        for contract in sorted(state.contracts):
            queries.append(
                _rest("wasm_contract_state", f"/cosmwasm/wasm/v1/contract/{contract}/state", weight)
            )
    for account in sorted(state.evm.accounts):
        queries.append(_rpc("eth_getBalance", "eth_getBalance", weight, account, "latest"))
    for contract in sorted(state.evm.contracts | state.evm.tokens):
        queries.append(_rpc("eth_getCode", "eth_getCode", weight, contract, "latest"))
    return queries


def build_progressive_scenarios(state: ChainState) -> list[Scenario]:
    """Scenario sets in order of increasing structural weight."""
    w = SCENARIO_WEIGHTS
    scenarios = [
        Scenario("basic-chain-queries", w["basic-chain-queries"], tuple(_basic(w["basic-chain-queries"]))),
        Scenario(
            "block-queries",
            w["block-queries"],
            tuple(
                _rest("cosmos_block", f"/cosmos/base/tendermint/v1beta1/blocks/{height}", w["block-queries"])
                for height in sorted(state.blocks, reverse=True)
            ),
        ),
        Scenario(
            "account-queries",
            w["account-queries"],
            tuple(
                _rest("cosmos_account", f"/cosmos/auth/v1beta1/accounts/{addr}", w["account-queries"])
                for addr in sorted(state.accounts)
            ),
        ),
        Scenario(
            "token-queries",
            w["token-queries"],
            tuple(
                _rest("bank_supply", "/cosmos/bank/v1beta1/supply/by_denom", w["token-queries"], denom=denom)
                for denom in sorted(state.tokens)
            ),
        ),
        Scenario(
            "contract-queries",
            w["contract-queries"],
            tuple(
                _rest(
                    "wasm_contract_state",
                    f"/cosmwasm/wasm/v1/contract/{contract}/state",
                    w["contract-queries"],
                )
                for contract in sorted(state.contracts)
            ),
        ),
        Scenario("complex-mixed", w["complex-mixed"], tuple(_complex(state, w["complex-mixed"]))),
    ]
    logger.info(
        "scenarios_built",
        scenarios={s.name: len(s.descriptors) for s in scenarios},
    )
    return scenarios

