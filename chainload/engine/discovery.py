"""Progressive discovery of live chain state.

Stages run in order. Each receives the state accumulated so far, issues its
own requests, and returns a delta that the runner merges into a new state.
A failing stage is logged and skipped; later stages simply see less data.

Transaction decoding is pluggable per dialect through ``TxExtractor``.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import structlog

from chainload.engine.errors import DiscoveryFailure
from chainload.engine.models import (
    BlockSummary,
    ChainState,
    Dialect,
    RequestDescriptor,
    TransportKind,
)
from chainload.engine.requester import Requester

logger = structlog.get_logger()

DEFAULT_BLOCK_WINDOW = 10
EMPTY_CODE = {"", "0x", "0x0"}


def _dig(value: Any, *keys: str | int) -> Any:
    for key in keys:
        if isinstance(value, Mapping) and isinstance(key, str):
            value = value.get(key)
        elif isinstance(value, list) and isinstance(key, int) and -len(value) <= key < len(value):
            value = value[key]
        else:
            return None
    return value


def _rest(name: str, path: str, **params: Any) -> RequestDescriptor:
    return RequestDescriptor(name=name, transport=TransportKind.REST_GET, target=path, params=params)


def _rpc(method: str, *params: Any) -> RequestDescriptor:
    return RequestDescriptor(
        name=method, transport=TransportKind.JSON_RPC, target=method, params=list(params)
    )


async def fetch(requester: Requester, descriptor: RequestDescriptor, stage: str) -> Any:
    """Send *descriptor* and return its body, raising ``DiscoveryFailure`` on any failure."""
    outcome = await requester.send(descriptor)
    if outcome.failure is not None:
        raise DiscoveryFailure(
            stage, f"{descriptor.name}: {outcome.failure.message}", outcome.failure
        )
    body = outcome.body
    if descriptor.transport is TransportKind.JSON_RPC:
        if isinstance(body, Mapping) and body.get("error"):
            raise DiscoveryFailure(stage, f"{descriptor.name}: {body['error']}")
        return _dig(body, "result")
    return body


class DiscoveryStage(ABC):
    """One discovery step. Subclasses return a ``ChainState`` delta."""

    name: str = "stage"

    @abstractmethod
    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        """Return what this stage learned; never mutate *state*."""
        ...


# ---------------------------------------------------------------------------
# Chain info
# ---------------------------------------------------------------------------


def _parse_height(raw: Any, base: int, dialect: Dialect) -> int | None:
    try:
        return int(raw, base) if isinstance(raw, str) else int(raw)
    except (TypeError, ValueError):
        logger.warning("chain_info_height_unparseable", dialect=dialect.value, value=raw)
        return None


class ChainInfoStage(DiscoveryStage):
    """Latest height on both dialects and the network id."""

    name = "chain_info"

    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        latest, node_info, evm_height = await asyncio.gather(
            fetch(requester, _rest("latest_block", "/cosmos/base/tendermint/v1beta1/blocks/latest"), self.name),
            fetch(requester, _rest("node_info", "/cosmos/base/tendermint/v1beta1/node_info"), self.name),
            fetch(requester, _rpc("eth_blockNumber"), self.name),
            return_exceptions=True,
        )
        delta = ChainState()
        if not isinstance(latest, BaseException):
            height = _dig(latest, "block", "header", "height") or _dig(
                latest, "sdk_block", "header", "height"
            )
            if height is not None:
                delta.latest_height = _parse_height(height, 10, Dialect.COSMOS)
        if not isinstance(node_info, BaseException):
            delta.network_id = _dig(node_info, "default_node_info", "network")
        if isinstance(evm_height, str):
            delta.evm_latest_height = _parse_height(evm_height, 16, Dialect.EVM)

        if delta.latest_height is None and delta.evm_latest_height is None:
            first_error = next(
                (r for r in (latest, node_info, evm_height) if isinstance(r, BaseException)), None
            )
            if isinstance(first_error, DiscoveryFailure):
                raise first_error
            raise DiscoveryFailure(self.name, "latest height unavailable on both dialects")
        return delta


# ---------------------------------------------------------------------------
# Block window
# ---------------------------------------------------------------------------


class BlockWindowStage(DiscoveryStage):
    """Fetch the most recent ``window`` blocks in parallel, with their transactions."""

    name = "block_window"

    def __init__(self, window: int = DEFAULT_BLOCK_WINDOW) -> None:
        if window <= 0:
            raise ValueError(f"window must be > 0, got {window}")
        self.window = window

    def heights(self, state: ChainState) -> list[int]:
        latest = state.latest_height or state.evm_latest_height
        if latest is None:
            return []
        return [
            h
            for h in range(latest, max(latest - self.window, 0), -1)
            if not state.has_block(h)
        ]

    async def _tx_responses(self, height: int, requester: Requester) -> list[Any]:
        # block bodies carry raw Tx objects without hashes; the tx search has them
        try:
            body = await fetch(
                requester,
                _rest("txs_by_height", "/cosmos/tx/v1beta1/txs", events=f"tx.height={height}"),
                self.name,
            )
        except DiscoveryFailure as exc:
            logger.debug("tx_search_failed", height=height, error=str(exc))
            return []
        return list(_dig(body, "tx_responses") or [])

    async def _fetch_block(self, height: int, requester: Requester) -> BlockSummary | None:
        cosmos, evm = await asyncio.gather(
            fetch(requester, _rest("block_with_txs", f"/cosmos/tx/v1beta1/txs/block/{height}"), self.name),
            fetch(requester, _rpc("eth_getBlockByNumber", hex(height), True), self.name),
            return_exceptions=True,
        )
        if isinstance(cosmos, BaseException) and isinstance(evm, BaseException):
            logger.debug("block_fetch_failed", height=height, error=str(cosmos))
            return None

        block = BlockSummary(height=height)
        if not isinstance(cosmos, BaseException):
            block.hash = _dig(cosmos, "block_id", "hash")
            block.time = _dig(cosmos, "block", "header", "time")
            block.cosmos_txs = list(_dig(cosmos, "tx_responses") or _dig(cosmos, "txs") or [])
            if block.cosmos_txs and not _dig(cosmos, "tx_responses"):
                block.cosmos_txs = await self._tx_responses(height, requester) or block.cosmos_txs
        if isinstance(evm, Mapping):
            block.hash = block.hash or evm.get("hash")
            block.evm_txs = list(evm.get("transactions") or [])
        return block

    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        heights = self.heights(state)
        if not heights:
            if state.latest_height is None and state.evm_latest_height is None:
                raise DiscoveryFailure(self.name, "no latest height known")
            return ChainState()

        blocks = await asyncio.gather(*(self._fetch_block(h, requester) for h in heights))
        delta = ChainState()
        for block in blocks:
            if block is not None:
                delta.add_block(block)
        if not delta.blocks:
            raise DiscoveryFailure(self.name, f"none of {len(heights)} blocks could be fetched")
        return delta


# ---------------------------------------------------------------------------
# Transaction analysis
# ---------------------------------------------------------------------------


class TxExtractor(Protocol):
    def extract(self, tx: Any, into: ChainState) -> None: ...


class CosmosTxExtractor:
    """Walks decoded Cosmos messages for addresses, contracts, and denoms.

    Accepts either a ``tx_responses`` entry (``txhash`` plus the decoded
    ``tx``) or a bare ``Tx`` object, which carries no hash.
    """

    ADDRESS_KEYS = frozenset(
        {"sender", "from_address", "to_address", "delegator_address", "granter", "grantee", "recipient", "owner"}
    )
    CONTRACT_KEYS = frozenset({"contract", "contract_address", "_contract_address"})
    MAX_WALK_DEPTH = 8

    def extract(self, tx: Any, into: ChainState) -> None:
        txhash = _dig(tx, "txhash")
        if isinstance(txhash, str):
            into.transactions.add(txhash)
        messages = _dig(tx, "body", "messages") or _dig(tx, "tx", "body", "messages") or []
        for message in messages:
            self._walk(message, into, 0)

    def _walk(self, value: Any, into: ChainState, depth: int) -> None:
        if depth > self.MAX_WALK_DEPTH:
            return
        if isinstance(value, list):
            for item in value:
                self._walk(item, into, depth + 1)
            return
        if not isinstance(value, Mapping):
            return
        for key, item in value.items():
            if isinstance(item, str) and item:
                if key in self.ADDRESS_KEYS:
                    into.accounts.add(item)
                elif key in self.CONTRACT_KEYS:
                    into.contracts.add(item)
                elif key == "denom":
                    into.tokens.add(item)
            else:
                self._walk(item, into, depth + 1)


class EvmTxExtractor:
    """Reads sender, recipient, and call data of full EVM transaction objects."""

    # transfer(address,uint256), transferFrom(address,address,uint256)
    TOKEN_SELECTORS = ("0xa9059cbb", "0x23b872dd")

    def extract(self, tx: Any, into: ChainState) -> None:
        if isinstance(tx, str):
            into.transactions.add(tx)
            return
        if not isinstance(tx, Mapping):
            return
        if tx.get("hash"):
            into.transactions.add(tx["hash"])
        sender = tx.get("from")
        if sender:
            into.evm.accounts.add(sender.lower())
        recipient = tx.get("to")
        if not recipient:
            return
        recipient = recipient.lower()
        call_data = tx.get("input") or tx.get("data") or "0x"
        if call_data in EMPTY_CODE:
            into.evm.accounts.add(recipient)
            return
        into.evm.contracts.add(recipient)
        if call_data.startswith(self.TOKEN_SELECTORS):
            into.evm.tokens.add(recipient)


def default_extractors() -> dict[Dialect, TxExtractor]:
    return {Dialect.COSMOS: CosmosTxExtractor(), Dialect.EVM: EvmTxExtractor()}


class TransactionAnalysisStage(DiscoveryStage):
    """Decode every transaction in the known blocks with the dialect's extractor."""

    name = "transaction_analysis"

    def __init__(self, extractors: Mapping[Dialect, TxExtractor] | None = None) -> None:
        self.extractors = dict(extractors) if extractors is not None else default_extractors()

    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        delta = ChainState()
        decoded = 0
        for block in state.blocks.values():
            for dialect, txs in ((Dialect.COSMOS, block.cosmos_txs), (Dialect.EVM, block.evm_txs)):
                extractor = self.extractors.get(dialect)
                if extractor is None:
                    continue
                for tx in txs:
                    extractor.extract(tx, delta)
                    decoded += 1
        logger.debug("transactions_decoded", count=decoded)
        return delta


# ---------------------------------------------------------------------------
# Contract discovery
# ---------------------------------------------------------------------------


class ContractDiscoveryStage(DiscoveryStage):
    """List CosmWasm contracts of recent codes and probe EVM accounts for bytecode."""

    name = "contract_discovery"

    def __init__(self, max_codes: int = 5, max_evm_probes: int = 20) -> None:
        self.max_codes = max_codes
        self.max_evm_probes = max_evm_probes

    async def _wasm_contracts(self, requester: Requester) -> set[str]:
        codes = await fetch(
            requester,
            _rest("wasm_codes", "/cosmwasm/wasm/v1/code", **{"pagination.reverse": "true", "pagination.limit": str(self.max_codes)}),
            self.name,
        )
        code_ids = [info.get("code_id") for info in _dig(codes, "code_infos") or [] if isinstance(info, Mapping)]
        listings = await asyncio.gather(
            *(
                fetch(requester, _rest("wasm_code_contracts", f"/cosmwasm/wasm/v1/code/{code_id}/contracts"), self.name)
                for code_id in code_ids[: self.max_codes]
                if code_id is not None
            ),
            return_exceptions=True,
        )
        found: set[str] = set()
        for listing in listings:
            if not isinstance(listing, BaseException):
                found.update(c for c in _dig(listing, "contracts") or [] if isinstance(c, str))
        return found

    async def _evm_contracts(self, state: ChainState, requester: Requester) -> set[str]:
        candidates = sorted(state.evm.accounts - state.evm.contracts)[: self.max_evm_probes]
        codes = await asyncio.gather(
            *(fetch(requester, _rpc("eth_getCode", addr, "latest"), self.name) for addr in candidates),
            return_exceptions=True,
        )
        return {
            addr
            for addr, code in zip(candidates, codes)
            if isinstance(code, str) and code not in EMPTY_CODE
        }

    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        wasm, evm = await asyncio.gather(
            self._wasm_contracts(requester),
            self._evm_contracts(state, requester),
            return_exceptions=True,
        )
        if isinstance(wasm, BaseException) and isinstance(evm, BaseException):
            if isinstance(wasm, DiscoveryFailure):
                raise wasm
            raise DiscoveryFailure(self.name, str(wasm))
        delta = ChainState()
        if not isinstance(wasm, BaseException):
            delta.contracts = wasm
        if not isinstance(evm, BaseException):
            delta.evm.contracts = evm
        return delta


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def default_stages(block_window: int = DEFAULT_BLOCK_WINDOW) -> list[DiscoveryStage]:
    return [
        ChainInfoStage(),
        BlockWindowStage(block_window),
        TransactionAnalysisStage(),
        ContractDiscoveryStage(),
    ]


class DiscoveryRunner:
    """Runs the stage pipeline, threading an explicit ``ChainState`` through it."""

    def __init__(self, stages: Sequence[DiscoveryStage] | None = None) -> None:
        self.stages = list(stages) if stages is not None else default_stages()
        self.completed: list[str] = []
        self.failed: list[str] = []

    async def run(self, state: ChainState, requester: Requester) -> ChainState:
        for stage in self.stages:
            logger.info("discovery_stage_started", stage=stage.name)
            try:
                delta = await stage.run(state, requester)
            except DiscoveryFailure as exc:
                self.failed.append(stage.name)
                logger.warning("discovery_stage_failed", stage=stage.name, error=str(exc))
                continue
            except Exception as exc:
                self.failed.append(stage.name)
                logger.warning(
                    "discovery_stage_failed",
                    stage=stage.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            state = state.merge(delta)
            self.completed.append(stage.name)
            logger.info("discovery_stage_completed", stage=stage.name, **state.counts())
        return state


async def run_discovery(
    state: ChainState,
    requester: Requester,
    stages: Sequence[DiscoveryStage] | None = None,
) -> ChainState:
    return await DiscoveryRunner(stages).run(state, requester)
