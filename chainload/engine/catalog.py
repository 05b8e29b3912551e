"""Request catalog: weighted request templates for both chain dialects.

The engine never hard-codes chain methods. A ``Catalog`` maps a method name
to its transport, sampling weight, and a parameter builder that draws
realistic arguments from the discovered ``ChainState``. REST targets may
contain ``{placeholders}``; builder output with a matching key fills the
path and everything else becomes the query string.
"""

import random
import string
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from chainload.engine.errors import CatalogError
from chainload.engine.models import (
    ChainState,
    RequestDescriptor,
    TransportKind,
    WeightedKey,
)

logger = structlog.get_logger()

ParamBuilder = Callable[[ChainState, random.Random], Any]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
# ERC-20 name() selector
ERC20_NAME_CALL = "0x06fdde03"


@dataclass(frozen=True)
class CatalogEntry:
    transport: TransportKind
    weight: float
    target: str
    param_builder: ParamBuilder | None = None

    def build(self, name: str, state: ChainState, rng: random.Random) -> RequestDescriptor | None:
        """Build a descriptor, or None when the state cannot satisfy the template."""
        if self.param_builder is None:
            params = None
        else:
            params = self.param_builder(state, rng)
            if params is None:
                return None
        if self.transport is TransportKind.JSON_RPC:
            return RequestDescriptor(
                name=name,
                transport=self.transport,
                target=self.target,
                params=list(params or ()),
                weight=self.weight,
            )

        placeholders = _placeholders(self.target)
        params = dict(params or {})
        if any(params.get(p) is None for p in placeholders):
            return None
        path = self.target.format(**{p: params.pop(p) for p in placeholders})
        body = params.pop("body", None) if self.transport is TransportKind.REST_POST else None
        return RequestDescriptor(
            name=name,
            transport=self.transport,
            target=path,
            params=params,
            body=body,
            weight=self.weight,
        )


def _placeholders(template: str) -> list[str]:
    return [field for _, field, _, _ in string.Formatter().parse(template) if field]


def validate_weights(weights: Iterable[WeightedKey]) -> list[WeightedKey]:
    """Check a weight table is usable for sampling and return it as a list."""
    items = list(weights)
    if not items:
        raise CatalogError("weight table is empty")
    for item in items:
        if item.weight < 0:
            raise CatalogError(f"weight for {item.key!r} must be >= 0, got {item.weight}")
    if not any(item.weight > 0 for item in items):
        raise CatalogError("weight table needs at least one positive weight")
    return items


class Catalog:
    """Ordered mapping of method name to ``CatalogEntry``.

    Order matters: weighted sampling walks entries in this order.
    """

    def __init__(self, entries: Iterable[tuple[str, CatalogEntry]] = ()) -> None:
        self._entries: dict[str, CatalogEntry] = dict(entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, name: str) -> CatalogEntry:
        return self._entries[name]

    def names(self) -> list[str]:
        return list(self._entries)

    def register(self, name: str, entry: CatalogEntry) -> None:
        self._entries[name] = entry

    def weighted_keys(self) -> list[WeightedKey]:
        return [WeightedKey(name, entry.weight) for name, entry in self._entries.items()]

    def with_weights(self, weights: Iterable[WeightedKey]) -> "Catalog":
        """Return a catalog restricted to *weights*, in that order, re-weighted.

        Zero-weight keys are dropped since they can never be sampled.
        """
        items = validate_weights(weights)
        unknown = [w.key for w in items if w.key not in self._entries]
        if unknown:
            raise CatalogError(f"unknown catalog methods: {', '.join(unknown)}")
        return Catalog(
            (
                w.key,
                CatalogEntry(
                    transport=self._entries[w.key].transport,
                    weight=w.weight,
                    target=self._entries[w.key].target,
                    param_builder=self._entries[w.key].param_builder,
                ),
            )
            for w in items
            if w.weight > 0
        )


# ---------------------------------------------------------------------------
# Parameter builders for the default catalog
# ---------------------------------------------------------------------------


def _pick(values: Iterable[str], rng: random.Random) -> str | None:
    ordered = sorted(values)
    return rng.choice(ordered) if ordered else None


def _height(state: ChainState, rng: random.Random) -> int | str:
    if state.blocks:
        return rng.choice(sorted(state.blocks))
    if state.latest_height is not None:
        return state.latest_height
    return "latest"


def _hex_height(state: ChainState, rng: random.Random) -> str:
    height = _height(state, rng)
    return hex(height) if isinstance(height, int) else height


def _evm_tx_hash(state: ChainState, rng: random.Random) -> str | None:
    return _pick((h for h in state.transactions if h.startswith("0x")), rng)


def _cosmos_tx_hash(state: ChainState, rng: random.Random) -> str | None:
    return _pick((h for h in state.transactions if not h.startswith("0x")), rng)


def _evm_account(state: ChainState, rng: random.Random) -> str:
    return _pick(state.evm.accounts, rng) or ZERO_ADDRESS


def _log_range(state: ChainState, rng: random.Random) -> list[Any]:
    block = _hex_height(state, rng)
    return [{"fromBlock": block, "toBlock": block}]


def _eth_call(state: ChainState, rng: random.Random) -> list[Any]:
    target = _pick(state.evm.tokens | state.evm.contracts, rng) or ZERO_ADDRESS
    return [{"to": target, "data": ERC20_NAME_CALL}, "latest"]


def _receipt(state: ChainState, rng: random.Random) -> list[Any] | None:
    tx_hash = _evm_tx_hash(state, rng)
    return [tx_hash] if tx_hash else None


def default_catalog() -> Catalog:
    """Weighted mix of the methods a chain-query API serves in practice."""
    rpc = TransportKind.JSON_RPC
    get = TransportKind.REST_GET
    return Catalog(
        [
            (
                "eth_getBlockByNumber",
                CatalogEntry(rpc, 15, "eth_getBlockByNumber", lambda s, r: [_hex_height(s, r), True]),
            ),
            ("eth_getLogs", CatalogEntry(rpc, 12, "eth_getLogs", _log_range)),
            (
                "eth_getBlockReceipts",
                CatalogEntry(rpc, 12, "eth_getBlockReceipts", lambda s, r: [_hex_height(s, r)]),
            ),
            ("eth_call", CatalogEntry(rpc, 10, "eth_call", _eth_call)),
            (
                "abci_query",
                CatalogEntry(
                    get,
                    10,
                    "/abci_query",
                    lambda s, r: {"path": '"/app/version"', "height": "0", "prove": "false"},
                ),
            ),
            (
                "cosmos_block",
                CatalogEntry(
                    get,
                    9,
                    "/cosmos/base/tendermint/v1beta1/blocks/{height}",
                    lambda s, r: {"height": _height(s, r)},
                ),
            ),
            ("sei_getLogs", CatalogEntry(rpc, 8, "sei_getLogs", _log_range)),
            ("eth_blockNumber", CatalogEntry(rpc, 7, "eth_blockNumber")),
            ("eth_getTransactionReceipt", CatalogEntry(rpc, 7, "eth_getTransactionReceipt", _receipt)),
            (
                "debug_traceBlockByNumber",
                CatalogEntry(
                    rpc,
                    6,
                    "debug_traceBlockByNumber",
                    lambda s, r: [_hex_height(s, r), {"tracer": "callTracer"}],
                ),
            ),
            (
                "tx_search",
                CatalogEntry(
                    get,
                    6,
                    "/tx_search",
                    lambda s, r: {"query": f'"tx.height={_height(s, r)}"', "page": 1, "per_page": 30},
                ),
            ),
            (
                "block_results",
                CatalogEntry(get, 5, "/block_results", lambda s, r: {"height": _height(s, r)}),
            ),
            (
                "eth_getBalance",
                CatalogEntry(rpc, 5, "eth_getBalance", lambda s, r: [_evm_account(s, r), "latest"]),
            ),
            (
                "eth_getTransactionCount",
                CatalogEntry(
                    rpc, 5, "eth_getTransactionCount", lambda s, r: [_evm_account(s, r), "latest"]
                ),
            ),
            (
                "cosmos_account",
                CatalogEntry(
                    get,
                    4,
                    "/cosmos/auth/v1beta1/accounts/{address}",
                    lambda s, r: {"address": _pick(s.accounts, r)},
                ),
            ),
            (
                "cosmos_tx",
                CatalogEntry(
                    get,
                    4,
                    "/cosmos/tx/v1beta1/txs/{hash}",
                    lambda s, r: {"hash": _cosmos_tx_hash(s, r)},
                ),
            ),
        ]
    )


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


def _static_params(params: Any) -> ParamBuilder:
    return lambda state, rng: params


def load_catalog(path: str | Path, base: Catalog | None = None) -> Catalog:
    """Load a catalog override from YAML.

    ``methods`` adds or replaces entries with static parameters; ``weights``
    (an ordered list of ``{key, weight}``) restricts and re-weights the result.
    """
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    catalog = Catalog((name, base[name]) for name in base.names()) if base else default_catalog()

    for name, spec in (raw.get("methods") or {}).items():
        try:
            transport = TransportKind(spec["transport"])
        except (KeyError, ValueError) as exc:
            raise CatalogError(f"method {name!r} has an invalid transport") from exc
        weight = float(spec.get("weight", 1))
        if weight <= 0:
            raise CatalogError(f"method {name!r} needs a positive weight, got {weight}")
        catalog.register(
            name,
            CatalogEntry(
                transport=transport,
                weight=weight,
                target=spec.get("target", name),
                param_builder=_static_params(spec["params"]) if spec.get("params") else None,
            ),
        )

    weights = raw.get("weights")
    if weights:
        catalog = catalog.with_weights(
            WeightedKey(str(item["key"]), float(item["weight"])) for item in weights
        )

    logger.info("catalog_loaded", path=str(path), methods=len(catalog))
    return catalog
