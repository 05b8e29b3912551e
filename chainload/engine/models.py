"""Data models for chain state, request descriptors, outcomes, and run summaries."""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Dialect(StrEnum):
    COSMOS = "cosmos"
    EVM = "evm"


class TransportKind(StrEnum):
    REST_GET = "rest_get"
    REST_POST = "rest_post"
    JSON_RPC = "json_rpc"

    @property
    def dialect(self) -> Dialect:
        return Dialect.EVM if self is TransportKind.JSON_RPC else Dialect.COSMOS


class FailureKind(StrEnum):
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    HTTP_ERROR = "http_error"


RATE_LIMIT_STATUS = 429


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """All tunables for a single engine run."""

    base_endpoint: str = "https://archive.sei.hellomoon.io"
    evm_endpoint: str | None = None
    auth_token: str | None = None
    concurrency: int = 5
    max_requests_per_second: int = 10
    request_timeout_seconds: float = 30.0
    batch_size: int = 100
    batch_pause_seconds: float = 0.1
    warmup_requests: int = 10
    block_window: int = 10
    rate_limit_window_ms: int = 60000
    rate_limit_threshold: int = 10
    rate_limit_cooldown_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {self.concurrency}")
        if self.max_requests_per_second <= 0:
            raise ValueError(
                f"max_requests_per_second must be > 0, got {self.max_requests_per_second}"
            )
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {self.batch_size}")
        if self.evm_endpoint is None:
            self.evm_endpoint = self.base_endpoint


# ---------------------------------------------------------------------------
# Chain state
# ---------------------------------------------------------------------------


@dataclass
class BlockSummary:
    """What discovery keeps about one block: identity plus raw transactions per dialect."""

    height: int
    hash: str | None = None
    time: str | None = None
    cosmos_txs: list[Any] = field(default_factory=list)
    evm_txs: list[Any] = field(default_factory=list)

    @property
    def tx_count(self) -> int:
        return len(self.cosmos_txs) + len(self.evm_txs)


@dataclass
class EvmState:
    accounts: set[str] = field(default_factory=set)
    contracts: set[str] = field(default_factory=set)
    tokens: set[str] = field(default_factory=set)


@dataclass
class ChainState:
    """Live chain data discovered during a run and used to seed requests.

    Blocks are write-once: a height that is already known is never replaced,
    so it is never fetched twice in the same run.
    """

    latest_height: int | None = None
    evm_latest_height: int | None = None
    network_id: str | None = None
    blocks: dict[int, BlockSummary] = field(default_factory=dict)
    accounts: set[str] = field(default_factory=set)
    contracts: set[str] = field(default_factory=set)
    tokens: set[str] = field(default_factory=set)
    transactions: set[str] = field(default_factory=set)
    evm: EvmState = field(default_factory=EvmState)

    def has_block(self, height: int) -> bool:
        return height in self.blocks

    def add_block(self, block: BlockSummary) -> bool:
        """Insert *block* unless its height is already known."""
        if block.height in self.blocks:
            return False
        self.blocks[block.height] = block
        return True

    def merge(self, other: "ChainState") -> "ChainState":
        """Return a new state holding everything in ``self`` plus ``other``."""
        merged = ChainState(
            latest_height=(
                other.latest_height if other.latest_height is not None else self.latest_height
            ),
            evm_latest_height=(
                other.evm_latest_height
                if other.evm_latest_height is not None
                else self.evm_latest_height
            ),
            network_id=other.network_id or self.network_id,
            blocks=dict(self.blocks),
            accounts=self.accounts | other.accounts,
            contracts=self.contracts | other.contracts,
            tokens=self.tokens | other.tokens,
            transactions=self.transactions | other.transactions,
            evm=EvmState(
                accounts=self.evm.accounts | other.evm.accounts,
                contracts=self.evm.contracts | other.evm.contracts,
                tokens=self.evm.tokens | other.evm.tokens,
            ),
        )
        for block in other.blocks.values():
            merged.add_block(block)
        return merged

    def counts(self) -> dict[str, Any]:
        return {
            "latest_height": self.latest_height,
            "evm_latest_height": self.evm_latest_height,
            "network_id": self.network_id,
            "blocks": len(self.blocks),
            "accounts": len(self.accounts),
            "contracts": len(self.contracts),
            "tokens": len(self.tokens),
            "transactions": len(self.transactions),
            "evm_accounts": len(self.evm.accounts),
            "evm_contracts": len(self.evm.contracts),
            "evm_tokens": len(self.evm.tokens),
        }


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WeightedKey:
    key: str
    weight: float


@dataclass(frozen=True)
class RequestDescriptor:
    """One request to issue: a REST path or a JSON-RPC method plus its parameters.

    ``params`` is a query mapping for REST calls and a positional list for
    JSON-RPC calls; both are frozen on construction.
    """

    name: str
    transport: TransportKind
    target: str
    params: Any = None
    body: Any = None
    weight: float = 1.0

    def __post_init__(self) -> None:
        if not self.weight > 0:
            raise ValueError(f"descriptor weight must be positive, got {self.weight}")
        if isinstance(self.params, list):
            object.__setattr__(self, "params", tuple(self.params))
        elif isinstance(self.params, dict):
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def dialect(self) -> Dialect:
        return self.transport.dialect

    def rpc_params(self) -> list[Any]:
        return list(self.params or ())

    def query_params(self) -> dict[str, Any]:
        if isinstance(self.params, Mapping):
            return dict(self.params)
        return {}


@dataclass(frozen=True)
class RequestFailure:
    kind: FailureKind
    message: str
    status: int | None = None

    @property
    def rate_limited(self) -> bool:
        return self.kind is FailureKind.HTTP_ERROR and self.status == RATE_LIMIT_STATUS


@dataclass
class RequestOutcome:
    """Result of one Requester call: a response or a classified failure."""

    duration_ms: float
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    failure: RequestFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def rate_limited(self) -> bool:
        return self.failure is not None and self.failure.rate_limited


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Scenario:
    """A named, weighted group of descriptors executed together."""

    name: str
    weight: float
    descriptors: tuple[RequestDescriptor, ...] = ()

    def effective_concurrency(self, base_concurrency: int) -> int:
        return max(1, math.ceil(base_concurrency * self.weight))

    def batches(self, base_concurrency: int) -> list[list[RequestDescriptor]]:
        """Chunk descriptors into batches of ``min(len, effective_concurrency)``."""
        if not self.descriptors:
            return []
        size = min(len(self.descriptors), self.effective_concurrency(base_concurrency))
        items = list(self.descriptors)
        return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class ScenarioResult:
    name: str
    weight: float
    effective_concurrency: int
    batch_sizes: list[int] = field(default_factory=list)
    requests: int = 0
    failures: int = 0


# ---------------------------------------------------------------------------
# Metrics output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of the aggregated metrics."""

    timestamp_ms: float
    request_counts: Mapping[str, int]
    error_rates: Mapping[str, float]
    average_latencies: Mapping[str, int]
    rate_limit_total: int
    recent_rate_limit_hits: int

    def __post_init__(self) -> None:
        for name in ("request_counts", "error_rates", "average_latencies"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "request_counts": dict(self.request_counts),
            "error_rates": dict(self.error_rates),
            "average_latencies": dict(self.average_latencies),
            "rate_limit": {
                "total": self.rate_limit_total,
                "recent_hits": self.recent_rate_limit_hits,
            },
        }


@dataclass
class EndpointSummary:
    endpoint: str
    requests: int
    errors: int
    error_rate: float
    average_latency: int
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    rate_limit_hits: int = 0


@dataclass
class RunSummary:
    """Final aggregate handed to the Reporter."""

    duration_ms: int
    total_requests: int
    successful: int
    failed: int
    average_latency: int
    error_rate: float
    endpoints: list[EndpointSummary] = field(default_factory=list)
    patterns_by_endpoint: dict[str, Any] = field(default_factory=dict)
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    rate_limit_total_hits: int = 0
    rate_limit_recent_hits: int = 0
    rate_limit_timeline: list[float] = field(default_factory=list)
    rate_limit_by_dialect: dict[str, int] = field(default_factory=dict)
    snapshots: list[Snapshot] = field(default_factory=list)
    discovery: dict[str, Any] = field(default_factory=dict)
    scenarios: list[ScenarioResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_ms": self.duration_ms,
            "requests": {
                "total": self.total_requests,
                "successful": self.successful,
                "failed": self.failed,
            },
            "average_latency": self.average_latency,
            "error_rate": self.error_rate,
            "endpoints": [vars(ep).copy() for ep in self.endpoints],
            "patterns_by_endpoint": self.patterns_by_endpoint,
            "anomalies": self.anomalies,
            "rate_limit": {
                "total_hits": self.rate_limit_total_hits,
                "recent_hits_in_window": self.rate_limit_recent_hits,
                "timeline": list(self.rate_limit_timeline),
                "by_dialect": dict(self.rate_limit_by_dialect),
            },
            "snapshots": [s.to_dict() for s in self.snapshots],
            "discovery": self.discovery,
            "scenarios": [vars(s).copy() for s in self.scenarios],
        }
