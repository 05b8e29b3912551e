"""Structural fingerprinting of response bodies and shape-drift detection.

A fingerprint is a type skeleton of a JSON-like value: field names, nesting,
and primitive type tags, never the values themselves. Recursion stops at a
fixed depth, so arbitrarily deep (or self-referencing) input always yields a
bounded signature.

An anomaly is a minority shape: a fingerprint seen for an endpoint whose
dominant, more frequent shape is already established.
"""

import json
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from chainload.engine.errors import PatternAnalysisFailure

logger = structlog.get_logger()

MAX_DEPTH = 3
MAX_EXAMPLES = 5

MAX_DEPTH_SENTINEL = "MAX_DEPTH"
EMPTY_ARRAY = "EMPTY_ARRAY"
NULL = "NULL"
STRING = "STRING"
NUMBER = "NUMBER"
BOOLEAN = "BOOLEAN"


def structural_pattern(value: Any, depth: int = 0, max_depth: int = MAX_DEPTH) -> Any:
    """Build the type skeleton of *value*.

    Arrays are represented by their first element; objects keep their keys
    in order. Anything below ``max_depth`` collapses to ``MAX_DEPTH``.
    """
    if depth > max_depth:
        return MAX_DEPTH_SENTINEL
    if isinstance(value, (list, tuple)):
        if not value:
            return EMPTY_ARRAY
        return [structural_pattern(value[0], depth + 1, max_depth)]
    if value is None:
        return NULL
    if isinstance(value, Mapping):
        return {str(k): structural_pattern(v, depth + 1, max_depth) for k, v in value.items()}
    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    raise PatternAnalysisFailure(f"cannot fingerprint value of type {type(value).__name__}")


def fingerprint(value: Any, max_depth: int = MAX_DEPTH) -> str:
    """Canonical, comparable key for the structure of *value*."""
    return json.dumps(structural_pattern(value, max_depth=max_depth), separators=(",", ":"))


@dataclass
class PatternStats:
    fingerprint: str
    count: int = 0
    first_seen_ms: float = 0.0
    examples: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PatternAnomaly:
    endpoint: str
    fingerprint: str
    count: int
    dominant_fingerprint: str
    dominant_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "fingerprint": self.fingerprint,
            "count": self.count,
            "dominant_fingerprint": self.dominant_fingerprint,
            "dominant_count": self.dominant_count,
        }


class ResponsePatternAnalyzer:
    """Tracks fingerprint frequencies and examples per endpoint."""

    def __init__(
        self,
        max_depth: int = MAX_DEPTH,
        max_examples: int = MAX_EXAMPLES,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._max_depth = max_depth
        self._max_examples = max_examples
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._lock = threading.Lock()
        self._patterns: dict[str, dict[str, PatternStats]] = {}

    def fingerprint(self, value: Any) -> str:
        return fingerprint(value, max_depth=self._max_depth)

    def observe(self, endpoint: str, key: str, example: Any = None) -> PatternAnomaly | None:
        """Count one occurrence of *key* for *endpoint*.

        Returns an anomaly when *key* is new for the endpoint and another,
        more frequent fingerprint is already established.
        """
        now = self._clock()
        with self._lock:
            patterns = self._patterns.setdefault(endpoint, {})
            is_new = key not in patterns
            stats = patterns.setdefault(key, PatternStats(fingerprint=key, first_seen_ms=now))
            stats.count += 1
            if len(stats.examples) < self._max_examples:
                stats.examples.append({"endpoint": endpoint, "timestamp_ms": now, "data": example})

            if not is_new:
                return None
            dominant = max(
                (s for k, s in patterns.items() if k != key),
                key=lambda s: s.count,
                default=None,
            )
            if dominant is None or dominant.count <= stats.count:
                return None
            anomaly = PatternAnomaly(
                endpoint=endpoint,
                fingerprint=key,
                count=stats.count,
                dominant_fingerprint=dominant.fingerprint,
                dominant_count=dominant.count,
            )

        logger.warning(
            "response_pattern_anomaly",
            endpoint=endpoint,
            fingerprint=key,
            dominant_count=anomaly.dominant_count,
        )
        return anomaly

    def analyze(self, endpoint: str, body: Any) -> PatternAnomaly | None:
        """Fingerprint and observe *body*. Failures are logged, never raised."""
        try:
            return self.observe(endpoint, self.fingerprint(body), body)
        except Exception as exc:
            logger.warning(
                "pattern_analysis_failed",
                endpoint=endpoint,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def patterns_for(self, endpoint: str) -> dict[str, PatternStats]:
        with self._lock:
            return dict(self._patterns.get(endpoint, {}))

    def anomalies(self) -> list[PatternAnomaly]:
        """Every fingerprint whose count is below its endpoint's dominant count."""
        found: list[PatternAnomaly] = []
        with self._lock:
            for endpoint, patterns in self._patterns.items():
                if len(patterns) < 2:
                    continue
                dominant = max(patterns.values(), key=lambda s: s.count)
                for stats in patterns.values():
                    if stats.count < dominant.count:
                        found.append(
                            PatternAnomaly(
                                endpoint=endpoint,
                                fingerprint=stats.fingerprint,
                                count=stats.count,
                                dominant_fingerprint=dominant.fingerprint,
                                dominant_count=dominant.count,
                            )
                        )
        return found

    def report(self) -> dict[str, Any]:
        with self._lock:
            patterns_by_endpoint = {
                endpoint: {
                    key: {
                        "count": stats.count,
                        "first_seen_ms": stats.first_seen_ms,
                        "examples": list(stats.examples),
                    }
                    for key, stats in patterns.items()
                }
                for endpoint, patterns in self._patterns.items()
            }
        return {
            "patterns_by_endpoint": patterns_by_endpoint,
            "anomalies": [a.to_dict() for a in self.anomalies()],
        }
