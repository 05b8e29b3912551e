"""Exception taxonomy for the load testing engine.

Request failures are not exceptions: the Requester returns them as
``RequestFailure`` values inside a ``RequestOutcome``.
"""

from chainload.engine.models import RequestFailure


class ChainLoadError(Exception):
    """Base class for engine errors."""


class DiscoveryFailure(ChainLoadError):
    """A discovery stage could not complete. Logged, the stage is skipped."""

    def __init__(self, stage: str, message: str, failure: RequestFailure | None = None):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.failure = failure


class PatternAnalysisFailure(ChainLoadError):
    """A response body could not be fingerprinted. Never propagated out of the analyzer."""


class CatalogError(ChainLoadError, ValueError):
    """Invalid request catalog or weight table."""
