"""Exception hierarchy for the refresh pipeline.

Run-level errors (``Unauthorized``, ``RunInProgress``, ``UpstreamUnavailable``)
abort an invocation. Ticker- and tag-level errors are caught by the
orchestrator and reported in the run's error list instead.
"""


class TagExplorerError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500


class Unauthorized(TagExplorerError):
    """Missing or mismatched bearer token."""

    status_code = 401


class RunInProgress(TagExplorerError):
    """Another refresh run holds the run lock."""

    status_code = 409


class UpstreamError(TagExplorerError):
    """A call to an external data provider failed."""

    def __init__(self, message: str, ticker: str = None, status: int = None):
        super().__init__(message)
        self.ticker = ticker
        self.status = status


class UpstreamUnavailable(UpstreamError):
    """The provider could not deliver data at all. Fatal to the run."""

    status_code = 502


class NoSnapshotAvailable(UpstreamUnavailable):
    """Every date in the snapshot search window came back empty or failed."""


class UpstreamRateLimited(UpstreamError):
    """Provider answered 429. Never retried within a run."""


class UpstreamTransient(UpstreamError):
    """Timeout, connection error or 5xx. Eligible for retry."""


class PersistenceError(TagExplorerError):
    """A write for one ticker or one tag failed."""

    def __init__(self, message: str, ticker: str = None, tag: str = None):
        super().__init__(message)
        self.ticker = ticker
        self.tag = tag

    def to_dict(self) -> dict:
        entry = {"error": str(self)}
        if self.ticker:
            entry["ticker"] = self.ticker
        if self.tag:
            entry["tag"] = self.tag
        return entry
