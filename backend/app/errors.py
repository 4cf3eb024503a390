"""Error taxonomy shared by the chain reader, the cache store and the sync runs."""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for every failure raised by the synchronization engine."""


class ChainReadError(SyncError):
    """A view-call or log query against the ledger failed."""


class TransientProviderError(ChainReadError):
    """Provider hiccup worth retrying (rate limit, timeout)."""


class RateLimited(TransientProviderError):
    pass


class ProviderTimeout(TransientProviderError):
    pass


class PermanentReadError(ChainReadError):
    """The call itself is invalid for this id; retrying will not help."""


class Reverted(PermanentReadError):
    pass


class InvalidRecord(PermanentReadError):
    """The id exists but its record cannot be cached (e.g. a zero deadline)."""


class NotFound(PermanentReadError):
    pass


class ProviderUnavailable(ChainReadError):
    """The provider cannot be reached at all; aborts the whole run."""


class CacheWriteError(SyncError):
    """A cache write failed; the id is retried on the next scheduled run."""


class StoreUnavailable(SyncError):
    """The cache store cannot be reached at all; aborts the whole run."""


class DataShapeError(SyncError):
    """A chain tuple does not match the shape expected for its schema version."""


class LockUnavailable(SyncError):
    """Another writer holds the advisory lock for a market."""


class RunAborted(SyncError):
    """Raised when a run stops before visiting every id in its range.

    ``summary`` carries the partial run summary up to the point of abort.
    """

    def __init__(self, message: str, summary: Any = None) -> None:
        super().__init__(message)
        self.summary = summary


__all__ = [
    "CacheWriteError",
    "ChainReadError",
    "DataShapeError",
    "InvalidRecord",
    "LockUnavailable",
    "NotFound",
    "PermanentReadError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "Reverted",
    "RunAborted",
    "StoreUnavailable",
    "SyncError",
    "TransientProviderError",
]
