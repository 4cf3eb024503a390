"""Repository abstractions for cache store interactions."""

from .cache_store import CacheStore
from .cursor_repository import SyncCursor
from .market_repository import CacheKeys, MarketRepository
from .types import MarketFilter

__all__ = [
    "CacheKeys",
    "CacheStore",
    "MarketFilter",
    "MarketRepository",
    "SyncCursor",
]
