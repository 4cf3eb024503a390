"""Per-version watermark of the highest synced market id."""

from __future__ import annotations

from loguru import logger

from app.domain import ContractVersion

from .cache_store import CacheStore
from .market_repository import CacheKeys


class SyncCursor:
    """Persisted, monotonic cursor stored under ``cursor:{version}``."""

    def __init__(self, store: CacheStore, *, lock_ttl: float = 30.0, lock_wait: float = 5.0) -> None:
        self._store = store
        self._lock_ttl = lock_ttl
        self._lock_wait = lock_wait

    def get(self, version: ContractVersion) -> int:
        """Return the highest synced id, or 0 when the version was never synced."""

        payload = self._store.get(CacheKeys.cursor(version))
        if payload is None:
            return 0
        return int(payload)

    def advance(self, version: ContractVersion, numeric_id: int) -> int:
        """Move the cursor forward to ``numeric_id``.

        Re-writing the current value is a no-op; a lower value raises ``ValueError``.
        """

        if numeric_id < 0:
            raise ValueError("Cursor ids must be non-negative")

        key = CacheKeys.cursor(version)
        with self._store.lock(f"lock:{key}", ttl=self._lock_ttl, wait=self._lock_wait):
            current = self.get(version)
            if numeric_id < current:
                raise ValueError(
                    f"Cursor for {version.value} cannot move backwards ({current} -> {numeric_id})"
                )
            if numeric_id == current:
                return current
            self._store.set(key, numeric_id)
        logger.debug("Cursor {} advanced {} -> {}", version.value, current, numeric_id)
        return numeric_id


__all__ = ["SyncCursor"]
