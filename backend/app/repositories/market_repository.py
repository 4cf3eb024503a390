"""Market- and stake-focused data access helpers on top of the cache store."""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from app.domain import (
    ContractVersion,
    MarketRecord,
    MarketStatus,
    StakeRecord,
    normalize_address,
    parse_market_key,
)
from app.domain.reconcile import ReconcileResult, merge_stake

from .cache_store import CacheStore
from .types import MarketFilter


class CacheKeys:
    """Persisted key space."""

    MARKETS = "markets"
    MARKETS_COUNT = "markets:count"
    STATS = "stats:compact"

    @staticmethod
    def market(version: ContractVersion, numeric_id: int) -> str:
        return f"market:{version.value}:{numeric_id}"

    @staticmethod
    def market_for_key(key: str) -> str:
        version, numeric_id = parse_market_key(key)
        return CacheKeys.market(version, numeric_id)

    @staticmethod
    def category(category: str) -> str:
        return f"markets:category:{category}"

    @staticmethod
    def creator(creator: str) -> str:
        return f"markets:creator:{normalize_address(creator)}"

    @staticmethod
    def status(status: MarketStatus) -> str:
        return f"markets:status:{status.value}"

    @staticmethod
    def stake(owner: str, key: str) -> str:
        return f"stake:{normalize_address(owner)}:{key}"

    @staticmethod
    def cursor(version: ContractVersion) -> str:
        return f"cursor:{version.value}"

    @staticmethod
    def market_lock(version: ContractVersion, numeric_id: int) -> str:
        return f"lock:market:{version.value}:{numeric_id}"


class MarketRepository:
    """Encapsulate market record, stake record and index persistence concerns."""

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    @property
    def store(self) -> CacheStore:
        return self._store

    # ------------------------------------------------------------------
    # Mutations

    def save_market(self, record: MarketRecord, previous: MarketRecord | None = None) -> MarketRecord:
        """Persist ``record`` and move its id between index sets.

        ``previous`` is the record read before merging; when omitted it is
        loaded so stale category/creator/status memberships can be dropped.
        """

        if previous is None:
            previous = self.get_market_by_id(record.version, record.numeric_id)

        key = record.key
        self._store.set(CacheKeys.market(record.version, record.numeric_id), record.to_dict())
        self._store.sadd(CacheKeys.MARKETS, key)

        if previous is not None and previous.category != record.category:
            self._store.srem(CacheKeys.category(previous.category), key)
        self._store.sadd(CacheKeys.category(record.category), key)

        if previous is not None and normalize_address(previous.creator) != normalize_address(record.creator):
            self._store.srem(CacheKeys.creator(previous.creator), key)
        self._store.sadd(CacheKeys.creator(record.creator), key)

        current_status = record.status
        for status in MarketStatus:
            if status is not current_status:
                self._store.srem(CacheKeys.status(status), key)
        self._store.sadd(CacheKeys.status(current_status), key)

        if previous is None:
            self._store.incr(CacheKeys.MARKETS_COUNT)
        return record

    def save_stake(self, stake: StakeRecord) -> ReconcileResult:
        """Write a stake record without ever clearing a stored claim flag."""

        previous = self.get_stake(stake.owner, stake.market_key)
        result = merge_stake(previous, stake)
        if previous is not None and previous.to_dict() == result.record.to_dict():
            return result
        self._store.set(CacheKeys.stake(stake.owner, stake.market_key), result.record.to_dict())
        return result

    def purge_market(self, version: ContractVersion, numeric_id: int) -> bool:
        """Administrative removal of a market, its index memberships and stakes."""

        record = self.get_market_by_id(version, numeric_id)
        if record is None:
            return False

        key = record.key
        self._store.srem(CacheKeys.MARKETS, key)
        self._store.srem(CacheKeys.category(record.category), key)
        self._store.srem(CacheKeys.creator(record.creator), key)
        for status in MarketStatus:
            self._store.srem(CacheKeys.status(status), key)
        stake_keys = self._store.keys(f"stake:*:{key}")
        self._store.delete(CacheKeys.market(version, numeric_id), *stake_keys)
        self._store.decr(CacheKeys.MARKETS_COUNT)
        logger.info("Purged market {} and {} stake records", key, len(stake_keys))
        return True

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, key: str) -> MarketRecord | None:
        version, numeric_id = parse_market_key(key)
        return self.get_market_by_id(version, numeric_id)

    def get_market_by_id(self, version: ContractVersion, numeric_id: int) -> MarketRecord | None:
        payload = self._store.get(CacheKeys.market(version, numeric_id))
        if not payload:
            return None
        return MarketRecord.from_dict(payload)

    def get_markets(self, keys: Iterable[str]) -> list[MarketRecord]:
        storage_keys = {CacheKeys.market_for_key(key): key for key in keys}
        payloads = self._store.get_many(storage_keys)
        records = [MarketRecord.from_dict(payload) for payload in payloads.values() if payload]
        return sorted(records, key=lambda record: (record.version.value, record.numeric_id))

    def market_keys(
        self,
        *,
        version: ContractVersion | None = None,
        statuses: Iterable[MarketStatus] | None = None,
        category: str | None = None,
        creator: str | None = None,
    ) -> set[str]:
        if statuses is not None:
            keys: set[str] = set()
            for status in statuses:
                keys |= self._store.smembers(CacheKeys.status(status))
        else:
            keys = self._store.smembers(CacheKeys.MARKETS)
        if category:
            keys &= self._store.smembers(CacheKeys.category(category))
        if creator:
            keys &= self._store.smembers(CacheKeys.creator(creator))
        if version is not None:
            prefix = f"pred_{version.value}_"
            keys = {key for key in keys if key.startswith(prefix)}
        return keys

    def synced_ids(self, version: ContractVersion) -> set[int]:
        return {parse_market_key(key)[1] for key in self.market_keys(version=version)}

    def iter_markets(self, version: ContractVersion | None = None) -> list[MarketRecord]:
        return self.get_markets(self.market_keys(version=version))

    def list_markets(self, query: MarketFilter) -> tuple[list[MarketRecord], int]:
        statuses = [query.status] if query.status is not None else None
        keys = self.market_keys(
            version=query.version,
            statuses=statuses,
            category=query.category,
            creator=query.creator,
        )
        records = self.get_markets(keys)
        if query.active_at is not None:
            records = [record for record in records if record.is_active_at(query.active_at)]
        if query.participant:
            participant = normalize_address(query.participant)
            records = [record for record in records if participant in record.participants]

        sort_key = {
            "created_at": lambda record: (record.created_at, record.numeric_id),
            "deadline": lambda record: (record.deadline, record.numeric_id),
            "id": lambda record: (record.version.value, record.numeric_id),
        }.get(query.sort, lambda record: (record.created_at, record.numeric_id))
        records.sort(key=sort_key, reverse=query.order.lower() == "desc")

        total = len(records)
        return records[query.offset : query.offset + query.limit], total

    def count_markets(self) -> int:
        return self._store.counter(CacheKeys.MARKETS_COUNT)

    def get_stake(self, owner: str, key: str) -> StakeRecord | None:
        payload = self._store.get(CacheKeys.stake(owner, key))
        if not payload:
            return None
        return StakeRecord.from_dict(payload)

    def stakes_for_market(self, key: str) -> list[StakeRecord]:
        return self._load_stakes(self._store.keys(f"stake:*:{key}"))

    def stakes_for_owner(self, owner: str) -> list[StakeRecord]:
        return self._load_stakes(self._store.keys(f"stake:{normalize_address(owner)}:*"))

    def _load_stakes(self, keys: list[str]) -> list[StakeRecord]:
        payloads = self._store.get_many(keys)
        stakes = [StakeRecord.from_dict(payload) for payload in payloads.values() if payload]
        return sorted(stakes, key=lambda stake: (stake.market_key, stake.owner))


__all__ = ["CacheKeys", "MarketRepository"]
