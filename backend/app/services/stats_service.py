"""Aggregate statistics derived from the synced market set."""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from app.domain import MarketRecord, TokenType
from app.errors import CacheWriteError
from app.repositories import CacheKeys, MarketRepository

_DAY_SECONDS = 24 * 60 * 60


@dataclass(slots=True)
class CategoryStats:
    category: str
    total: int = 0
    active: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "total": self.total, "active": self.active}


@dataclass(slots=True)
class MarketStats:
    total_markets: int = 0
    active_markets: int = 0
    resolved_markets: int = 0
    cancelled_markets: int = 0
    pending_markets: int = 0
    volume_by_token: dict[str, int] = field(default_factory=dict)
    unique_participants: int = 0
    top_category: str | None = None
    resolution_rate: float = 0.0
    ending_within_24h: int = 0
    created_last_7d: int = 0
    categories: list[CategoryStats] = field(default_factory=list)
    generated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_markets": self.total_markets,
            "active_markets": self.active_markets,
            "resolved_markets": self.resolved_markets,
            "cancelled_markets": self.cancelled_markets,
            "pending_markets": self.pending_markets,
            "volume_by_token": dict(self.volume_by_token),
            "unique_participants": self.unique_participants,
            "top_category": self.top_category,
            "resolution_rate": self.resolution_rate,
            "ending_within_24h": self.ending_within_24h,
            "created_last_7d": self.created_last_7d,
            "categories": [category.to_dict() for category in self.categories],
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MarketStats":
        return cls(
            total_markets=int(payload.get("total_markets", 0)),
            active_markets=int(payload.get("active_markets", 0)),
            resolved_markets=int(payload.get("resolved_markets", 0)),
            cancelled_markets=int(payload.get("cancelled_markets", 0)),
            pending_markets=int(payload.get("pending_markets", 0)),
            volume_by_token={
                str(token): int(amount) for token, amount in (payload.get("volume_by_token") or {}).items()
            },
            unique_participants=int(payload.get("unique_participants", 0)),
            top_category=payload.get("top_category"),
            resolution_rate=float(payload.get("resolution_rate", 0.0)),
            ending_within_24h=int(payload.get("ending_within_24h", 0)),
            created_last_7d=int(payload.get("created_last_7d", 0)),
            categories=[
                CategoryStats(
                    category=item["category"],
                    total=int(item.get("total", 0)),
                    active=int(item.get("active", 0)),
                )
                for item in payload.get("categories") or []
            ],
            generated_at=float(payload.get("generated_at", 0.0)),
        )


def compute_stats(markets: Iterable[MarketRecord], now: float) -> MarketStats:
    """Pure aggregation over ``markets``; records are never modified."""

    stats = MarketStats(generated_at=now)
    volume: Counter[str] = Counter({token.value: 0 for token in TokenType})
    participants: set[str] = set()
    categories: dict[str, CategoryStats] = {}

    for record in markets:
        stats.total_markets += 1
        active = record.is_active_at(now)
        if record.needs_approval:
            stats.pending_markets += 1
        elif record.cancelled:
            stats.cancelled_markets += 1
        elif record.resolved:
            stats.resolved_markets += 1
        elif active:
            stats.active_markets += 1

        for token, pool in record.pools.items():
            volume[token.value] += pool.total
        participants.update(record.participants)

        bucket = categories.setdefault(record.category, CategoryStats(category=record.category))
        bucket.total += 1
        if active:
            bucket.active += 1
            if now <= record.deadline <= now + _DAY_SECONDS:
                stats.ending_within_24h += 1
        if record.created_at >= now - 7 * _DAY_SECONDS:
            stats.created_last_7d += 1

    stats.volume_by_token = dict(volume)
    stats.unique_participants = len(participants)
    if stats.total_markets:
        stats.resolution_rate = stats.resolved_markets / stats.total_markets
    stats.categories = sorted(categories.values(), key=lambda item: (-item.active, -item.total, item.category))
    if stats.categories and stats.categories[0].active > 0:
        stats.top_category = stats.categories[0].category
    return stats


class StatsAggregator:
    """Serve ``MarketStats`` from the ``stats:compact`` snapshot, recomputing after its TTL."""

    def __init__(
        self,
        repository: MarketRepository,
        *,
        ttl: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._ttl = ttl
        self._clock = clock

    def get_stats(self, *, force: bool = False) -> MarketStats:
        store = self._repository.store
        if not force:
            cached = store.get(CacheKeys.STATS)
            if cached:
                return MarketStats.from_dict(cached)

        stats = compute_stats(self._repository.iter_markets(), self._clock())
        try:
            store.set(CacheKeys.STATS, stats.to_dict(), ttl=self._ttl)
        except CacheWriteError as exc:
            logger.warning("Failed to cache stats snapshot: {}", exc)
        return stats

    def invalidate(self) -> None:
        self._repository.store.delete(CacheKeys.STATS)


__all__ = ["CategoryStats", "MarketStats", "StatsAggregator", "compute_stats"]
