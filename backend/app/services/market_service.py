"""Read-side facade over the cache used by the API and scheduled jobs."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Sequence

from loguru import logger

from app.domain import ContractVersion, MarketRecord, StakeRecord, normalize_address, parse_market_key
from app.errors import RunAborted
from app.repositories import MarketFilter, MarketRepository

from .stats_service import MarketStats, StatsAggregator


@dataclass(slots=True)
class MarketQueryResult:
    total: int
    markets: Sequence[MarketRecord]


@dataclass(slots=True)
class SyncOutcome:
    summary: dict[str, Any]
    aborted: bool = False


class MarketService:
    """Serve cached markets, stakes and stats; never reads the chain directly.

    A market that has not been synced yet is indistinguishable from one that
    does not exist.
    """

    def __init__(
        self,
        repository: MarketRepository,
        *,
        stats: StatsAggregator | None = None,
        orchestrator_factory: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._stats = stats or StatsAggregator(repository, clock=clock)
        self._orchestrator_factory = orchestrator_factory
        self._clock = clock

    def get_market(self, key: str) -> MarketRecord | None:
        try:
            parse_market_key(key)
        except ValueError:
            return None
        return self._repository.get_market(key)

    def list_markets(self, query: MarketFilter, *, active_only: bool = False) -> MarketQueryResult:
        if active_only and query.active_at is None:
            query.active_at = self._clock()
        markets, total = self._repository.list_markets(query)
        return MarketQueryResult(total=total, markets=markets)

    def get_stake(self, owner: str, key: str) -> StakeRecord | None:
        try:
            parse_market_key(key)
        except ValueError:
            return None
        return self._repository.get_stake(normalize_address(owner), key)

    def list_user_stakes(self, owner: str) -> list[StakeRecord]:
        return self._repository.stakes_for_owner(owner)

    def get_stats(self, *, force: bool = False) -> MarketStats:
        return self._stats.get_stats(force=force)

    def trigger_sync(
        self, strategy: str, version: ContractVersion | str, **params: Any
    ) -> SyncOutcome:
        """Run one sync strategy synchronously and return its summary."""

        if self._orchestrator_factory is None:
            raise RuntimeError("Sync is not configured for this service")
        orchestrator = self._orchestrator_factory()
        try:
            summary = orchestrator.run(strategy, version, **params)
        except RunAborted as exc:
            logger.error("Triggered {} sync aborted: {}", strategy, exc)
            payload = exc.summary.to_dict() if exc.summary is not None else {"abort_reason": str(exc)}
            return SyncOutcome(summary=payload, aborted=True)
        return SyncOutcome(summary=summary.to_dict())


__all__ = ["MarketQueryResult", "MarketService", "SyncOutcome"]
