"""Named sync strategies that keep the cache consistent with the ledger."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from loguru import logger

from app.core.config import Settings
from app.domain import (
    VERSION_TOKEN_TYPES,
    ContractVersion,
    MarketStatus,
    StakePosition,
    StakeRecord,
    TokenType,
    market_key,
    normalize_address,
    parse_market_key,
)
from app.domain.reconcile import ClaimAnomaly, reconcile_claims
from app.errors import (
    CacheWriteError,
    ChainReadError,
    DataShapeError,
    LockUnavailable,
    PermanentReadError,
    ProviderUnavailable,
    RunAborted,
    StoreUnavailable,
    SyncError,
    TransientProviderError,
)
from app.repositories import CacheKeys, CacheStore, MarketRepository, SyncCursor
from app.services.stats_service import StatsAggregator
from chain.normalize import (
    StableMarketTuple,
    canonicalize_market,
    parse_stable_market,
    parse_stake_tuple,
    validate_market_tuple,
)
from chain.reader import ChainReader, Web3ChainReader, market_ids_from_logs
from chain.retry import RetryingChainReader, RetryPolicy


class SyncStrategy(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RECENT = "recent"
    ACTIVE = "active"
    TARGETED = "targeted"
    CLAIMS = "claims"
    RESOLVED = "resolved"
    MISSING = "missing"
    LOGS = "logs"


@dataclass(slots=True)
class IdFailure:
    numeric_id: int
    error: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.numeric_id, "error": self.error, "message": self.message}


@dataclass(slots=True)
class SyncSummary:
    run_id: str
    strategy: SyncStrategy
    version: ContractVersion
    started_at: float
    finished_at: float | None = None
    requested: int = 0
    synced: int = 0
    stakes_written: int = 0
    claims_updated: int = 0
    skipped: list[IdFailure] = field(default_factory=list)
    failures: list[IdFailure] = field(default_factory=list)
    flagged: list[IdFailure] = field(default_factory=list)
    locked: list[int] = field(default_factory=list)
    anomalies: list[ClaimAnomaly] = field(default_factory=list)
    cursor_before: int | None = None
    cursor_after: int | None = None
    aborted: bool = False
    abort_reason: str | None = None
    cancelled: bool = False

    @property
    def errors(self) -> int:
        return len(self.skipped) + len(self.failures) + len(self.flagged) + len(self.locked)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "strategy": self.strategy.value,
            "version": self.version.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "requested": self.requested,
            "synced": self.synced,
            "errors": self.errors,
            "stakes_written": self.stakes_written,
            "claims_updated": self.claims_updated,
            "skipped": [item.to_dict() for item in self.skipped],
            "failures": [item.to_dict() for item in self.failures],
            "flagged": [item.to_dict() for item in self.flagged],
            "locked": list(self.locked),
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "cancelled": self.cancelled,
        }


@dataclass(slots=True)
class FetchedMarket:
    """Chain state for one id, gathered before the cache write."""

    raw: Sequence[Any]
    participants: list[str]
    stable: StableMarketTuple | None
    positions: dict[str, dict[TokenType, StakePosition]] = field(default_factory=dict)
    known_owners: set[str] = field(default_factory=set)


Fetcher = Callable[[ContractVersion, int], Any]
Writer = Callable[[SyncSummary, ContractVersion, int, Any], None]


class SyncOrchestrator:
    """Coordinate chain reads, canonical mapping and cache upserts per strategy.

    Chain reads for a batch may run on a small thread pool; every cache
    read-merge-write happens on the calling thread while holding the
    per-market advisory lock.
    """

    def __init__(
        self,
        reader: ChainReader,
        repository: MarketRepository,
        cursor: SyncCursor,
        *,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        stats: StatsAggregator | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.reader = reader
        self.repository = repository
        self.cursor = cursor
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._stats = stats
        self._cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # Public strategies

    def cancel(self) -> None:
        """Stop the current run before its next id; the cursor stays resumable."""

        self._cancel_event.set()

    def run(self, strategy: SyncStrategy | str, version: ContractVersion | str, **params: Any) -> SyncSummary:
        strategy = SyncStrategy(strategy)
        version = ContractVersion(version)
        handlers: dict[SyncStrategy, Callable[..., SyncSummary]] = {
            SyncStrategy.FULL: self.full_sync,
            SyncStrategy.INCREMENTAL: self.incremental_sync,
            SyncStrategy.RECENT: self.recent_window_sync,
            SyncStrategy.ACTIVE: self.active_only_sync,
            SyncStrategy.TARGETED: self.targeted_sync,
            SyncStrategy.CLAIMS: self.claim_reconciliation,
            SyncStrategy.RESOLVED: self.resolved_sync,
            SyncStrategy.MISSING: self.missing_sync,
            SyncStrategy.LOGS: self.log_hinted_sync,
        }
        return handlers[strategy](version, **params)

    def full_sync(self, version: ContractVersion) -> SyncSummary:
        summary = self._start(SyncStrategy.FULL, version)
        count = self._run_level(summary, lambda: self.reader.read_entity_count(version))
        summary.cursor_before = self._run_level(summary, lambda: self.cursor.get(version))
        return self._execute(summary, range(1, count), self._fetch_market, self._write_market, advance_cursor=True)

    def incremental_sync(self, version: ContractVersion) -> SyncSummary:
        summary = self._start(SyncStrategy.INCREMENTAL, version)
        summary.cursor_before = self._run_level(summary, lambda: self.cursor.get(version))
        count = self._run_level(summary, lambda: self.reader.read_entity_count(version))
        ids = range(summary.cursor_before + 1, count)
        return self._execute(summary, ids, self._fetch_market, self._write_market, advance_cursor=True)

    def recent_window_sync(self, version: ContractVersion, count: int | None = None) -> SyncSummary:
        window = count or self.settings.recent_window_size
        summary = self._start(SyncStrategy.RECENT, version)
        next_id = self._run_level(summary, lambda: self.reader.read_entity_count(version))
        ids = range(max(1, next_id - window), next_id)
        return self._execute(summary, ids, self._fetch_market, self._write_market)

    def active_only_sync(self, version: ContractVersion) -> SyncSummary:
        summary = self._start(SyncStrategy.ACTIVE, version)
        now = self._clock()
        records = self._run_level(
            summary,
            lambda: self.repository.get_markets(
                self.repository.market_keys(version=version, statuses=[MarketStatus.ACTIVE])
            ),
        )
        ids = [record.numeric_id for record in records if record.is_active_at(now)]
        return self._execute(summary, ids, self._fetch_market_only, self._write_market)

    def targeted_sync(self, version: ContractVersion, numeric_id: int) -> SyncSummary:
        if numeric_id < 1:
            raise ValueError("Market ids start at 1")
        summary = self._start(SyncStrategy.TARGETED, version)
        return self._execute(summary, [numeric_id], self._fetch_market, self._write_market)

    def claim_reconciliation(self, version: ContractVersion) -> SyncSummary:
        summary = self._start(SyncStrategy.CLAIMS, version)
        keys = self._run_level(
            summary,
            lambda: self.repository.market_keys(
                version=version, statuses=[MarketStatus.RESOLVED, MarketStatus.CANCELLED]
            ),
        )
        ids = sorted(parse_market_key(key)[1] for key in keys)
        return self._execute(summary, ids, self._fetch_claims, self._write_claims)

    def resolved_sync(self, version: ContractVersion, limit: int | None = None) -> SyncSummary:
        summary = self._start(SyncStrategy.RESOLVED, version)
        cap = limit or self.settings.resolved_sync_limit
        keys = self._run_level(
            summary,
            lambda: self.repository.market_keys(
                version=version, statuses=[MarketStatus.RESOLVED, MarketStatus.CANCELLED]
            ),
        )
        ids = sorted((parse_market_key(key)[1] for key in keys), reverse=True)[:cap]
        return self._execute(summary, ids, self._fetch_market, self._write_market)

    def missing_sync(self, version: ContractVersion) -> SyncSummary:
        summary = self._start(SyncStrategy.MISSING, version)
        count = self._run_level(summary, lambda: self.reader.read_entity_count(version))
        synced = self._run_level(summary, lambda: self.repository.synced_ids(version))
        ids = [numeric_id for numeric_id in range(1, count) if numeric_id not in synced]
        return self._execute(summary, ids, self._fetch_market, self._write_market)

    def log_hinted_sync(
        self,
        version: ContractVersion,
        from_block: int,
        to_block: int | None = None,
    ) -> SyncSummary:
        """Re-read every market referenced by logs in the block range.

        Logs only nominate ids; the cached record always comes from view-calls.
        """

        summary = self._start(SyncStrategy.LOGS, version)
        if to_block is None:
            to_block = self._run_level(summary, self.reader.latest_block)
        logs = self._run_level(
            summary, lambda: self.reader.read_event_logs(version, from_block, to_block)
        )
        ids = market_ids_from_logs(logs)
        logger.info(
            "Logs {}-{} on {} reference {} markets", from_block, to_block, version.value, len(ids)
        )
        return self._execute(summary, ids, self._fetch_market, self._write_market)

    # ------------------------------------------------------------------
    # Run scaffolding

    def _start(self, strategy: SyncStrategy, version: ContractVersion) -> SyncSummary:
        self._cancel_event.clear()
        summary = SyncSummary(
            run_id=uuid4().hex,
            strategy=strategy,
            version=version,
            started_at=self._clock(),
        )
        logger.info("Starting {} sync run={} version={}", strategy.value, summary.run_id, version.value)
        self._run_level(summary, self.repository.store.ping)
        return summary

    def _abort(self, summary: SyncSummary, reason: str) -> RunAborted:
        summary.aborted = True
        summary.abort_reason = reason
        summary.finished_at = self._clock()
        logger.error(
            "Aborting {} sync run={} version={}: {}",
            summary.strategy.value,
            summary.run_id,
            summary.version.value,
            reason,
        )
        return RunAborted(reason, summary=summary)

    def _run_level(self, summary: SyncSummary, func: Callable[[], Any]) -> Any:
        """Run a read the whole run depends on; any failure aborts the run."""

        try:
            return func()
        except (ChainReadError, StoreUnavailable, CacheWriteError, LockUnavailable) as exc:
            raise self._abort(summary, f"{exc.__class__.__name__}: {exc}") from exc

    def _fetch_stream(
        self, version: ContractVersion, ids: Sequence[int], fetch: Fetcher
    ) -> Iterator[tuple[int, Any]]:
        def capture(numeric_id: int) -> tuple[int, Any]:
            try:
                return numeric_id, fetch(version, numeric_id)
            except Exception as exc:  # noqa: BLE001
                return numeric_id, exc

        concurrency = self.settings.sync_concurrency
        if concurrency <= 1:
            delay = self.settings.sync_inter_call_delay_seconds
            for index, numeric_id in enumerate(ids):
                if index and delay:
                    self._sleep(delay)
                yield capture(numeric_id)
            return

        executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="sync-fetch")
        try:
            yield from executor.map(capture, ids)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _execute(
        self,
        summary: SyncSummary,
        ids: Iterable[int],
        fetch: Fetcher,
        write: Writer,
        *,
        advance_cursor: bool = False,
    ) -> SyncSummary:
        version = summary.version
        id_list = list(ids)
        summary.requested = len(id_list)
        limit = self.settings.consecutive_failure_limit
        consecutive_transient = 0
        cursor_blocked = False
        cursor_floor = summary.cursor_before or 0

        stream = self._fetch_stream(version, id_list, fetch)
        try:
            for numeric_id, fetched in stream:
                if self._cancel_event.is_set():
                    summary.cancelled = True
                    logger.info("Sync run={} cancelled before id {}", summary.run_id, numeric_id)
                    break

                key = market_key(version, numeric_id)
                try:
                    if isinstance(fetched, Exception):
                        raise fetched
                    write(summary, version, numeric_id, fetched)
                except (ProviderUnavailable, StoreUnavailable) as exc:
                    raise self._abort(summary, f"{exc.__class__.__name__}: {exc}") from exc
                except TransientProviderError as exc:
                    consecutive_transient += 1
                    cursor_blocked = True
                    summary.failures.append(IdFailure(numeric_id, exc.__class__.__name__, str(exc)))
                    logger.warning("Transient failure for {}: {}", key, exc)
                    if consecutive_transient >= limit:
                        raise self._abort(
                            summary,
                            f"{consecutive_transient} consecutive transient provider failures",
                        ) from exc
                    continue
                except PermanentReadError as exc:
                    summary.skipped.append(IdFailure(numeric_id, exc.__class__.__name__, str(exc)))
                    logger.warning("Skipping {}: {}", key, exc)
                except DataShapeError as exc:
                    cursor_blocked = True
                    summary.flagged.append(IdFailure(numeric_id, exc.__class__.__name__, str(exc)))
                    logger.error("Unexpected tuple shape for {}; flagged for manual review: {}", key, exc)
                except LockUnavailable as exc:
                    cursor_blocked = True
                    summary.locked.append(numeric_id)
                    logger.info("Skipping {} this run; {}", key, exc)
                except CacheWriteError as exc:
                    cursor_blocked = True
                    summary.failures.append(IdFailure(numeric_id, exc.__class__.__name__, str(exc)))
                    logger.warning("Cache write failed for {}; retried next run: {}", key, exc)
                except Exception as exc:  # noqa: BLE001
                    cursor_blocked = True
                    summary.failures.append(IdFailure(numeric_id, exc.__class__.__name__, str(exc)))
                    logger.exception("Unexpected failure syncing {}", key)
                else:
                    summary.synced += 1
                consecutive_transient = 0

                if advance_cursor and not cursor_blocked and numeric_id > cursor_floor:
                    self._advance_cursor(summary, numeric_id)
                    if summary.cursor_after != numeric_id:
                        cursor_blocked = True
        finally:
            stream.close()

        self._finish(summary)
        return summary

    def _advance_cursor(self, summary: SyncSummary, numeric_id: int) -> None:
        try:
            summary.cursor_after = self.cursor.advance(summary.version, numeric_id)
        except StoreUnavailable as exc:
            raise self._abort(summary, f"{exc.__class__.__name__}: {exc}") from exc
        except (SyncError, ValueError) as exc:
            logger.warning("Cursor for {} not advanced to {}: {}", summary.version.value, numeric_id, exc)

    def _finish(self, summary: SyncSummary) -> None:
        summary.finished_at = self._clock()
        if summary.cursor_after is None and summary.cursor_before is not None:
            summary.cursor_after = summary.cursor_before
        if self._stats is not None and (summary.synced or summary.claims_updated):
            try:
                self._stats.invalidate()
            except SyncError as exc:
                logger.warning("Failed to invalidate stats snapshot: {}", exc)
        logger.info(
            "Finished {} sync run={} version={} requested={} synced={} skipped={} failed={} flagged={} locked={} claims_updated={}",
            summary.strategy.value,
            summary.run_id,
            summary.version.value,
            summary.requested,
            summary.synced,
            len(summary.skipped),
            len(summary.failures),
            len(summary.flagged),
            len(summary.locked),
            summary.claims_updated,
        )

    # ------------------------------------------------------------------
    # Per-id bodies

    def _tokens_for(self, version: ContractVersion, stable: StableMarketTuple | None) -> list[TokenType]:
        tokens = list(VERSION_TOKEN_TYPES[version])
        if not (stable and stable.registered):
            tokens = [token for token in tokens if token is not TokenType.USDC]
        return tokens

    def _read_market_core(self, version: ContractVersion, numeric_id: int) -> FetchedMarket:
        raw = self.reader.read_market(version, numeric_id)
        validate_market_tuple(version, numeric_id, raw)
        participants = [normalize_address(address) for address in self.reader.read_participants(version, numeric_id)]
        stable = None
        if TokenType.USDC in VERSION_TOKEN_TYPES[version]:
            stable = parse_stable_market(self.reader.read_stable_market(numeric_id))
        if stable is not None and stable.registered:
            # USDC-only stakers are listed on the dual-pool contract alone.
            for address in self.reader.read_stable_participants(numeric_id):
                address = normalize_address(address)
                if address not in participants:
                    participants.append(address)
        return FetchedMarket(raw=raw, participants=participants, stable=stable)

    def _fetch_market_only(self, version: ContractVersion, numeric_id: int) -> FetchedMarket:
        return self._read_market_core(version, numeric_id)

    def _fetch_market(self, version: ContractVersion, numeric_id: int) -> FetchedMarket:
        fetched = self._read_market_core(version, numeric_id)
        key = market_key(version, numeric_id)
        fetched.known_owners = {stake.owner for stake in self.repository.stakes_for_market(key)}
        owners = sorted(set(fetched.participants) | fetched.known_owners)
        tokens = self._tokens_for(version, fetched.stable)
        for owner in owners:
            fetched.positions[owner] = {
                token: parse_stake_tuple(token, self.reader.read_stake(version, numeric_id, owner, token))
                for token in tokens
            }
        return fetched

    def _market_lock(self, version: ContractVersion, numeric_id: int):
        return self.repository.store.lock(
            CacheKeys.market_lock(version, numeric_id),
            ttl=self.settings.lock_ttl_seconds,
            wait=self.settings.lock_wait_seconds,
        )

    def _write_market(
        self, summary: SyncSummary, version: ContractVersion, numeric_id: int, fetched: FetchedMarket
    ) -> None:
        key = market_key(version, numeric_id)
        stakers = [
            owner
            for owner, positions in fetched.positions.items()
            if any(position.total > 0 for position in positions.values())
        ]
        with self._market_lock(version, numeric_id):
            previous = self.repository.get_market_by_id(version, numeric_id)
            if not fetched.positions and previous is not None:
                # Market-only refreshes keep stakers learned by earlier full reads.
                stakers = [
                    stake.owner for stake in self.repository.stakes_for_market(key) if stake.has_stake
                ]
            record = canonicalize_market(
                version,
                numeric_id,
                fetched.raw,
                participants=fetched.participants,
                stakers=stakers,
                stable=fetched.stable,
                previous=previous,
                resolution_grace=self.settings.resolution_grace_seconds,
            )
            self.repository.save_market(record, previous)

            for owner, positions in sorted(fetched.positions.items()):
                stake = StakeRecord(owner=owner, market_key=key, positions=positions)
                if not stake.has_stake and owner not in fetched.known_owners:
                    continue
                result = self.repository.save_stake(stake)
                summary.stakes_written += 1
                summary.claims_updated += len(result.flipped) if owner in fetched.known_owners else 0
                summary.anomalies.extend(result.anomalies)

    def _fetch_claims(
        self, version: ContractVersion, numeric_id: int
    ) -> dict[str, dict[TokenType, StakePosition]]:
        key = market_key(version, numeric_id)
        record = self.repository.get_market_by_id(version, numeric_id)
        allowed = set(VERSION_TOKEN_TYPES[version])
        if record is None or not record.stable_pool_registered:
            allowed.discard(TokenType.USDC)

        chain_positions: dict[str, dict[TokenType, StakePosition]] = {}
        for stake in self.repository.stakes_for_market(key):
            if not stake.unclaimed_tokens():
                continue
            chain_positions[stake.owner] = {
                token: parse_stake_tuple(token, self.reader.read_stake(version, numeric_id, stake.owner, token))
                for token in sorted(stake.positions)
                if token in allowed
            }
        return chain_positions

    def _write_claims(
        self,
        summary: SyncSummary,
        version: ContractVersion,
        numeric_id: int,
        chain_positions: dict[str, dict[TokenType, StakePosition]],
    ) -> None:
        if not chain_positions:
            return
        key = market_key(version, numeric_id)
        with self._market_lock(version, numeric_id):
            for owner, positions in sorted(chain_positions.items()):
                cached = self.repository.get_stake(owner, key)
                if cached is None:
                    continue
                result = reconcile_claims(cached, positions)
                summary.anomalies.extend(result.anomalies)
                if not result.changed:
                    continue
                self.repository.save_stake(result.record)
                summary.stakes_written += 1
                summary.claims_updated += len(result.flipped)
                logger.info(
                    "Claim flags flipped for owner={} market={} tokens={}",
                    owner,
                    key,
                    [token.value for token in result.flipped],
                )


def create_orchestrator(
    settings: Settings,
    *,
    session_factory: Callable[[], Any] | None = None,
    reader: ChainReader | None = None,
    clock: Callable[[], float] = time.time,
) -> SyncOrchestrator:
    """Wire the web3 reader, retry policy, cache store and stats for one process."""

    from app.db import SessionLocal

    store = CacheStore(session_factory or SessionLocal, clock=clock)
    repository = MarketRepository(store)
    cursor = SyncCursor(store, lock_ttl=settings.lock_ttl_seconds, lock_wait=settings.lock_wait_seconds)
    if reader is None:
        reader = RetryingChainReader(Web3ChainReader.from_settings(settings), RetryPolicy.from_settings(settings))
    stats = StatsAggregator(repository, ttl=settings.stats_ttl_seconds, clock=clock)
    return SyncOrchestrator(reader, repository, cursor, settings=settings, clock=clock, stats=stats)


__all__ = ["IdFailure", "SyncOrchestrator", "SyncStrategy", "SyncSummary", "create_orchestrator"]
