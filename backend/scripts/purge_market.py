import argparse
import sys

from loguru import logger

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db import SessionLocal, init_db
from app.domain import ContractVersion, parse_market_key
from app.repositories import CacheKeys, CacheStore, MarketRepository
from app.services.stats_service import StatsAggregator


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove a market, its indexes and stakes from the cache")
    parser.add_argument("market", help="Version-tagged market key (pred_v2_7) or numeric id with --version")
    parser.add_argument("--version", choices=["v1", "v2"], default=None, help="Contract version for numeric ids")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be removed without deleting")
    return parser.parse_args(argv)


def _resolve(args: argparse.Namespace) -> tuple[ContractVersion, int]:
    if args.market.isdigit():
        if not args.version:
            raise SystemExit("--version is required when passing a numeric id")
        return ContractVersion(args.version), int(args.market)
    try:
        return parse_market_key(args.market)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()

    version, numeric_id = _resolve(args)
    store = CacheStore(SessionLocal)
    repository = MarketRepository(store)
    record = repository.get_market_by_id(version, numeric_id)
    if record is None:
        logger.warning("Market {}:{} is not cached; nothing to purge", version.value, numeric_id)
        return 1

    if args.dry_run:
        stakes = repository.stakes_for_market(record.key)
        logger.info(
            "Dry run: would purge {} ({}) and {} stake records",
            record.key,
            CacheKeys.market(version, numeric_id),
            len(stakes),
        )
        return 0

    with store.lock(CacheKeys.market_lock(version, numeric_id), ttl=settings.lock_ttl_seconds, wait=settings.lock_wait_seconds):
        repository.purge_market(version, numeric_id)
    StatsAggregator(repository, ttl=settings.stats_ttl_seconds).invalidate()
    return 0


if __name__ == "__main__":
    sys.exit(main())
