from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db import init_db
from app.errors import RunAborted

from .orchestrator import SyncOrchestrator, SyncStrategy, create_orchestrator


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run one cache sync strategy against the ledger")
    parser.add_argument(
        "strategy",
        choices=[strategy.value for strategy in SyncStrategy],
        help="Sync strategy to execute",
    )
    parser.add_argument(
        "--version",
        choices=["v1", "v2"],
        default="v2",
        help="Contract schema version to sync",
    )
    parser.add_argument("--id", type=int, default=None, help="Market id for the targeted strategy")
    parser.add_argument(
        "--count",
        type=int,
        default=settings.recent_window_size,
        help="Trailing window size for the recent strategy",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.resolved_sync_limit,
        help="Maximum markets re-read by the resolved strategy",
    )
    parser.add_argument("--from-block", type=int, default=None, help="First block for the logs strategy")
    parser.add_argument("--to-block", type=int, default=None, help="Last block for the logs strategy (default: latest)")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _strategy_params(args: argparse.Namespace) -> dict[str, Any]:
    strategy = SyncStrategy(args.strategy)
    if strategy is SyncStrategy.TARGETED:
        if args.id is None:
            raise SystemExit("--id is required for the targeted strategy")
        return {"numeric_id": args.id}
    if strategy is SyncStrategy.RECENT:
        return {"count": args.count}
    if strategy is SyncStrategy.RESOLVED:
        return {"limit": args.limit}
    if strategy is SyncStrategy.LOGS:
        if args.from_block is None:
            raise SystemExit("--from-block is required for the logs strategy")
        return {"from_block": args.from_block, "to_block": args.to_block}
    return {}


def run_sync(
    args: argparse.Namespace,
    settings: Settings,
    *,
    orchestrator_factory: Callable[[Settings], SyncOrchestrator] = create_orchestrator,
) -> int:
    """Execute the requested strategy, print its summary and return the exit code."""

    params = _strategy_params(args)
    orchestrator = orchestrator_factory(settings)

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.warning("Received signal {}; stopping after the current id", signum)
        orchestrator.cancel()

    previous_handler = signal.signal(signal.SIGTERM, _request_stop)
    exit_code = 0
    try:
        summary = orchestrator.run(args.strategy, args.version, **params)
        payload = summary.to_dict()
    except RunAborted as exc:
        payload = exc.summary.to_dict() if exc.summary is not None else {"aborted": True, "abort_reason": str(exc)}
        exit_code = 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    rendered = json.dumps(payload, indent=2, sort_keys=True)
    print(rendered)
    if args.summary_path:
        args.summary_path.parent.mkdir(parents=True, exist_ok=True)
        args.summary_path.write_text(rendered, encoding="utf-8")
        logger.info("Wrote sync summary to {}", args.summary_path)
    return exit_code


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    sys.exit(run_sync(args, settings))


if __name__ == "__main__":
    main()
