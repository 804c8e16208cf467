#!/usr/bin/env python3
"""
Scripts - Rebuild Trades.

============================================================
USAGE
============================================================
    python scripts/rebuild_trades.py --user u-1
    python scripts/rebuild_trades.py --user u-1 --user u-2 --full
    python scripts/rebuild_trades.py --all-users --create-tables

Options:
  --user            User to rebuild (repeatable)
  --all-users       Rebuild every user that has orders
  --full            Clear and rebuild from all orders
  --database-url    Override DATABASE_URL
  --create-tables   Create tables before running
  --log-level       Logging level

Exit code is 1 when any user had failed groups.

============================================================
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from trade_builder import (
    BatchRebuildResult,
    RebuildController,
    RebuildScope,
    TradeBuilderConfig,
    TradeRepository,
)
from trade_builder.database import (
    create_engine_from_config,
    create_session_factory,
    init_models,
)


logger = logging.getLogger("scripts.rebuild_trades")


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================
# ARGUMENTS
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rebuild trades from stored orders",
    )
    parser.add_argument(
        "--user",
        action="append",
        default=[],
        dest="users",
        help="User to rebuild (repeatable)",
    )
    parser.add_argument("--all-users", action="store_true", help="Rebuild every user with orders")
    parser.add_argument("--full", action="store_true", help="Clear and rebuild from all orders")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--create-tables", action="store_true", help="Create tables first")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.users and not args.all_users:
        parser.error("give at least one --user, or --all-users")
    return args


# ============================================================
# SUMMARY
# ============================================================

def format_summary(batch: BatchRebuildResult) -> List[str]:
    """One line per user, then one line per failed group or error."""
    lines = []
    for user_id, result in sorted(batch.results.items()):
        status = "FAILED" if result.has_failures else "OK"
        lines.append(
            f"{user_id}: {status} | {result.orders_processed} orders | "
            f"{len(result.trades)} trades written | "
            f"{len(result.replaced_trade_ids)} replaced"
        )
        for problem in result.problems:
            if problem.is_fatal:
                lines.append(f"  {problem.group}: {problem.code} {problem.message}")
    for user_id, error in sorted(batch.errors.items()):
        code = getattr(error, "code", None) or type(error).__name__
        lines.append(f"{user_id}: ERROR | {code} {error}")
    for user_id in batch.cancelled:
        lines.append(f"{user_id}: CANCELLED")
    return lines


# ============================================================
# MAIN
# ============================================================

async def run(args: argparse.Namespace) -> int:
    """
    Run the rebuild job.

    Returns:
        Process exit code
    """
    config = TradeBuilderConfig.from_env()
    if args.database_url:
        config.database.url = args.database_url

    engine = create_engine_from_config(config.database)
    cancel_event = asyncio.Event()

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        logger.debug("Signal handlers not supported, Ctrl+C aborts immediately")

    try:
        if args.create_tables:
            await init_models(engine)

        repository = TradeRepository(create_session_factory(engine))
        controller = RebuildController(repository, config)

        users = list(args.users)
        if args.all_users:
            users.extend(await repository.fetch_user_ids())

        scope = RebuildScope.FULL if args.full else RebuildScope.INCREMENTAL
        batch = await controller.rebuild_users(users, scope, cancel_event=cancel_event)

        for line in format_summary(batch):
            print(line)

        return 1 if batch.has_failures else 0
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
