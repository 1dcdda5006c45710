"""Command-line entry point.

Usage:
    python -m solana_wallet_analyzer run
    python -m solana_wallet_analyzer init-db
    python -m solana_wallet_analyzer sweep
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from solana_wallet_analyzer.analysis.retention import RetentionSweeper
from solana_wallet_analyzer.config import Settings, get_settings
from solana_wallet_analyzer.service import AnalyzerService
from solana_wallet_analyzer.storage.database import DatabaseManager

logger = logging.getLogger("solana_wallet_analyzer")


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
        logger.info("Database schema created")
    finally:
        await db.dispose_async()


async def _sweep(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        stats = await RetentionSweeper(db, settings.retention).sweep()
        logger.info("Sweep removed %d rows", stats.total)
    finally:
        await db.dispose_async()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="solana_wallet_analyzer", description="Solana wallet trade-history analyzer")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the queue manager and analysis workers until interrupted")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("sweep", help="Run one retention sweep and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    logger.info("Settings: %s", settings.redacted_summary())
    try:
        if args.command == "run":
            asyncio.run(AnalyzerService(settings).run())
        elif args.command == "init-db":
            asyncio.run(_init_db(settings))
        elif args.command == "sweep":
            asyncio.run(_sweep(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
