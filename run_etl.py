#!/usr/bin/env python3
"""
TikTok Shop Ledger Sync Runner

One-shot CLI for syncing connections and reconciling the ledger.
Designed for cron or manual use on a server, with file logging and an exit
code reflecting the outcome.

Usage:
    python run_etl.py --connection ID                        # Incremental sync, all entities
    python run_etl.py --connection ID --sync-type orders     # Sync one entity type
    python run_etl.py --connection ID --full-sync            # Re-pull the last 365 days
    python run_etl.py --connection ID --start 2026-01-01 --end 2026-01-31
    python run_etl.py --reconcile --connection ID --start 2026-01-01 --end 2026-01-31 --fee-percent 9
    python run_etl.py --all-connections                      # Sync + reconcile everything
"""

import argparse
import logging
import os
import sys
from datetime import date, datetime
from typing import Dict, Optional

from src.config.loader import ConfigurationError, get_platform_fee_percent, validate_config
from src.jobs.ledger_reconcile import reconcile
from src.jobs.tiktok_sync import SYNC_TYPES, start_sync, sync_all_connections
from src.utils.time_windows import SyncWindow, day_window

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure console and file logging for production runs."""
    os.makedirs("logs", exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('logs/etl.log', mode='a')
        ]
    )


class ETLRunner:
    """Runs sync and reconcile operations with error handling and reporting."""

    def run_sync(
        self,
        connection_id: str,
        sync_type: str = "all",
        window: Optional[SyncWindow] = None,
        full_sync: bool = False,
    ) -> Dict:
        """Sync a single connection."""
        logger.info(f"Starting {sync_type} sync for connection {connection_id}")
        start_time = datetime.now()

        outcome = start_sync(connection_id, sync_type, window, full_sync)
        duration = (datetime.now() - start_time).total_seconds()

        if outcome.get("success"):
            logger.info(f"✅ Sync of {connection_id} completed in {duration:.1f}s: {outcome['results']}")
        else:
            logger.error(f"❌ Sync of {connection_id} failed after {duration:.1f}s: {outcome.get('error') or outcome.get('status')}")

        return {**outcome, "duration": duration}

    def run_reconcile(
        self, connection_id: str, window: SyncWindow, fee_percent: Optional[float] = None
    ) -> Dict:
        """Reconcile the ledger of a single connection."""
        logger.info(f"Starting ledger reconcile for connection {connection_id}")
        start_time = datetime.now()

        outcome = reconcile(connection_id, window, fee_percent)
        duration = (datetime.now() - start_time).total_seconds()

        if outcome.get("success"):
            logger.info(f"✅ Reconcile of {connection_id} updated {outcome['days_updated']} days in {duration:.1f}s")
        else:
            logger.error(f"❌ Reconcile of {connection_id} failed after {duration:.1f}s: {outcome['error']}")

        return {**outcome, "duration": duration}

    def run_all_connections(self) -> Dict:
        """Sync and reconcile every connection."""
        logger.info("🌟 Starting sync of all TikTok connections")
        start_time = datetime.now()

        outcomes = sync_all_connections()

        duration = (datetime.now() - start_time).total_seconds()
        successful = sum(1 for o in outcomes if o.get("success"))
        failed = len(outcomes) - successful

        logger.info(f"🏁 All connections completed: {successful} successful, {failed} failed in {duration:.1f}s")

        return {
            "duration": duration,
            "connections": outcomes,
            "summary": {"successful": successful, "failed": failed, "total": len(outcomes)},
        }


def parse_date(value: str) -> date:
    """argparse type for YYYY-MM-DD dates."""
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TikTok Shop Ledger Sync Runner")

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--connection', help='Connection id to sync (or reconcile with --reconcile)')
    group.add_argument('--all-connections', action='store_true', help='Sync and reconcile every connection')

    parser.add_argument('--sync-type', default='all', choices=SYNC_TYPES, help='Entity type to sync')
    parser.add_argument('--full-sync', action='store_true', help='Re-pull the last 365 days')
    parser.add_argument('--reconcile', action='store_true', help='Reconcile the ledger instead of syncing')
    parser.add_argument('--start', type=parse_date, help='First day (YYYY-MM-DD, UTC)')
    parser.add_argument('--end', type=parse_date, help='Last day, inclusive (YYYY-MM-DD, UTC)')
    parser.add_argument('--fee-percent', type=float, help='Estimated platform fee percent')
    parser.add_argument('--log-level', default='INFO', help='Logging level')

    return parser


def main(argv=None) -> int:
    """CLI entry point for the runner."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if (args.start is None) != (args.end is None):
        parser.error("--start and --end must be given together")
    if args.reconcile and (args.connection is None or args.start is None):
        parser.error("--reconcile requires --connection, --start and --end")
    if args.start and args.end < args.start:
        parser.error("--end must not be before --start")

    setup_logging(args.log_level)

    try:
        validate_config()
    except ConfigurationError as e:
        logger.error(f"💥 {e}")
        return 1

    runner = ETLRunner()
    window = day_window(args.start, args.end) if args.start else None

    try:
        if args.all_connections:
            result = runner.run_all_connections()
            summary = result["summary"]
            print(f"\n📊 SUMMARY: {summary['successful']}/{summary['total']} connections successful")
            if summary["failed"] > 0:
                print(f"⚠️  {summary['failed']} connections failed - check logs for details")
                return 1
        elif args.reconcile:
            fee_percent = args.fee_percent if args.fee_percent is not None else get_platform_fee_percent()
            result = runner.run_reconcile(args.connection, window, fee_percent)
            if not result["success"]:
                return 1
        else:
            result = runner.run_sync(args.connection, args.sync_type, window, args.full_sync)
            if not result["success"]:
                return 1

        print("✅ Run completed successfully")
        return 0

    except Exception as e:
        logger.error(f"💥 Run failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
