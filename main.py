#!/usr/bin/env python3
"""
TikTok Shop Ledger Sync Service

Scheduler service that periodically syncs every TikTok connection and
reconciles its daily ledger, with an HTTP surface for health, metrics and
on-demand operations, and graceful shutdown handling.
"""

import argparse
import logging
import signal
import sys
import time
from datetime import UTC, datetime
from typing import Callable, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from src.config.loader import cfg, get_job_config, is_integration_enabled, load_config, validate_config
from src.jobs.tiktok_sync import sync_all_connections
from src.server import (
    record_job_error,
    record_job_start,
    record_job_success,
    record_reconcile_outcome,
    record_sync_results,
    set_scheduler_running,
    start_http_server,
)
from src.utils.time_windows import format_duration, utc_now

JOB_ID = "tiktok_sync"


# Configure structured logging
def setup_logging():
    """Setup structured logging based on configuration."""
    log_level = cfg("global.log_level", "INFO")
    log_format = cfg("global.log_format", "json")

    if log_format == "json":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        # Route stdlib records through structlog's JSON renderer
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=[
                    structlog.stdlib.add_logger_name,
                    structlog.stdlib.add_log_level,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.format_exc_info,
                ],
            )
        )
        logging.basicConfig(level=getattr(logging, log_level.upper()), handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[logging.StreamHandler(sys.stdout)],
            force=True,
        )

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[BackgroundScheduler] = None
http_thread = None


def create_job_runner() -> Callable:
    """
    Create the scheduled runner that syncs and reconciles every connection.

    Returns:
        Callable job runner function
    """
    def run_job():
        """Execute the sync with full observability."""
        start_time = record_job_start(JOB_ID)
        logger.info(f"Starting job {JOB_ID}")

        try:
            outcomes = sync_all_connections()
        except Exception as e:
            record_job_error(JOB_ID, start_time, str(e))
            duration = utc_now() - datetime.fromtimestamp(start_time, UTC)
            logger.error(
                f"Job {JOB_ID} failed after {format_duration(duration)}: {e}",
                exc_info=True
            )
            # Don't re-raise - we want the scheduler to continue
            return

        failed = [o["connection_id"] for o in outcomes if not o.get("success")]
        for outcome in outcomes:
            if outcome.get("success"):
                record_sync_results(outcome["results"])
                record_reconcile_outcome(outcome["reconcile"], start_time)

        if failed:
            record_job_error(JOB_ID, start_time, f"{len(failed)} connection(s) failed")
        else:
            record_job_success(JOB_ID, start_time)

        duration = utc_now() - datetime.fromtimestamp(start_time, UTC)
        logger.info(
            f"Job {JOB_ID} completed in {format_duration(duration)}: "
            f"{len(outcomes) - len(failed)} succeeded, {len(failed)} failed {failed or ''}"
        )

    return run_job


def setup_job_scheduler() -> BackgroundScheduler:
    """Setup and configure the job scheduler."""
    scheduler_config = {
        "timezone": cfg("global.timezone", "UTC"),
        "job_defaults": cfg("scheduler.job_defaults", {
            "coalesce": False,
            "max_instances": 1,
            "misfire_grace_time": 300
        })
    }

    scheduler = BackgroundScheduler(**scheduler_config)

    # Job execution event handlers
    def job_listener(event: JobExecutionEvent):
        """Handle job execution events."""
        if event.exception:
            logger.error(f"Job {event.job_id} failed: {event.exception}")
        else:
            logger.info(f"Job {event.job_id} completed successfully")

    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    return scheduler


def register_jobs(scheduler: BackgroundScheduler) -> int:
    """
    Register the TikTok sync job when enabled.

    Args:
        scheduler: APScheduler instance

    Returns:
        Number of jobs registered
    """
    if not is_integration_enabled("tiktok"):
        logger.info("tiktok integration disabled, skipping jobs")
        return 0

    job_config = get_job_config("tiktok", "sync")
    if not job_config.get("enabled", False):
        logger.info("tiktok sync job disabled")
        return 0

    schedule = job_config.get("schedule")
    if not schedule:
        logger.warning("No schedule configured for tiktok.sync")
        return 0

    cron_trigger = CronTrigger.from_crontab(schedule, timezone=cfg("global.timezone", "UTC"))
    scheduler.add_job(
        func=create_job_runner(),
        trigger=cron_trigger,
        id=JOB_ID,
        name="TikTok Shop Sync and Ledger Reconcile",
        replace_existing=True
    )

    logger.info(f"Registered job: {JOB_ID} with schedule: {schedule}")
    return 1


def handle_shutdown(signum, frame):
    """Handle graceful shutdown signals."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")

    if scheduler:
        logger.info("Shutting down scheduler...")
        set_scheduler_running(False)
        scheduler.shutdown(wait=True)
        logger.info("Scheduler shut down complete")

    logger.info("Graceful shutdown complete")
    sys.exit(0)


def main():
    """Main entrypoint for the ledger sync service."""
    global scheduler, http_thread

    # Parse command line arguments
    parser = argparse.ArgumentParser(description="TikTok Shop Ledger Sync Service")
    parser.add_argument("--run-once", action="store_true", help="Sync all connections once and exit")
    parser.add_argument("--config", default="config/app.yaml", help="Configuration file path")
    parser.add_argument("--validate-config", action="store_true", help="Validate configuration and exit")

    args = parser.parse_args()

    try:
        load_config(args.config)
        setup_logging()
        logger.info("Starting TikTok Shop Ledger Sync Service")

        validate_config()
        logger.info("Configuration validated successfully")

        if args.validate_config:
            return 0

        if args.run_once:
            create_job_runner()()
            return 0

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGTERM, handle_shutdown)
        signal.signal(signal.SIGINT, handle_shutdown)

        http_thread = start_http_server()

        scheduler = setup_job_scheduler()
        if register_jobs(scheduler) == 0:
            logger.warning("No jobs registered. Check your configuration.")
            return 1

        set_scheduler_running(True)
        scheduler.start()

        logger.info("Scheduler started successfully. Press Ctrl+C to stop.")

        # Keep main thread alive
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            handle_shutdown(signal.SIGINT, None)

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
