"""Refresh scheduler.

1. Daily standard refresh at TAGX_REFRESH_TIME (triggered_by="cron")
2. Health check every TAGX_HEALTH_CHECK_INTERVAL_HOURS; a score below
   TAGX_BATCH_TRIGGER_THRESHOLD escalates to a batch run
   (triggered_by="health-check")
"""

import logging
import sys
import time

import schedule

from tag_explorer.config import settings
from tag_explorer.db import Database
from tag_explorer.exceptions import RunInProgress
from tag_explorer.services.orchestrator import run_if_unhealthy, run_refresh

logger = logging.getLogger(__name__)


def daily_refresh_job(db: Database):
    """Run the daily standard refresh."""
    logger.info("=== Daily Standard Refresh Started ===")
    try:
        result = run_refresh(
            db, "standard", triggered_by="cron", trigger_reason="Scheduled daily refresh", trusted=True,
        )
    except RunInProgress as e:
        logger.warning(f"Skipping daily refresh: {e}")
        return
    if result.succeeded:
        logger.info(
            f"=== Daily Refresh Complete: {result.success_count}/{result.total_stocks} updated, "
            f"health {result.health_score_before} -> {result.health_score_after} ==="
        )
    else:
        logger.error(f"=== Daily Refresh Failed: {result.failure} ===")


def health_check_job(db: Database):
    """Escalate to a batch refresh when data health is low."""
    logger.info("Running scheduled health check...")
    try:
        result = run_if_unhealthy(db, settings.batch_trigger_threshold)
    except RunInProgress as e:
        logger.warning(f"Skipping batch escalation: {e}")
        return
    if result is not None:
        status = "complete" if result.succeeded else f"failed: {result.failure}"
        logger.info(f"Batch escalation {status}")


def start_scheduler(run_now: bool = False):
    """Start the scheduler loop. Blocks until interrupted."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(settings.data_dir / "scheduler.log"),
        ],
    )

    db = Database.from_settings(settings)
    db.init_db()
    logger.info(
        f"Tag Explorer scheduler started. Daily refresh at {settings.refresh_time}, "
        f"health check every {settings.health_check_interval_hours}h."
    )
    if not settings.polygon_api_key:
        logger.warning("Polygon API key not set (TAGX_POLYGON_API_KEY); refreshes will fail to fetch snapshots")

    schedule.every().day.at(settings.refresh_time).do(daily_refresh_job, db)
    schedule.every(settings.health_check_interval_hours).hours.do(health_check_job, db)

    if run_now or "--now" in sys.argv:
        logger.info("Running immediately (--now flag)")
        daily_refresh_job(db)

    try:
        while True:
            schedule.run_pending()
            time.sleep(60)
    finally:
        schedule.clear()
        db.dispose()


if __name__ == "__main__":
    start_scheduler()
