"""
Scheduled Jobs Service
Runs the monthly commission aggregation in the background
"""
import logging
import time
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .metrics import increment_counter, record_histogram
from .monthly_aggregator import MonthlyAggregator

logger = logging.getLogger(__name__)

MONTHLY_COMMISSION_JOB_ID = "monthly_commission_invoices"

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None
_aggregator: Optional[MonthlyAggregator] = None


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance

    Returns:
        BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Only one instance at a time
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )

    return _scheduler


def start_scheduler(aggregator: MonthlyAggregator):
    """
    Start the background scheduler and register the aggregation job

    Args:
        aggregator: Aggregator the job runs
    """
    global _aggregator
    scheduler = get_scheduler()

    if not scheduler.running:
        _aggregator = aggregator
        _aggregator.stop_event.clear()

        scheduler.add_job(
            func=run_monthly_commission_job,
            trigger=CronTrigger(day=1, hour=0, minute=0),  # 1st of the month at midnight UTC
            id=MONTHLY_COMMISSION_JOB_ID,
            name='Monthly commission invoices',
            replace_existing=True
        )
        logger.info("Registered monthly commission job (1st of month, 00:00 UTC)")

        scheduler.start()
        logger.info("Background scheduler started")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the background scheduler

    A running aggregation finishes its current employer and stops.
    """
    global _scheduler
    scheduler = get_scheduler()

    if _aggregator is not None:
        _aggregator.stop()

    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")
    _scheduler = None


def run_monthly_commission_job(aggregator: Optional[MonthlyAggregator] = None):
    """
    Monthly commission job - bills the previous month's pending commissions

    Called by the scheduler with no arguments. Failures are logged and
    counted; unfinished invoices are resumed by the next run.
    """
    aggregator = aggregator or _aggregator
    if aggregator is None:
        logger.error("Monthly commission job triggered without an aggregator")
        return None

    logger.info("=" * 60)
    logger.info("Starting scheduled monthly commission job")
    logger.info("=" * 60)

    start_time = time.time()
    report = None

    try:
        report = aggregator.run()
        duration = time.time() - start_time

        logger.info("=" * 60)
        logger.info("Monthly Commission Job Summary")
        logger.info("=" * 60)
        logger.info(f"Period: {report.period}")
        logger.info(f"Invoiced: {len(report.invoiced)}")
        logger.info(f"Failed: {len(report.failed)}")
        logger.info(f"Skipped: {len(report.skipped)}")
        logger.info(f"Interrupted: {report.interrupted}")
        logger.info(f"Duration: {duration:.2f} seconds")
        logger.info("=" * 60)

        for employer_id, error in report.errors.items():
            logger.warning(f"Employer {employer_id} not invoiced: {error}")

        increment_counter("commission_job_runs_total", labels={"status": "success"})
        record_histogram("commission_job_seconds", duration)

    except Exception as e:
        logger.error(f"Fatal error during monthly commission job: {e}", exc_info=True)
        increment_counter("commission_job_runs_total", labels={"status": "fatal_error"})

    logger.info("Monthly commission job finished")
    return report


# Export functions
__all__ = [
    'get_scheduler',
    'start_scheduler',
    'stop_scheduler',
    'run_monthly_commission_job',
]
