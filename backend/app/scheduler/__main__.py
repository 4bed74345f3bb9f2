"""Scheduler entry point: python -m app.scheduler"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.scheduler.expiration_sweeper import run as run_sweep
from app.scheduler.payment_reconciler import reconcile
from app.scheduler.pending_cleaner import cleanup

setup_logging(debug=settings.DEBUG, service="scheduler", env=settings.ENV)
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone=settings.SCHEDULER_TIMEZONE)


def signal_handler(sig, frame):
    logger.info("Scheduler stop signal received")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Scheduler started")

    # expire lapsed subscriptions, remind the ones ending soon
    scheduler.add_job(
        run_sweep,
        IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
        id="expiration_sweeper",
        max_instances=1,
        coalesce=True,
    )

    # every 5 minutes: repair activations, retry deferred syncs, poll quiet invoices
    scheduler.add_job(
        reconcile,
        CronTrigger(minute="*/5", timezone=settings.SCHEDULER_TIMEZONE),
        id="payment_reconciler",
        max_instances=1,
    )

    # hourly: abandoned checkouts
    scheduler.add_job(
        cleanup,
        CronTrigger(minute=15, timezone=settings.SCHEDULER_TIMEZONE),
        id="pending_cleaner",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
