# isp_billing/scheduler.py
import logging
import time

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from sqlmodel import Session

from .core.config import get_settings

logger = logging.getLogger("Scheduler")


def job_listener(event):
    """Log the result of every job run."""
    if event.exception:
        logger.error(f"Job {event.job_id} failed: {event.exception}")
    else:
        logger.info(f"Job {event.job_id} executed successfully")


def parse_run_hour(value: str) -> tuple[int, int]:
    """'HH:MM' -> (hour, minute); invalid values fall back to 02:00."""
    try:
        hour, minute = value.split(":")
        hour, minute = int(hour), int(minute)
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(value)
        return hour, minute
    except (ValueError, AttributeError):
        logger.warning(f"Invalid billing_run_hour: {value!r}. Using 02:00")
        return 2, 0


def build_scheduler() -> BackgroundScheduler:
    # Late imports keep the CLI entry point light
    from .db.engine_sync import create_sync_db_and_tables, get_engine
    from .services.billing_job import run_billing_cycle
    from .services.settings_service import SettingsService

    create_sync_db_and_tables()
    with Session(get_engine()) as session:
        run_hour = SettingsService(session).get_value("billing_run_hour")
    hour, minute = parse_run_hour(run_hour)

    scheduler = BackgroundScheduler(
        job_defaults={
            "coalesce": True,  # Missed runs collapse into one
            "max_instances": 1,
            "misfire_grace_time": 300,
        }
    )
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    logger.info(f"Scheduling billing cycle daily at {hour:02d}:{minute:02d}")
    scheduler.add_job(
        run_billing_cycle,
        trigger=CronTrigger(hour=hour, minute=minute),
        id="billing_job",
        name="Daily Billing Cycle",
        replace_existing=True,
    )
    return scheduler


def run_scheduler():
    """
    Entry point for the scheduler process: the external trigger for the
    billing sweeps. The API process never runs them on its own.
    """
    load_dotenv()
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    # Keep the process alive
    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Stopping scheduler...")
        scheduler.shutdown()
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    run_scheduler()
