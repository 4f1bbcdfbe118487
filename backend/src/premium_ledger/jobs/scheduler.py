"""Background scheduler for the periodic sweeps."""

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from premium_ledger.jobs.reconciliation import (
    distribute_monthly_coins,
    expire_cancelled_subscriptions,
    prune_processed_events,
)
from premium_ledger.logging_config import get_logger
from premium_ledger.settings import settings

logger = get_logger(__name__)

job_defaults = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


def run_job(name: str, func) -> None:
    """Run one sweep, logging instead of killing the scheduler thread."""
    try:
        result = func()
        logger.info("scheduled_job_completed", job=name, result=result)
    except Exception as e:
        logger.error("scheduled_job_failed", job=name, error=str(e))


def create_scheduler() -> BackgroundScheduler:
    """Build a scheduler with both sweeps registered (not started)."""
    scheduler = BackgroundScheduler(
        jobstores={"default": MemoryJobStore()},
        job_defaults=job_defaults,
        timezone="UTC",
    )
    scheduler.add_job(
        run_job,
        "interval",
        minutes=settings.reconciliation_interval_minutes,
        args=["expire_cancelled_subscriptions", expire_cancelled_subscriptions],
        id="expire_cancelled_subscriptions",
        name="Expire cancelled subscriptions",
        replace_existing=True,
    )
    scheduler.add_job(
        run_job,
        "interval",
        hours=settings.monthly_coin_check_hours,
        args=["distribute_monthly_coins", distribute_monthly_coins],
        id="distribute_monthly_coins",
        name="Distribute monthly premium coins",
        replace_existing=True,
    )
    scheduler.add_job(
        run_job,
        "interval",
        hours=24,
        args=["prune_processed_events", prune_processed_events],
        id="prune_processed_events",
        name="Prune processed webhook events",
        replace_existing=True,
    )
    return scheduler


def get_job_status(scheduler: BackgroundScheduler) -> list[dict[str, str | None]]:
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
