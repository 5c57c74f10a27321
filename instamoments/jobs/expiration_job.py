"""Background jobs: the periodic expiration sweep and realtime heartbeat reaping."""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from instamoments.services.expiration import SweepStats

logger = logging.getLogger(__name__)


def run_sweep(sweeper, delete_content: bool = False) -> SweepStats:
    """One scheduled sweep; each event gets its own session from the sweeper's factory."""
    stats = sweeper.sweep(delete_content=delete_content)
    if stats.failed:
        logger.warning("sweep.partial_failure", extra={"failed_events": stats.failed})
    return stats


def build_scheduler(settings, sweeper, realtime=None) -> Optional[BackgroundScheduler]:
    if not settings.SWEEP_ENABLED:
        logger.info("Expiration sweep disabled (SWEEP_ENABLED=0)")
        return None
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
        kwargs={"sweeper": sweeper, "delete_content": settings.SWEEP_DELETE_CONTENT},
        id="event_expiration_sweep",
        name="Expire overdue events",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    if realtime is not None:
        scheduler.add_job(
            realtime.reap_stale,
            trigger=IntervalTrigger(seconds=settings.REALTIME_HEARTBEAT_SECONDS),
            id="realtime_reap_stale",
            name="Disconnect silent gallery viewers",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    return scheduler


def start_scheduler(scheduler: Optional[BackgroundScheduler]) -> None:
    if scheduler is None:
        return
    try:
        scheduler.start()
        logger.info("Scheduler started", extra={"jobs": [j.id for j in scheduler.get_jobs()]})
    except Exception:
        logger.exception("Failed to start scheduler")


def stop_scheduler(scheduler: Optional[BackgroundScheduler]) -> None:
    if scheduler is None or not scheduler.running:
        return
    try:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    except Exception:
        logger.exception("Error stopping scheduler")
