"""
APScheduler Background Jobs

Stale reservation sweep, run via BackgroundScheduler in the FastAPI process.
"""

from datetime import timedelta

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings

logger = structlog.get_logger(__name__)


def run_stale_reservation_sweep() -> int:
    """
    Expire 'creating' reservations older than the staleness window.

    A request that crashed between claiming a reservation and reconciling it
    leaves the row in 'creating'; the sweep flips such rows to failed so the
    next retry can claim them without waiting to observe the stale lock itself.

    Returns:
        Number of reservations expired (0 when skipped or on error)
    """
    try:
        from app import database
        from app.services.reservation_store import ReservationStore

        session_factory = database.get_session_factory()
        if session_factory is None:
            logger.warning("reservation_sweep_skipped", reason="database_not_configured")
            return 0

        store = ReservationStore(session_factory=session_factory)
        expired = store.expire_stale(timedelta(seconds=settings.reservation_stale_seconds))
        logger.info("reservation_sweep_completed", expired=expired)
        return expired

    except Exception as e:
        logger.error("reservation_sweep_crashed", error=str(e), exc_info=True)
        return 0


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    scheduler.add_job(
        run_stale_reservation_sweep,
        trigger=IntervalTrigger(seconds=settings.reservation_sweep_interval_seconds),
        id="stale_reservation_sweep",
        name="Stale Checkout Reservation Sweep",
        replace_existing=True
    )
    logger.info(
        "job_registered",
        job="stale_reservation_sweep",
        interval_seconds=settings.reservation_sweep_interval_seconds
    )

    scheduler.start()
    logger.info("scheduler_started", jobs=["stale_reservation_sweep"])

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_stale_reservation_sweep",
]
