"""Background job scheduler.

APScheduler jobs driving the loop: the pump heartbeat, periodic autosens and
the nightly autotune run.
"""

from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from loopcore.config import settings
from loopcore.logging_config import get_logger
from loopcore.services.loop_service import LoopService

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_heartbeat(service: LoopService) -> None:
    """Heartbeat job: ask the device layer for a pump poll."""
    try:
        started = await service.heartbeat(datetime.now(UTC))
        logger.debug("Heartbeat processed", poll_started=started)
    except Exception as e:
        logger.error("Unexpected error in heartbeat", error=str(e))


async def run_autosens(service: LoopService) -> None:
    """Autosens job."""
    logger.info("Starting scheduled autosens")
    await service.autosense()


async def run_autotune(service: LoopService) -> None:
    """Nightly autotune job."""
    logger.info("Starting scheduled autotune")
    await service.autotune()


def start_scheduler(service: LoopService) -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.heartbeat_enabled:
        scheduler.add_job(
            run_heartbeat,
            trigger=IntervalTrigger(minutes=settings.heartbeat_interval_minutes),
            args=[service],
            id="heartbeat",
            name="Pump Heartbeat",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled heartbeat job",
            interval_minutes=settings.heartbeat_interval_minutes,
        )

    if settings.autosens_enabled:
        scheduler.add_job(
            run_autosens,
            trigger=IntervalTrigger(minutes=settings.autosens_interval_minutes),
            args=[service],
            id="autosens",
            name="Sensitivity Recalibration",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled autosens job",
            interval_minutes=settings.autosens_interval_minutes,
        )

    if settings.autotune_enabled:
        scheduler.add_job(
            run_autotune,
            trigger=CronTrigger(hour=settings.autotune_hour, minute=5),
            args=[service],
            id="autotune",
            name="Nightly Autotune",
            replace_existing=True,
            max_instances=1,
        )
        logger.info("Scheduled autotune job", hour=settings.autotune_hour)

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return scheduler
