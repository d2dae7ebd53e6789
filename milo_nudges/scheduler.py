"""
APScheduler Background Jobs

Periodic cache maintenance for the nudge repository: expired cache entries,
stale rate-limit windows and past unread-count buckets are swept on an
interval. Jobs run on the asyncio event loop that owns the repository.
"""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from milo_nudges.config import settings
from milo_nudges.services.nudge_repository import NudgeRepository

logger = structlog.get_logger(__name__)


async def run_cache_sweep(repository: NudgeRepository):
    """
    Wrapper function for the scheduled cache sweep.

    Called by APScheduler every `cache_sweep_interval_minutes`. Runs on the
    event loop so it never races the repository's own cache access.
    """
    try:
        if repository.closed:
            logger.warning("cache_sweep_skipped", reason="repository_closed")
            return

        result = repository.sweep_expired()
        logger.info("cache_sweep_completed", **result)

    except Exception as e:
        logger.error("cache_sweep_crashed", error=str(e), exc_info=True)


def start_scheduler(repository: NudgeRepository, environment: str = "production") -> AsyncIOScheduler:
    """
    Start background scheduler with the cache sweep job.

    Must be called from a running event loop.

    Args:
        repository: Repository whose caches are swept
        environment: Current environment (skip scheduler in testing)

    Returns:
        AsyncIOScheduler instance
    """
    scheduler = AsyncIOScheduler(timezone=settings.schedule_timezone)

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    scheduler.add_job(
        run_cache_sweep,
        trigger=IntervalTrigger(minutes=settings.cache_sweep_interval_minutes),
        args=[repository],
        id="cache_sweep",
        name="Nudge Repository Cache Sweep",
        replace_existing=True
    )
    logger.info("job_registered", job="cache_sweep", interval_minutes=settings.cache_sweep_interval_minutes)

    scheduler.start()
    logger.info("scheduler_started", jobs=["cache_sweep"])

    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: AsyncIOScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_cache_sweep",
]
