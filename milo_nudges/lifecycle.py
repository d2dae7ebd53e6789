"""
Milo Nudges - Host Application Lifecycle

Startup and shutdown hooks for the process embedding the repository:
logging, error tracking, the shared repository and the cache sweep scheduler.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from milo_nudges.config import settings
from milo_nudges.database import get_nudge_repository, reset_nudge_repository
from milo_nudges.scheduler import start_scheduler, stop_scheduler
from milo_nudges.services.identity import IdentityProvider
from milo_nudges.services.monitoring import init_sentry, setup_logging
from milo_nudges.services.nudge_repository import NudgeRepository

logger = structlog.get_logger()

# APScheduler instance (module level)
scheduler: Optional[AsyncIOScheduler] = None


async def startup_event(identity: Optional[IdentityProvider] = None) -> NudgeRepository:
    """Application Startup"""
    global scheduler

    setup_logging(settings.log_level)
    init_sentry()
    logger.info("startup", environment=settings.environment)

    repository = await get_nudge_repository(identity)
    logger.info("repository_initialized")

    # Cache sweep scheduler (skipped in testing)
    scheduler = start_scheduler(repository, settings.environment)

    return repository


async def shutdown_event() -> None:
    """Application Shutdown"""
    global scheduler

    logger.info("shutdown")

    stop_scheduler(scheduler)
    scheduler = None

    await reset_nudge_repository()
