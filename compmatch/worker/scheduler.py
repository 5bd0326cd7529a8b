"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compmatch.worker.watchdog import discovery_watchdog_check

logger = logging.getLogger(__name__)


def setup_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    watchdog_interval_seconds: int = 60,
    watchdog_stale_seconds: int = 600,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured (not started) scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        discovery_watchdog_check,
        IntervalTrigger(seconds=watchdog_interval_seconds),
        kwargs={
            "session_factory": session_factory,
            "stale_seconds": watchdog_stale_seconds,
        },
        id="discovery_watchdog",
        name="Fail stale discovery runs",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: discovery watchdog every %d seconds (stale after %d seconds)",
        watchdog_interval_seconds,
        watchdog_stale_seconds,
    )
    return scheduler
