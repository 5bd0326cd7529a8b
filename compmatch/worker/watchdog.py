"""Watchdog task that fails discovery runs stuck in processing."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compmatch import metrics
from compmatch.db.models import Competitor, DiscoveryRun
from compmatch.enums import RunStatus

logger = logging.getLogger(__name__)


async def fail_stale_runs(
    session_factory: async_sessionmaker[AsyncSession],
    stale_seconds: int = 600,
    reason_prefix: str = "Watchdog",
    now: Optional[datetime] = None,
) -> int:
    """
    Mark runs processing for longer than ``stale_seconds`` as failed.

    A worker that crashed mid-run never writes a terminal status; this is
    what moves such runs (and their competitor) out of ``processing``.

    Returns:
        Number of runs failed
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=stale_seconds)

    async with session_factory() as db:
        result = await db.execute(
            select(DiscoveryRun).where(
                DiscoveryRun.status == RunStatus.PROCESSING.value,
                DiscoveryRun.started_at < cutoff,
            )
        )
        stale = list(result.scalars().all())

        for run in stale:
            elapsed = (now - run.started_at).total_seconds()
            message = (
                f"{reason_prefix}: stale run. Processing for {elapsed:.0f} seconds "
                f"(> {stale_seconds} limit)"
            )
            logger.warning(
                f"{reason_prefix}: Discovery run {run.run_id[:12]} for competitor {run.competitor_id} "
                f"has been processing for {elapsed:.0f}s. Marking as failed."
            )
            run.status = RunStatus.FAILED.value
            run.completed_at = now
            run.error_message = message

            competitor = await db.get(Competitor, run.competitor_id)
            if competitor is not None and competitor.status == RunStatus.PROCESSING.value:
                competitor.status = RunStatus.FAILED.value
                competitor.last_error = message
            metrics.record_stale_run_recovered()

        if stale:
            await db.commit()

    return len(stale)


async def discovery_watchdog_check(
    session_factory: async_sessionmaker[AsyncSession],
    stale_seconds: int = 600,
) -> None:
    """Scheduler entry point; failures are logged, never raised into the scheduler."""
    try:
        recovered = await fail_stale_runs(session_factory, stale_seconds)
        metrics.record_scheduler_run("discovery_watchdog", True)
        if recovered:
            logger.info(f"Watchdog recovered {recovered} stale discovery runs")
    except Exception as e:
        metrics.record_scheduler_run("discovery_watchdog", False)
        logger.error(f"Watchdog check failed: {e}", exc_info=True)
