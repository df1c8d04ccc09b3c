"""
Stale Job Sweeper - fails processing jobs whose worker disappeared.

A job still in ``processing`` with no update for STALE_JOB_THRESHOLD_MINUTES
is marked failed with a retryable error so the user can resubmit it.
"""

import asyncio

from inbox_triage.config import Settings
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.services.job_manager import JobManager

logger = get_logger(__name__)


class StaleJobSweeper:
    def __init__(self, job_manager: JobManager, threshold_minutes: int = 60):
        self.job_manager = job_manager
        self.threshold_minutes = threshold_minutes

    async def run_once(self) -> dict:
        try:
            swept = await self.job_manager.sweep_stale_jobs(self.threshold_minutes)
        except Exception as e:
            logger.error("Stale job sweep failed", error=str(e), error_type=type(e).__name__)
            return {"success": False, "swept": 0, "error": str(e)}

        if swept:
            logger.warning("Stale jobs marked failed", count=swept, threshold_minutes=self.threshold_minutes)
        return {"success": True, "swept": swept}


async def run_stale_job_sweeper(job_manager: JobManager, settings: Settings) -> None:
    sweeper = StaleJobSweeper(job_manager, settings.STALE_JOB_THRESHOLD_MINUTES)
    interval_seconds = settings.STALE_JOB_SWEEP_INTERVAL_MINUTES * 60
    logger.info(
        "Stale job sweeper STARTED",
        threshold_minutes=settings.STALE_JOB_THRESHOLD_MINUTES,
        interval_minutes=settings.STALE_JOB_SWEEP_INTERVAL_MINUTES,
    )

    while True:
        try:
            await sweeper.run_once()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Stale job sweeper cancelled")
            break
