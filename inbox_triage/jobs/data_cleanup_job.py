"""
Data Cleanup Background Job - retention for processing jobs and analyses.

Runs daily at DATA_CLEANUP_SCHEDULE_HOUR (UTC) to:
1. Delete finished jobs older than JOB_RETENTION_DAYS
2. Delete stored message analyses older than JOB_RETENTION_DAYS

Never raises: failures are logged and reported in the result dict.

Usage:
    python -m inbox_triage.jobs.worker data_cleanup
"""

import asyncio
from datetime import UTC, datetime, timedelta

from inbox_triage.config import Settings
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.services.job_manager import JobManager

logger = get_logger(__name__)


class DataCleanupJob:
    def __init__(self, job_manager: JobManager, days_to_keep: int = 30):
        self.job_manager = job_manager
        self.days_to_keep = days_to_keep
        self.is_running = False

    async def run_cleanup(self) -> dict:
        """
        Run one retention pass.

        Returns:
            dict: {
                "success": bool,
                "jobs_deleted": int,
                "analyses_deleted": int,
                "errors": list,
            }
        """
        if self.is_running:
            logger.warning("Cleanup job already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        start_time = datetime.now(UTC)
        logger.info("Starting data cleanup job", days_to_keep=self.days_to_keep)

        result = {"success": True, "jobs_deleted": 0, "analyses_deleted": 0, "errors": []}

        try:
            counts = await self.job_manager.cleanup_old_data(self.days_to_keep)
            result.update(counts)
        except Exception as e:
            error_msg = f"Failed to delete old processing data: {e}"
            logger.error(error_msg)
            result["success"] = False
            result["errors"].append(error_msg)
        finally:
            self.is_running = False

        duration = (datetime.now(UTC) - start_time).total_seconds()
        logger.info("Data cleanup job completed", duration_seconds=duration, result=result)
        return result


def seconds_until_hour(hour: int, now: datetime | None = None) -> float:
    """Seconds until the next occurrence of ``hour``:00 UTC."""
    now = now or datetime.now(UTC)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_data_cleanup_scheduler(job_manager: JobManager, settings: Settings) -> None:
    cleanup_job = DataCleanupJob(job_manager, settings.JOB_RETENTION_DAYS)
    logger.info(
        "Data cleanup scheduler STARTED",
        schedule_hour=settings.DATA_CLEANUP_SCHEDULE_HOUR,
        retention_days=settings.JOB_RETENTION_DAYS,
    )

    while True:
        try:
            sleep_seconds = seconds_until_hour(settings.DATA_CLEANUP_SCHEDULE_HOUR)
            logger.info("Data cleanup job scheduled", sleep_seconds=sleep_seconds)
            await asyncio.sleep(sleep_seconds)
            await cleanup_job.run_cleanup()
        except asyncio.CancelledError:
            logger.info("Data cleanup scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in data cleanup scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(3600)
