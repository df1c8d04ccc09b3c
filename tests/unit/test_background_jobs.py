from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_triage.errors import StorageError
from inbox_triage.jobs.data_cleanup_job import DataCleanupJob, seconds_until_hour
from inbox_triage.jobs.stale_job_sweeper import StaleJobSweeper


def test_seconds_until_hour_later_today():
    now = datetime(2024, 6, 1, 0, 30, tzinfo=UTC)
    assert seconds_until_hour(2, now) == 90 * 60


def test_seconds_until_hour_rolls_to_tomorrow():
    now = datetime(2024, 6, 1, 2, 0, tzinfo=UTC)
    assert seconds_until_hour(2, now) == 24 * 3600


@pytest.mark.asyncio
async def test_cleanup_reports_counts():
    job_manager = MagicMock()
    job_manager.cleanup_old_data = AsyncMock(return_value={"jobs_deleted": 3, "analyses_deleted": 40})

    result = await DataCleanupJob(job_manager, days_to_keep=14).run_cleanup()

    assert result == {"success": True, "jobs_deleted": 3, "analyses_deleted": 40, "errors": []}
    job_manager.cleanup_old_data.assert_awaited_once_with(14)


@pytest.mark.asyncio
async def test_cleanup_failure_is_reported_not_raised():
    job_manager = MagicMock()
    job_manager.cleanup_old_data = AsyncMock(side_effect=StorageError("connection lost", operation="delete"))
    cleanup = DataCleanupJob(job_manager)

    result = await cleanup.run_cleanup()

    assert result["success"] is False
    assert "connection lost" in result["errors"][0]
    assert cleanup.is_running is False


@pytest.mark.asyncio
async def test_cleanup_skips_when_already_running():
    cleanup = DataCleanupJob(MagicMock())
    cleanup.is_running = True

    assert await cleanup.run_cleanup() == {"success": False, "error": "Already running"}


@pytest.mark.asyncio
async def test_cleanup_against_pipeline(pipeline):
    result = await DataCleanupJob(pipeline.job_manager).run_cleanup()
    assert result["success"] is True
    assert result["jobs_deleted"] == 0


@pytest.mark.asyncio
async def test_sweeper_reports_swept_count():
    job_manager = MagicMock()
    job_manager.sweep_stale_jobs = AsyncMock(return_value=2)

    result = await StaleJobSweeper(job_manager, threshold_minutes=45).run_once()

    assert result == {"success": True, "swept": 2}
    job_manager.sweep_stale_jobs.assert_awaited_once_with(45)


@pytest.mark.asyncio
async def test_sweeper_failure_is_reported():
    job_manager = MagicMock()
    job_manager.sweep_stale_jobs = AsyncMock(side_effect=StorageError("db down"))

    result = await StaleJobSweeper(job_manager).run_once()

    assert result["success"] is False
    assert result["error"] == "db down"
