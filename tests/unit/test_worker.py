from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_triage.jobs import worker


def fake_pipeline():
    pipeline = MagicMock()
    pipeline.start = AsyncMock()
    pipeline.close = AsyncMock()
    return pipeline


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {}

    async def dummy_job(pipeline, settings):
        called["pipeline"] = pipeline
        called["settings"] = settings

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)
    pipeline = fake_pipeline()

    await worker.run_worker("dummy", pipeline=pipeline)

    assert called["pipeline"] is pipeline
    assert called["settings"] is pipeline.settings
    pipeline.start.assert_awaited_once()
    pipeline.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_closes_pipeline_when_job_fails(monkeypatch):
    async def broken_job(pipeline, settings):
        raise RuntimeError("boom")

    monkeypatch.setitem(worker.JOB_REGISTRY, "broken", broken_job)
    pipeline = fake_pipeline()

    with pytest.raises(RuntimeError):
        await worker.run_worker("broken", pipeline=pipeline)

    pipeline.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    pipeline = fake_pipeline()
    with pytest.raises(ValueError):
        await worker.run_worker("missing", pipeline=pipeline)
    pipeline.start.assert_not_awaited()


@pytest.mark.asyncio
async def test_email_processing_job_drains_queue():
    pipeline = fake_pipeline()
    pipeline.job_manager.run_forever = AsyncMock()

    await worker.JOB_REGISTRY["email_processing"](pipeline, pipeline.settings)

    pipeline.job_manager.run_forever.assert_awaited_once()


def test_job_name_from_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", " Data_Cleanup ")
    assert worker._resolve_job_name() == "data_cleanup"

    monkeypatch.setattr(worker.sys, "argv", ["worker", "stale_job_sweeper"])
    assert worker._resolve_job_name() == "stale_job_sweeper"
