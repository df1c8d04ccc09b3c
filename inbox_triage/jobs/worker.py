"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens a pipeline and runs the job against it until cancelled.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from inbox_triage.config import Settings, settings
from inbox_triage.infrastructure.observability.logging import get_logger, setup_logging
from inbox_triage.jobs.data_cleanup_job import run_data_cleanup_scheduler
from inbox_triage.jobs.stale_job_sweeper import run_stale_job_sweeper
from inbox_triage.services.container import Pipeline, build_pipeline

logger = get_logger(__name__)

JobCoroutine = Callable[[Pipeline, Settings], Awaitable[None]]


async def run_email_processing(pipeline: Pipeline, settings: Settings) -> None:
    """Drain the shared job queue. Jobs are enqueued by API processes."""
    await pipeline.job_manager.run_forever()


async def run_data_cleanup(pipeline: Pipeline, settings: Settings) -> None:
    await run_data_cleanup_scheduler(pipeline.job_manager, settings)


async def run_stale_job_sweep(pipeline: Pipeline, settings: Settings) -> None:
    await run_stale_job_sweeper(pipeline.job_manager, settings)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "email_processing": run_email_processing,
    "data_cleanup": run_data_cleanup,
    "stale_job_sweeper": run_stale_job_sweep,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "email_processing").strip().lower()


async def run_worker(job_name: str | None = None, pipeline: Pipeline | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    pipeline = pipeline or build_pipeline(settings)
    await pipeline.start()
    logger.info("Starting background worker", job=name)
    try:
        await JOB_REGISTRY[name](pipeline, pipeline.settings)
    finally:
        await pipeline.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
