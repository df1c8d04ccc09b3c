"""
Job Manager - asynchronous email processing jobs.

Lifecycle:
    pending -> processing -> completed
                          -> failed      (error, provider outage, cancellation, stale sweep)

start_processing() only records and enqueues the job; a single worker loop
per process drains the queue and runs one job pipeline at a time:

    fetch (all providers) -> progress 10
    analysis batches      -> progress 10 + done/total * 80 after each batch
    upsert results        -> progress 90
    completed             -> progress 100

Cancellation is cooperative and checked before every batch. Results computed
before a cancellation or failure stay persisted.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from inbox_triage.errors import AllProvidersFailedError, MessageFetchError, RateLimitError, StorageError
from inbox_triage.infrastructure.observability.logging import get_logger, log_job_event
from inbox_triage.models.domain.analysis_domain import AnalysisRequest, AnalysisResult
from inbox_triage.models.domain.job_domain import (
    CANCELLED_ERROR,
    JobStatus,
    ProcessingJob,
    ProcessingResult,
)
from inbox_triage.models.domain.message_domain import (
    FetchOptions,
    NormalizedMessage,
    ProviderCredentials,
)
from inbox_triage.repositories.job_repository import JobRepository
from inbox_triage.services.analysis.analysis_engine import AnalysisEngine
from inbox_triage.services.cache.cache_service import EmailListCache
from inbox_triage.services.fetchers.message_fetcher import MessageFetcher
from inbox_triage.services.job_queue import JobQueue
from inbox_triage.services.suppliers import CredentialSupplier, UserContextSupplier

logger = get_logger(__name__)

STALE_JOB_ERROR = "Job stalled without progress and was marked failed"

AnalyzedCallback = Callable[[NormalizedMessage, AnalysisResult], Awaitable[None]]


class JobManager:
    def __init__(
        self,
        repository: JobRepository,
        fetcher: MessageFetcher,
        engine: AnalysisEngine,
        queue: JobQueue,
        credential_supplier: CredentialSupplier,
        user_context_supplier: UserContextSupplier,
        email_list_cache: EmailListCache,
        batch_size: int = 10,
        poll_seconds: float = 5.0,
        auto_start_worker: bool = True,
    ):
        self.repository = repository
        self.fetcher = fetcher
        self.engine = engine
        self.queue = queue
        self.credential_supplier = credential_supplier
        self.user_context_supplier = user_context_supplier
        self.email_list_cache = email_list_cache
        self.batch_size = max(1, batch_size)
        self.poll_seconds = poll_seconds
        self.auto_start_worker = auto_start_worker

        self._active: dict[str, ProcessingJob] = {}
        self._worker_task: asyncio.Task | None = None
        self._stopping = False

    # =================================================================
    # Public API
    # =================================================================

    async def start_processing(
        self,
        user_id: str,
        providers: list[ProviderCredentials] | None = None,
        options: FetchOptions | None = None,
    ) -> ProcessingJob:
        """
        Create a pending job and hand it to the worker. Returns immediately.

        When ``providers`` is None every connected provider of the user is used.
        """
        if providers is None:
            providers = await self.credential_supplier.get_credentials(user_id)

        job = ProcessingJob(
            id=str(uuid4()),
            user_id=user_id,
            providers=[replace(p, user_id=user_id) for p in providers],
            options=options or FetchOptions(),
        )
        await self.repository.insert_job(job)
        self._active[job.id] = job
        log_job_event(job.id, user_id, job.status.value, job.progress, providers=job.provider_names)

        await self.queue.enqueue(job.id)
        if self.auto_start_worker:
            self.ensure_worker_running()
        return job

    async def get_job_status(self, job_id: str) -> ProcessingJob | None:
        job = self._active.get(job_id)
        if job is not None:
            return job
        return await self.repository.get_job(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a processing job. Returns False for unknown, pending or finished jobs."""
        job = self._active.get(job_id)
        if job is None:
            job = await self.repository.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False

        job.status = JobStatus.FAILED
        job.error = CANCELLED_ERROR
        job.retryable = False
        job.touch()
        if not await self.repository.update_job(job):
            return False

        self._active.pop(job_id, None)
        log_job_event(job.id, job.user_id, job.status.value, job.progress, reason="cancelled")
        return True

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        return await self.repository.list_jobs(user_id, limit)

    async def get_job_results(self, job_id: str) -> list[dict[str, Any]]:
        return await self.repository.get_results(job_id)

    async def get_processing_stats(self, user_id: str) -> dict[str, Any]:
        return await self.repository.job_stats(user_id)

    async def cleanup_old_data(self, days_to_keep: int = 30) -> dict[str, int]:
        cutoff = datetime.now(UTC) - timedelta(days=days_to_keep)
        counts = await self.repository.delete_older_than(cutoff)
        logger.info("Old processing data cleaned up", days_to_keep=days_to_keep, **counts)
        return counts

    async def sweep_stale_jobs(self, threshold_minutes: int = 60) -> int:
        """Fail processing jobs whose last update is older than the threshold."""
        cutoff = datetime.now(UTC) - timedelta(minutes=threshold_minutes)
        swept = 0
        for job in await self.repository.find_stale_jobs(cutoff):
            job.status = JobStatus.FAILED
            job.error = STALE_JOB_ERROR
            job.retryable = True
            job.touch()
            if await self.repository.update_job(job):
                swept += 1
                self._active.pop(job.id, None)
                log_job_event(job.id, job.user_id, job.status.value, job.progress, reason="stale")
        return swept

    async def setup_realtime_monitoring(
        self,
        user_id: str,
        providers: list[ProviderCredentials],
        callback: AnalyzedCallback,
    ) -> dict[str, Any]:
        """
        Subscribe to push notifications for each provider. Every pushed message
        is analyzed, stored, and passed to ``callback`` when analysis succeeds.
        """
        context = await self.user_context_supplier.get_user_context(user_id)

        async def on_message(message: NormalizedMessage) -> None:
            try:
                response = await self.engine.analyze(AnalysisRequest(message, user_id, context))
            except RateLimitError as e:
                logger.warning(
                    "Realtime analysis rate limited",
                    user_id=user_id,
                    message_id=message.id,
                    retry_after_seconds=e.retry_after_seconds,
                )
                return
            if not response.success:
                return

            result = ProcessingResult(
                message_id=message.id,
                message=message,
                analysis=response.analysis,
                success=True,
                processing_time_ms=response.analysis.processing_time_ms,
            )
            await self.repository.upsert_results(None, user_id, [result])
            await self.email_list_cache.invalidate_user(user_id)
            await callback(message, response.analysis)

        subscriptions: dict[str, Any] = {}
        for credentials in providers:
            try:
                subscriptions[credentials.provider] = await self.fetcher.setup_realtime_monitoring(
                    replace(credentials, user_id=user_id), on_message
                )
            except MessageFetchError as e:
                logger.error(
                    "Realtime monitoring setup failed",
                    user_id=user_id,
                    provider=credentials.provider,
                    error=str(e),
                )
                subscriptions[credentials.provider] = {"error": str(e), "retryable": e.retryable}
        return subscriptions

    # =================================================================
    # Worker loop
    # =================================================================

    @property
    def worker_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def ensure_worker_running(self) -> None:
        if self.worker_running:
            return
        self._stopping = False
        self._worker_task = asyncio.create_task(self.run_forever(), name="job-manager-worker")

    async def run_forever(self) -> None:
        logger.info("Job worker started", poll_seconds=self.poll_seconds)
        while not self._stopping:
            try:
                job_id = await self.queue.dequeue(self.poll_seconds)
            except StorageError as e:
                logger.error("Job queue unavailable", error=str(e), retry_in_s=self.poll_seconds)
                await asyncio.sleep(self.poll_seconds)
                continue
            if job_id is None:
                continue
            try:
                await self.process_job_id(job_id)
            except Exception as e:
                # Already recorded on the job; the loop keeps draining
                logger.error("Job execution failed", job_id=job_id, error=str(e))
            await self.queue.ack(job_id)
        logger.info("Job worker stopped")

    async def stop(self) -> None:
        self._stopping = True
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker_task
        self._worker_task = None

    async def process_job_id(self, job_id: str) -> ProcessingJob | None:
        """Run one dequeued job. Jobs created by another process are loaded from the store."""
        job = self._active.get(job_id)
        if job is None:
            job = await self.repository.get_job(job_id)
            if job is None:
                logger.warning("Dequeued unknown job", job_id=job_id)
                return None
            self._active[job.id] = job

        if job.status != JobStatus.PENDING:
            logger.info("Skipping job that is no longer pending", job_id=job_id, status=job.status.value)
            self._active.pop(job_id, None)
            return job

        await self._execute_job(job)
        return job

    # =================================================================
    # Execution
    # =================================================================

    async def _execute_job(self, job: ProcessingJob) -> None:
        job.status = JobStatus.PROCESSING
        job.touch()

        try:
            await self.repository.update_job(job)
            log_job_event(job.id, job.user_id, job.status.value, job.progress)

            if any(not p.access_token for p in job.providers):
                job.providers = await self._resolve_credentials(job)

            outcome = await self.fetcher.fetch_all(job.providers, job.options)
            messages = outcome.messages
            job.total_emails = len(messages)
            job.advance_progress(10)
            if outcome.partial:
                logger.warning(
                    "Some providers failed",
                    job_id=job.id,
                    failed_providers=[e.provider for e in outcome.errors],
                )

            context = await self.user_context_supplier.get_user_context(job.user_id)

            for start in range(0, len(messages), self.batch_size):
                if start > 0 and self.engine.batch_delay_seconds > 0:
                    await asyncio.sleep(self.engine.batch_delay_seconds)
                if not await self._checkpoint(job):
                    await self._stop_interrupted(job)
                    return

                batch = messages[start : start + self.batch_size]
                responses = await self.engine.analyze_batch(
                    [AnalysisRequest(m, job.user_id, context, batch_id=job.id) for m in batch]
                )
                for message, response in zip(batch, responses, strict=True):
                    job.results.append(
                        ProcessingResult(
                            message_id=message.id,
                            message=message,
                            analysis=response.analysis,
                            success=response.success,
                            error=response.error,
                            retryable=response.retryable,
                            processing_time_ms=response.analysis.processing_time_ms,
                        )
                    )

                job.processed_emails = len(job.results)
                job.advance_progress(10 + (job.processed_emails * 80) // job.total_emails)
                logger.debug(
                    "Batch analyzed",
                    job_id=job.id,
                    processed=job.processed_emails,
                    total=job.total_emails,
                    progress=job.progress,
                )

            job.advance_progress(90)
            if not await self._checkpoint(job):
                await self._stop_interrupted(job)
                return

            if job.results:
                await self.repository.upsert_results(job.id, job.user_id, job.results)

            job.status = JobStatus.COMPLETED
            job.advance_progress(100)
            if not await self.repository.update_job(job):
                await self._stop_interrupted(job)
                return

            await self.email_list_cache.invalidate_user(job.user_id)
            failed = sum(1 for r in job.results if not r.success)
            log_job_event(
                job.id,
                job.user_id,
                job.status.value,
                job.progress,
                total_emails=job.total_emails,
                failed_analyses=failed,
            )

        except Exception as e:
            await self._fail(job, e)
            raise
        finally:
            self._active.pop(job.id, None)

    async def _resolve_credentials(self, job: ProcessingJob) -> list[ProviderCredentials]:
        available = {c.provider: c for c in await self.credential_supplier.get_credentials(job.user_id)}
        resolved = [available[name] for name in job.provider_names if name in available]
        missing = [name for name in job.provider_names if name not in available]

        if missing and not resolved:
            raise AllProvidersFailedError(
                [
                    MessageFetchError(f"No valid credentials for {name}", provider=name, retryable=False)
                    for name in missing
                ]
            )
        if missing:
            logger.warning("Providers without credentials skipped", job_id=job.id, providers=missing)
        return resolved

    async def _checkpoint(self, job: ProcessingJob) -> bool:
        """Persist progress. False when the job was finished elsewhere (cancelled or swept)."""
        if job.status != JobStatus.PROCESSING:
            return False
        if await self.repository.update_job(job):
            return True

        stored = await self.repository.get_job(job.id)
        if stored is not None:
            job.status = stored.status
            job.error = stored.error
            job.retryable = stored.retryable
        return False

    async def _stop_interrupted(self, job: ProcessingJob) -> None:
        if job.results:
            await self.repository.upsert_results(job.id, job.user_id, job.results)
            await self.email_list_cache.invalidate_user(job.user_id)
        logger.info(
            "Job stopped before completion",
            job_id=job.id,
            status=job.status.value,
            error=job.error,
            kept_results=len(job.results),
        )

    async def _fail(self, job: ProcessingJob, error: Exception) -> None:
        job.status = JobStatus.FAILED
        job.error = str(error) or type(error).__name__
        job.retryable = bool(getattr(error, "retryable", False))
        job.touch()

        try:
            await self.repository.update_job(job)
            if job.results:
                await self.repository.upsert_results(job.id, job.user_id, job.results)
        except StorageError as storage_error:
            logger.error("Failed to record job failure", job_id=job.id, error=str(storage_error))

        log_job_event(
            job.id,
            job.user_id,
            job.status.value,
            job.progress,
            error=job.error,
            retryable=job.retryable,
        )
