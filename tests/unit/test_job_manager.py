import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from inbox_triage.errors import AllProvidersFailedError, MessageFetchError
from inbox_triage.models.domain.job_domain import CANCELLED_ERROR, JobStatus, ProcessingJob
from inbox_triage.models.domain.message_domain import FetchOptions, ProviderCredentials
from inbox_triage.services.analysis.openai_client import ModelCallResult
from inbox_triage.services.job_manager import STALE_JOB_ERROR
from inbox_triage.services.job_queue import RedisJobQueue

USER_ID = "user-123"


@pytest.fixture
def job_manager(pipeline):
    return pipeline.job_manager


@pytest.fixture
def repository(pipeline):
    return pipeline.repository


def record_progress(monkeypatch, repository) -> list[int]:
    seen: list[int] = []
    original = repository.update_job

    async def recording_update(job):
        seen.append(job.progress)
        return await original(job)

    monkeypatch.setattr(repository, "update_job", recording_update)
    return seen


@pytest.mark.asyncio
async def test_start_processing_returns_pending_job(job_manager, repository, gmail_credentials):
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert await job_manager.queue.size() == 1

    stored = await repository.get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.provider_names == ["gmail"]
    # Tokens never reach the store
    assert stored.providers[0].access_token == ""


@pytest.mark.asyncio
async def test_job_completes_with_results(job_manager, repository, adapters, message_factory, gmail_credentials):
    adapters["gmail"].messages = [message_factory(f"msg-{i}") for i in range(3)]

    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(job.id)

    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress == 100
    assert stored.total_emails == 3
    assert stored.processed_emails == 3

    results = await job_manager.get_job_results(job.id)
    assert {r["message_id"] for r in results} == {"msg-0", "msg-1", "msg-2"}
    assert all(r["success"] for r in results)
    assert all(r["priority_level"] == "high" for r in results)


@pytest.mark.asyncio
async def test_progress_follows_batches(
    monkeypatch, job_manager, repository, adapters, message_factory, gmail_credentials
):
    adapters["gmail"].messages = [message_factory(f"msg-{i}") for i in range(25)]
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    seen = record_progress(monkeypatch, repository)

    await job_manager.process_job_id(job.id)

    assert seen == [0, 10, 42, 74, 90, 100]
    assert seen == sorted(seen)


@pytest.mark.asyncio
async def test_batches_are_spaced_by_configured_delay(
    monkeypatch, pipeline, job_manager, adapters, message_factory, gmail_credentials
):
    adapters["gmail"].messages = [message_factory(f"msg-{i}") for i in range(25)]
    pipeline.engine.batch_delay_seconds = 1.0
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    real_sleep = asyncio.sleep
    sleeps: list[float] = []

    async def recording_sleep(delay, *args, **kwargs):
        sleeps.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    await job_manager.process_job_id(job.id)

    # Three batches of 10, 10 and 5: one pause between each pair
    assert sleeps == [1.0, 1.0]
    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.processed_emails == 25


@pytest.mark.asyncio
async def test_fetch_options_reach_adapter(job_manager, adapters, gmail_credentials):
    options = FetchOptions(max_results=5, query="from:alice")
    job = await job_manager.start_processing(USER_ID, [gmail_credentials], options)
    await job_manager.process_job_id(job.id)

    credentials, passed = adapters["gmail"].calls[0]
    assert credentials.access_token == "gmail-token"
    assert passed.max_results == 5
    assert passed.query == "from:alice"


@pytest.mark.asyncio
async def test_providers_default_to_connected_ones(job_manager, adapters):
    job = await job_manager.start_processing(USER_ID)

    assert sorted(job.provider_names) == ["gmail", "outlook"]
    await job_manager.process_job_id(job.id)
    assert len(adapters["gmail"].calls) == 1
    assert len(adapters["outlook"].calls) == 1


@pytest.mark.asyncio
async def test_one_provider_failing_still_completes(
    job_manager, adapters, message_factory, gmail_credentials, outlook_credentials
):
    adapters["gmail"].error = MessageFetchError("quota", provider="gmail", status_code=429, retryable=True)
    adapters["outlook"].messages = [message_factory("out-1", provider="outlook")]

    job = await job_manager.start_processing(USER_ID, [gmail_credentials, outlook_credentials])
    await job_manager.process_job_id(job.id)

    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.total_emails == 1


@pytest.mark.asyncio
async def test_all_providers_failing_fails_job(job_manager, adapters, gmail_credentials, outlook_credentials):
    adapters["gmail"].error = MessageFetchError("unauthorized", provider="gmail", status_code=401)
    adapters["outlook"].error = MessageFetchError("throttled", provider="outlook", status_code=503, retryable=True)

    job = await job_manager.start_processing(USER_ID, [gmail_credentials, outlook_credentials])
    with pytest.raises(AllProvidersFailedError):
        await job_manager.process_job_id(job.id)

    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.total_emails == 0
    assert "unauthorized" in stored.error
    assert "throttled" in stored.error
    assert stored.retryable is True


@pytest.mark.asyncio
async def test_zero_providers_completes_with_no_messages(job_manager):
    job = await job_manager.start_processing(USER_ID, [])
    await job_manager.process_job_id(job.id)

    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.total_emails == 0
    assert stored.progress == 100


@pytest.mark.asyncio
async def test_model_failures_do_not_fail_the_job(job_manager, model_client, adapters, message_factory, gmail_credentials):
    model_client.responder = lambda system, user: ModelCallResult(
        content=None, error="overloaded", error_code="internal_error", retryable=True, attempts=3
    )
    adapters["gmail"].messages = [message_factory("msg-1")]

    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(job.id)

    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.COMPLETED
    [result] = await job_manager.get_job_results(job.id)
    assert result["success"] is False
    assert result["retryable"] is True
    assert result["priority_level"] == "medium"


@pytest.mark.asyncio
async def test_cancel_between_batches_keeps_partial_results(
    monkeypatch, pipeline, job_manager, adapters, message_factory, gmail_credentials
):
    adapters["gmail"].messages = [message_factory(f"msg-{i:02d}") for i in range(25)]
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    original = pipeline.engine.analyze_batch
    outcome = {}

    async def analyze_then_cancel(requests):
        responses = await original(requests)
        if "cancelled" not in outcome:
            outcome["cancelled"] = await job_manager.cancel_job(job.id)
        return responses

    monkeypatch.setattr(pipeline.engine, "analyze_batch", analyze_then_cancel)
    await job_manager.process_job_id(job.id)

    assert outcome["cancelled"] is True
    stored = await job_manager.get_job_status(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == CANCELLED_ERROR
    assert stored.is_cancelled
    assert stored.retryable is False
    assert len(await job_manager.get_job_results(job.id)) == 10


@pytest.mark.asyncio
async def test_cancel_from_another_process_is_respected(
    monkeypatch, pipeline, job_manager, repository, adapters, message_factory, gmail_credentials
):
    adapters["gmail"].messages = [message_factory(f"msg-{i:02d}") for i in range(15)]
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    original = pipeline.engine.analyze_batch

    async def analyze_then_cancel_in_store(requests):
        responses = await original(requests)
        # Another process only sees the stored row
        stored = await repository.get_job(job.id)
        if stored.status == JobStatus.PROCESSING:
            stored.status = JobStatus.FAILED
            stored.error = CANCELLED_ERROR
            await repository.update_job(stored)
        return responses

    monkeypatch.setattr(pipeline.engine, "analyze_batch", analyze_then_cancel_in_store)
    await job_manager.process_job_id(job.id)

    stored = await repository.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == CANCELLED_ERROR
    assert stored.progress < 100


@pytest.mark.asyncio
async def test_cancel_rejects_pending_and_unknown_jobs(job_manager, gmail_credentials):
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    assert await job_manager.cancel_job(job.id) is False
    assert await job_manager.cancel_job("missing") is False


@pytest.mark.asyncio
async def test_cancel_rejects_finished_jobs(job_manager, gmail_credentials):
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(job.id)

    assert await job_manager.cancel_job(job.id) is False
    assert (await job_manager.get_job_status(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_non_pending_jobs_are_skipped(job_manager, adapters, gmail_credentials):
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(job.id)

    await job_manager.process_job_id(job.id)
    assert len(adapters["gmail"].calls) == 1


@pytest.mark.asyncio
async def test_job_from_another_process_resolves_credentials(job_manager, repository, adapters, message_factory):
    adapters["gmail"].messages = [message_factory("msg-1")]
    job = ProcessingJob(
        id="external-job",
        user_id=USER_ID,
        providers=[ProviderCredentials(provider="gmail", access_token="", user_id=USER_ID)],
    )
    await repository.insert_job(job)

    await job_manager.process_job_id("external-job")

    credentials, _ = adapters["gmail"].calls[0]
    assert credentials.access_token == "gmail-token"
    assert (await repository.get_job("external-job")).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_job_without_any_credentials_fails(job_manager, repository):
    job = ProcessingJob(
        id="orphan-job",
        user_id="someone-else",
        providers=[ProviderCredentials(provider="gmail", access_token="", user_id="someone-else")],
    )
    await repository.insert_job(job)

    with pytest.raises(AllProvidersFailedError):
        await job_manager.process_job_id("orphan-job")

    stored = await repository.get_job("orphan-job")
    assert stored.status == JobStatus.FAILED
    assert stored.retryable is False


@pytest.mark.asyncio
async def test_unknown_dequeued_job_is_ignored(job_manager):
    assert await job_manager.process_job_id("does-not-exist") is None


@pytest.mark.asyncio
async def test_completed_job_invalidates_email_list(pipeline, job_manager, adapters, message_factory, gmail_credentials):
    await pipeline.email_list_cache.set(USER_ID, [{"stale": True}])
    adapters["gmail"].messages = [message_factory("msg-1")]

    job = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(job.id)

    assert await pipeline.email_list_cache.get(USER_ID) is None


@pytest.mark.asyncio
async def test_worker_loop_drains_queue(job_manager, adapters, message_factory, gmail_credentials):
    adapters["gmail"].messages = [message_factory("msg-1")]
    job = await job_manager.start_processing(USER_ID, [gmail_credentials])

    job_manager.ensure_worker_running()
    assert job_manager.worker_running
    try:
        for _ in range(100):
            stored = await job_manager.get_job_status(job.id)
            if stored.status.is_terminal:
                break
            await asyncio.sleep(0.02)
    finally:
        await job_manager.stop()

    assert stored.status == JobStatus.COMPLETED
    assert job_manager.worker_running is False


@pytest.mark.asyncio
async def test_worker_backs_off_while_queue_is_unreachable(monkeypatch, job_manager, fake_redis):
    fake_redis.fail = True
    job_manager.queue = RedisJobQueue(fake_redis)

    real_sleep = asyncio.sleep
    sleeps: list[float] = []

    async def recording_sleep(delay, *args, **kwargs):
        sleeps.append(delay)
        if len(sleeps) == 3:
            job_manager._stopping = True
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    await asyncio.wait_for(job_manager.run_forever(), timeout=2)

    assert sleeps == [job_manager.poll_seconds] * 3


@pytest.mark.asyncio
async def test_startup_requeues_only_pending_inflight_jobs(
    pipeline, job_manager, repository, fake_redis, gmail_credentials
):
    waiting = await job_manager.start_processing(USER_ID, [gmail_credentials])
    running = await job_manager.start_processing(USER_ID, [gmail_credentials])
    running.status = JobStatus.PROCESSING
    assert await repository.update_job(running)

    queue = RedisJobQueue(fake_redis, key="jobs")
    fake_redis.lists["jobs:inflight"] = [running.id, waiting.id, "unknown-job"]
    pipeline.queue = queue

    await pipeline.start()

    assert fake_redis.lists["jobs"] == [waiting.id]
    assert fake_redis.lists["jobs:inflight"] == [running.id]


@pytest.mark.asyncio
async def test_sweep_marks_stale_jobs_failed(job_manager, repository):
    stale = ProcessingJob(
        id="stale-job",
        user_id=USER_ID,
        providers=[ProviderCredentials(provider="gmail", access_token="", user_id=USER_ID)],
        status=JobStatus.PROCESSING,
        updated_at=datetime.now(UTC) - timedelta(minutes=90),
    )
    fresh = ProcessingJob(
        id="fresh-job",
        user_id=USER_ID,
        providers=[],
        status=JobStatus.PROCESSING,
    )
    await repository.insert_job(stale)
    await repository.insert_job(fresh)

    assert await job_manager.sweep_stale_jobs(threshold_minutes=60) == 1

    swept = await repository.get_job("stale-job")
    assert swept.status == JobStatus.FAILED
    assert swept.error == STALE_JOB_ERROR
    assert swept.retryable is True
    assert (await repository.get_job("fresh-job")).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_stats_and_listing(job_manager, adapters, message_factory, gmail_credentials):
    adapters["gmail"].messages = [message_factory(f"msg-{i}") for i in range(2)]
    first = await job_manager.start_processing(USER_ID, [gmail_credentials])
    await job_manager.process_job_id(first.id)

    adapters["gmail"].error = MessageFetchError("unauthorized", provider="gmail", status_code=401)
    second = await job_manager.start_processing(USER_ID, [gmail_credentials])
    with pytest.raises(AllProvidersFailedError):
        await job_manager.process_job_id(second.id)

    stats = await job_manager.get_processing_stats(USER_ID)
    assert stats["total_jobs"] == 2
    assert stats["completed_jobs"] == 1
    assert stats["failed_jobs"] == 1
    assert stats["total_emails_processed"] == 2

    jobs = await job_manager.list_jobs(USER_ID)
    assert {j.id for j in jobs} == {first.id, second.id}
    assert await job_manager.list_jobs("nobody") == []


@pytest.mark.asyncio
async def test_cleanup_removes_old_finished_jobs(job_manager, repository):
    old = ProcessingJob(
        id="old-job",
        user_id=USER_ID,
        providers=[],
        status=JobStatus.COMPLETED,
        created_at=datetime.now(UTC) - timedelta(days=45),
    )
    old_running = ProcessingJob(
        id="old-running",
        user_id=USER_ID,
        providers=[],
        status=JobStatus.PROCESSING,
        created_at=datetime.now(UTC) - timedelta(days=45),
    )
    await repository.insert_job(old)
    await repository.insert_job(old_running)

    counts = await job_manager.cleanup_old_data(days_to_keep=30)

    assert counts["jobs_deleted"] == 1
    assert await repository.get_job("old-job") is None
    assert await repository.get_job("old-running") is not None


@pytest.mark.asyncio
async def test_realtime_messages_are_analyzed_and_stored(pipeline, job_manager, adapters, message_factory, gmail_credentials):
    received = []

    async def on_analyzed(message, analysis):
        received.append((message.id, analysis.priority.level.value))

    subscriptions = await job_manager.setup_realtime_monitoring(USER_ID, [gmail_credentials], on_analyzed)

    assert subscriptions["gmail"]["subscription_id"] == "sub-gmail"
    assert len(adapters["gmail"].watch_calls) == 1

    delivered = await pipeline.fetcher.deliver_notification(USER_ID, message_factory("push-1"))

    assert delivered is True
    assert received == [("push-1", "high")]
    stored = await pipeline.repository.get_message(USER_ID, "push-1")
    assert stored["job_id"] is None


@pytest.mark.asyncio
async def test_realtime_setup_failure_is_reported_per_provider(job_manager, adapters, gmail_credentials):
    async def failing_watch(credentials):
        raise MessageFetchError("GOOGLE_PUBSUB_TOPIC is not configured", provider="gmail")

    adapters["gmail"].watch = failing_watch

    async def on_analyzed(message, analysis):
        return None

    subscriptions = await job_manager.setup_realtime_monitoring(USER_ID, [gmail_credentials], on_analyzed)

    assert subscriptions["gmail"] == {"error": "GOOGLE_PUBSUB_TOPIC is not configured", "retryable": False}
