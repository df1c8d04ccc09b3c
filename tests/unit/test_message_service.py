import json

import pytest

from inbox_triage.errors import RateLimitError
from inbox_triage.models.domain.analysis_domain import AnalysisResult, PriorityLevel
from inbox_triage.models.domain.job_domain import ProcessingResult
from inbox_triage.services.analysis.openai_client import ModelCallResult
from inbox_triage.services.rate_limiter import RateLimitProfile

USER_ID = "user-123"


@pytest.fixture
def service(pipeline):
    return pipeline.message_service


@pytest.fixture
def seed(pipeline, message_factory):
    async def _seed(*specs):
        results = []
        for message_id, level, score in specs:
            message = message_factory(message_id)
            analysis = AnalysisResult.fallback(message)
            analysis.priority.level = PriorityLevel(level)
            analysis.priority_score = score
            results.append(
                ProcessingResult(message_id=message_id, message=message, analysis=analysis, success=True)
            )
        await pipeline.repository.upsert_results("job-1", USER_ID, results)

    return _seed


@pytest.mark.asyncio
async def test_listing_is_ordered_by_priority_score(service, seed):
    await seed(("low-1", "low", 0.1), ("crit-1", "critical", 0.95), ("med-1", "medium", 0.5))

    listing = await service.list_messages(USER_ID)

    assert [m["message_id"] for m in listing] == ["crit-1", "med-1", "low-1"]
    assert listing[0]["priority_level"] == "critical"
    assert isinstance(listing[0]["received_at"], str)


@pytest.mark.asyncio
async def test_listing_is_cached_until_a_mutation(pipeline, service, seed):
    await seed(("msg-1", "high", 0.8))
    await service.list_messages(USER_ID)

    # Written behind the service's back: the cached listing is served
    await seed(("msg-2", "low", 0.2))
    assert len(await service.list_messages(USER_ID)) == 1

    assert await service.mark_read(USER_ID, "msg-1") is True
    listing = await service.list_messages(USER_ID)
    assert len(listing) == 2
    assert next(m for m in listing if m["message_id"] == "msg-1")["is_read"] is True


@pytest.mark.asyncio
async def test_status_filters(service, seed):
    await seed(("msg-1", "high", 0.8), ("msg-2", "low", 0.2))
    await service.mark_read(USER_ID, "msg-2")

    assert [m["message_id"] for m in await service.list_messages(USER_ID, "unread")] == ["msg-1"]
    assert [m["message_id"] for m in await service.list_messages(USER_ID, "read")] == ["msg-2"]
    assert [m["message_id"] for m in await service.list_messages(USER_ID, "high")] == ["msg-1"]
    assert await service.list_messages(USER_ID, "failed") == []


@pytest.mark.asyncio
async def test_set_priority_overrides_level(service, seed):
    await seed(("msg-1", "low", 0.2))

    assert await service.set_priority(USER_ID, "msg-1", PriorityLevel.CRITICAL) is True
    assert (await service.get_message(USER_ID, "msg-1"))["priority_level"] == "critical"


@pytest.mark.asyncio
async def test_mutations_on_unknown_messages_return_false(service):
    assert await service.mark_read(USER_ID, "missing") is False
    assert await service.set_priority(USER_ID, "missing", PriorityLevel.LOW) is False
    assert await service.delete_message(USER_ID, "missing") is False
    assert await service.get_message(USER_ID, "missing") is None
    assert await service.reprocess(USER_ID, "missing") is None


@pytest.mark.asyncio
async def test_messages_are_scoped_to_their_user(service, seed):
    await seed(("msg-1", "high", 0.8))

    assert await service.get_message("someone-else", "msg-1") is None
    assert await service.mark_read("someone-else", "msg-1") is False
    assert await service.list_messages("someone-else") == []


@pytest.mark.asyncio
async def test_delete_removes_message_and_cached_analysis(pipeline, service, seed, message_factory):
    await seed(("msg-1", "high", 0.8))
    await pipeline.analysis_cache.set(AnalysisResult.fallback(message_factory("msg-1")))
    await service.list_messages(USER_ID)

    assert await service.delete_message(USER_ID, "msg-1") is True

    assert await service.list_messages(USER_ID) == []
    assert await pipeline.analysis_cache.get("msg-1") is None


@pytest.mark.asyncio
async def test_reprocess_bypasses_cache_and_updates_analysis(pipeline, service, seed, model_client, message_factory):
    await seed(("msg-1", "low", 0.1))
    # A stale cached analysis must not be reused
    await pipeline.analysis_cache.set(AnalysisResult.fallback(message_factory("msg-1")))
    await service.mark_read(USER_ID, "msg-1")

    updated = await service.reprocess(USER_ID, "msg-1")

    assert len(model_client.calls) == 1
    assert updated["priority_level"] == "high"
    assert updated["success"] is True
    assert updated["summary"].startswith("Alice asks for a review")
    # User state survives reprocessing
    assert updated["is_read"] is True
    listing = await service.list_messages(USER_ID)
    assert listing[0]["priority_level"] == "high"


@pytest.mark.asyncio
async def test_reprocess_records_fallback_on_model_failure(service, seed, model_client):
    await seed(("msg-1", "high", 0.8))
    model_client.responder = lambda system, user: ModelCallResult(content=json.dumps([]), attempts=1)

    updated = await service.reprocess(USER_ID, "msg-1")

    assert updated["success"] is False
    assert updated["retryable"] is False
    assert updated["priority_level"] == "medium"


@pytest.mark.asyncio
async def test_reprocess_propagates_rate_limit(pipeline, service, seed):
    await seed(("msg-1", "high", 0.8))
    pipeline.rate_limiter.profiles["analysis"] = RateLimitProfile("analysis", 60_000, 0, "rl:analysis", "user")

    with pytest.raises(RateLimitError):
        await service.reprocess(USER_ID, "msg-1")


@pytest.mark.asyncio
async def test_summarize_leaves_stored_analysis_untouched(pipeline, service, seed, model_client):
    await seed(("msg-1", "low", 0.2))
    await pipeline.email_list_cache.set(USER_ID, [{"cached": True}])
    model_client.responder = lambda system, user: ModelCallResult(
        content=json.dumps({"summary": "Alice needs a report review.", "keyPoints": ["Q3 report"]}), attempts=1
    )

    summary = await service.summarize(USER_ID, "msg-1")

    assert summary.summary == "Alice needs a report review."
    assert summary.key_points == ["Q3 report"]
    assert (await service.get_message(USER_ID, "msg-1"))["priority_level"] == "low"
    assert await pipeline.email_list_cache.get(USER_ID) == [{"cached": True}]
    assert await service.summarize(USER_ID, "missing") is None
