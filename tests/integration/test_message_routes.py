import json

import pytest
import pytest_asyncio

from inbox_triage.models.domain.analysis_domain import AnalysisResult, PriorityLevel
from inbox_triage.models.domain.job_domain import ProcessingResult
from inbox_triage.services.analysis.openai_client import ModelCallResult
from inbox_triage.services.rate_limiter import RateLimitProfile

USER_ID = "user-123"


@pytest_asyncio.fixture
async def seeded(pipeline, message_factory):
    results = []
    for message_id, level, score in (("msg-1", "high", 0.8), ("msg-2", "low", 0.2)):
        message = message_factory(message_id)
        analysis = AnalysisResult.fallback(message)
        analysis.priority.level = PriorityLevel(level)
        analysis.priority_score = score
        results.append(ProcessingResult(message_id=message_id, message=message, analysis=analysis, success=True))
    await pipeline.repository.upsert_results("job-1", USER_ID, results)
    return results


@pytest.mark.asyncio
async def test_list_messages(api_client, seeded):
    async with api_client as client:
        response = await client.get("/messages")

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert data["status_filter"] == "all"
    assert [m["message_id"] for m in data["messages"]] == ["msg-1", "msg-2"]
    assert response.headers["X-RateLimit-Limit"] == "100"


@pytest.mark.asyncio
async def test_list_messages_rejects_unknown_filter(api_client):
    async with api_client as client:
        response = await client.get("/messages", params={"status_filter": "spam"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_filter"


@pytest.mark.asyncio
async def test_mark_read_and_filter(api_client, seeded):
    async with api_client as client:
        response = await client.post("/messages/msg-2/read", json={"is_read": True})
        unread = await client.get("/messages", params={"status_filter": "unread"})

    assert response.status_code == 200
    assert response.json() == {"message_id": "msg-2", "is_read": True}
    assert [m["message_id"] for m in unread.json()["messages"]] == ["msg-1"]


@pytest.mark.asyncio
async def test_set_priority(api_client, seeded):
    async with api_client as client:
        response = await client.post("/messages/msg-2/priority", json={"priority": "critical"})
        message = await client.get("/messages/msg-2")
        invalid = await client.post("/messages/msg-2/priority", json={"priority": "urgent"})

    assert response.status_code == 200
    assert message.json()["priority_level"] == "critical"
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_delete_message(api_client, seeded):
    async with api_client as client:
        response = await client.delete("/messages/msg-1")
        listing = await client.get("/messages")
        again = await client.delete("/messages/msg-1")

    assert response.json() == {"message_id": "msg-1", "deleted": True}
    assert [m["message_id"] for m in listing.json()["messages"]] == ["msg-2"]
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_unknown_message_is_not_found(api_client, seeded):
    async with api_client as client:
        get_response = await client.get("/messages/missing")
        read_response = await client.post("/messages/missing/read", json={})
        foreign = await client.get("/messages/msg-1", headers={"X-User-Id": "someone-else"})

    assert get_response.status_code == 404
    assert get_response.json()["detail"]["error"] == "message_not_found"
    assert read_response.status_code == 404
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_reprocess_message(api_client, seeded, model_client):
    async with api_client as client:
        response = await client.post("/messages/msg-2/reprocess")

    assert response.status_code == 200
    data = response.json()
    assert data["priority_level"] == "high"
    assert data["success"] is True
    assert len(model_client.calls) == 1


@pytest.mark.asyncio
async def test_reprocess_route_limit(api_client, pipeline, seeded):
    pipeline.rate_limiter.profiles["ai"] = RateLimitProfile("ai", 60_000, 0, "rl:ai", "user")

    async with api_client as client:
        response = await client.post("/messages/msg-1/reprocess")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.json()["detail"]["error"] == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_reprocess_analysis_limit(api_client, pipeline, seeded, model_client):
    pipeline.rate_limiter.profiles["analysis"] = RateLimitProfile("analysis", 30_000, 0, "rl:analysis", "user")

    async with api_client as client:
        response = await client.post("/messages/msg-1/reprocess")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert model_client.calls == []


@pytest.mark.asyncio
async def test_summarize_message(api_client, seeded, model_client):
    model_client.responder = lambda system, user: ModelCallResult(
        content=json.dumps({"summary": "Alice needs the Q3 report reviewed.", "keyPoints": ["Review by Friday"]}),
        attempts=1,
    )

    async with api_client as client:
        response = await client.post("/messages/msg-1/summary")
        missing = await client.post("/messages/missing/summary")

    assert response.status_code == 200
    data = response.json()
    assert data["message_id"] == "msg-1"
    assert data["summary"] == "Alice needs the Q3 report reviewed."
    assert data["key_points"] == ["Review by Friday"]
    assert data["is_fallback"] is False
    assert 0 < data["confidence"] <= 1
    assert missing.status_code == 404
    assert len(model_client.calls) == 1


@pytest.mark.asyncio
async def test_summarize_analysis_limit(api_client, pipeline, seeded, model_client):
    pipeline.rate_limiter.profiles["analysis"] = RateLimitProfile("analysis", 30_000, 0, "rl:analysis", "user")

    async with api_client as client:
        response = await client.post("/messages/msg-1/summary")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert model_client.calls == []
