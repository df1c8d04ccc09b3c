"""
Processing job routes exercised end to end against in-process backends.
"""

import httpx
import pytest

USER_ID = "user-123"


@pytest.fixture
def gmail_inbox(adapters, message_factory):
    adapters["gmail"].messages = [message_factory("msg-1"), message_factory("msg-2")]
    return adapters["gmail"]


@pytest.mark.asyncio
async def test_create_job_then_process(api_client, pipeline, gmail_inbox):
    async with api_client as client:
        response = await client.post("/jobs", json={"max_results": 25})
        assert response.status_code == 202
        created = response.json()
        assert created["status"] == "pending"
        assert created["progress"] == 0
        assert created["providers"] == ["gmail", "outlook"]

        # The worker is not running in tests; drive the queued job directly
        await pipeline.job_manager.process_job_id(created["job_id"])

        status_response = await client.get(f"/jobs/{created['job_id']}")
        results_response = await client.get(f"/jobs/{created['job_id']}/results")

    job = status_response.json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["total_emails"] == 2
    assert job["processed_emails"] == 2

    results = results_response.json()
    assert results["count"] == 2
    assert {m["message_id"] for m in results["messages"]} == {"msg-1", "msg-2"}
    assert all(m["priority_level"] == "high" for m in results["messages"])
    assert gmail_inbox.calls[0][1].max_results == 25


@pytest.mark.asyncio
async def test_create_job_for_selected_provider(api_client):
    async with api_client as client:
        response = await client.post("/jobs", json={"providers": ["outlook"]})

    assert response.status_code == 202
    assert response.json()["providers"] == ["outlook"]


@pytest.mark.asyncio
async def test_create_job_requires_user_header(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/jobs", json={})

    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "missing_user"


@pytest.mark.asyncio
async def test_create_job_without_connections(api_client):
    async with api_client as client:
        response = await client.post("/jobs", json={}, headers={"X-User-Id": "nobody"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "no_providers"


@pytest.mark.asyncio
async def test_create_job_for_unconnected_provider(api_client, pipeline, gmail_credentials):
    pipeline.credential_supplier._credentials[USER_ID] = [gmail_credentials]

    async with api_client as client:
        response = await client.post("/jobs", json={"providers": ["gmail", "outlook"]})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "provider_not_connected"
    assert "outlook" in detail["message"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"max_results": 0},
        {"max_results": 501},
        {"providers": ["yahoo"]},
        {"start_date": "2024-06-02T00:00:00Z", "end_date": "2024-06-01T00:00:00Z"},
    ],
)
async def test_create_job_rejects_invalid_body(api_client, body):
    async with api_client as client:
        response = await client.post("/jobs", json=body)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_jobs_are_private_to_their_owner(api_client):
    async with api_client as client:
        job_id = (await client.post("/jobs", json={})).json()["job_id"]

        foreign = await client.get(f"/jobs/{job_id}", headers={"X-User-Id": "someone-else"})
        missing = await client.get("/jobs/does-not-exist")

    assert foreign.status_code == 404
    assert foreign.json()["detail"]["error"] == "job_not_found"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_cancel_pending_job_conflicts(api_client):
    async with api_client as client:
        job_id = (await client.post("/jobs", json={})).json()["job_id"]
        response = await client.post(f"/jobs/{job_id}/cancel")

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "job_not_cancellable"
    assert "pending" in detail["message"]


@pytest.mark.asyncio
async def test_list_jobs_and_stats(api_client, pipeline, gmail_inbox):
    async with api_client as client:
        first = (await client.post("/jobs", json={})).json()["job_id"]
        await pipeline.job_manager.process_job_id(first)
        await client.post("/jobs", json={})

        listing = await client.get("/jobs", params={"limit": 10})
        stats = await client.get("/jobs/stats")

    assert listing.status_code == 200
    assert listing.json()["count"] == 2
    assert {j["status"] for j in listing.json()["jobs"]} == {"completed", "pending"}

    assert stats.status_code == 200
    data = stats.json()
    assert data["total_jobs"] == 2
    assert data["completed_jobs"] == 1
    assert data["failed_jobs"] == 0
    assert data["total_emails_processed"] == 2


@pytest.mark.asyncio
async def test_create_job_carries_rate_limit_headers(api_client):
    async with api_client as client:
        response = await client.post("/jobs", json={})

    assert response.headers["X-RateLimit-Limit"] == "50"
    assert response.headers["X-RateLimit-Remaining"] == "49"
