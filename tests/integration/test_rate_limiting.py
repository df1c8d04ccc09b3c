from types import SimpleNamespace

from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from inbox_triage.middleware.rate_limit_dependencies import derive_identity, rate_limit_dependency
from inbox_triage.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from inbox_triage.services.rate_limiter import (
    InMemoryRateLimitBackend,
    RateLimitDecision,
    RateLimiter,
    RateLimitProfile,
)


def limited_app(profile: RateLimitProfile, enabled: bool = True) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)
    limiter = RateLimiter(InMemoryRateLimitBackend(), {profile.name: profile}, enabled=enabled)
    app.state.pipeline = SimpleNamespace(rate_limiter=limiter)

    @app.get("/limited", dependencies=[Depends(rate_limit_dependency(profile.name))])
    async def limited():
        return {"ok": True}

    return app


def test_rate_limit_headers_middleware():
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)

    @app.get("/limited")
    async def limited(request: Request):
        request.state.rate_limit_info = RateLimitDecision(
            allowed=True, remaining=9, reset_at=1_700_000_060_000, retry_after_seconds=0, limit=10
        )
        return {"ok": True}

    client = TestClient(app)
    response = client.get("/limited")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"
    assert response.headers["X-RateLimit-Reset"] == "1700000060"
    assert "Retry-After" not in response.headers


def test_rate_limit_dependency_blocks():
    app = limited_app(RateLimitProfile("api", 60_000, 2, "rl:api", "ip"))
    client = TestClient(app)

    assert client.get("/limited").headers["X-RateLimit-Remaining"] == "1"
    assert client.get("/limited").status_code == 200
    response = client.get("/limited")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    detail = response.json()["detail"]
    assert detail["error"] == "rate_limit_exceeded"
    assert detail["limit"] == 2


def test_user_profile_limits_each_user_separately():
    app = limited_app(RateLimitProfile("ai", 60_000, 1, "rl:ai", "user"))
    client = TestClient(app)

    assert client.get("/limited", headers={"X-User-Id": "alice"}).status_code == 200
    assert client.get("/limited", headers={"X-User-Id": "alice"}).status_code == 429
    assert client.get("/limited", headers={"X-User-Id": "bob"}).status_code == 200


def test_disabled_limiter_sets_no_headers():
    app = limited_app(RateLimitProfile("api", 60_000, 0, "rl:api", "ip"), enabled=False)
    response = TestClient(app).get("/limited")

    assert response.status_code == 200
    assert "X-RateLimit-Limit" not in response.headers


def test_derive_identity():
    seen = {}
    app = FastAPI()

    @app.post("/hooks/{source}")
    async def hook(source: str, request: Request):
        request.state.ip_address = "10.0.0.7"
        for identity in ("ip", "ip_path", "user", "source"):
            profile = RateLimitProfile(identity, 60_000, 10, f"rl:{identity}", identity)
            seen[identity] = derive_identity(profile, request)
        return {"ok": True}

    TestClient(app).post("/hooks/gmail", headers={"X-User-Id": "user-123"})

    assert seen == {
        "ip": "10.0.0.7",
        "ip_path": "10.0.0.7:/hooks/gmail",
        "user": "user-123",
        "source": "gmail",
    }
