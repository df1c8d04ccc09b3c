import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from inbox_triage.config import Settings
from inbox_triage.main import create_app
from inbox_triage.models.domain.message_domain import (
    EmailAddress,
    NormalizedMessage,
    ProviderCredentials,
)
from inbox_triage.services.analysis.openai_client import ModelCallResult
from inbox_triage.services.container import build_pipeline
from inbox_triage.services.suppliers import StaticCredentialSupplier

USER_ID = "user-123"


def _analysis_payload() -> dict:
    return {
        "summary": "Alice asks for a review of the Q3 report before Friday.",
        "priority": {"level": "high", "score": 0.8, "reasoning": "Explicit deadline"},
        "sentiment": {"type": "neutral", "score": 0.5, "reasoning": "Matter of fact"},
        "urgency": {"level": "today", "score": 0.7, "reasoning": "Due this week"},
        "actionRequired": True,
        "suggestedActions": ["Review the report", "Reply to Alice"],
        "keyTopics": ["Q3 report"],
        "vipContact": False,
        "vipScore": 0.2,
        "confidence": 0.9,
    }


class FakeModelClient:
    """Stands in for ModelClient. ``responder`` decides each call's ModelCallResult."""

    model = "gpt-4o-test"

    def __init__(self):
        self.calls: list[str] = []
        self.delay = 0.0
        self.responder = lambda system, user: ModelCallResult(
            content=json.dumps(_analysis_payload()), attempts=1
        )

    async def complete_json(self, system_message: str, user_message: str) -> ModelCallResult:
        self.calls.append(user_message)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.responder(system_message, user_message)


class FakeAdapter:
    """Provider adapter returning canned messages or raising a canned error."""

    def __init__(self, provider: str):
        self.provider = provider
        self.messages: list[NormalizedMessage] = []
        self.error: Exception | None = None
        self.calls = []
        self.watch_calls = []

    async def fetch(self, credentials, options):
        self.calls.append((credentials, options))
        if self.error is not None:
            raise self.error
        return list(self.messages)

    async def watch(self, credentials):
        self.watch_calls.append(credentials)
        return {"provider": self.provider, "subscription_id": f"sub-{self.provider}"}


class FakeRedis:
    """In-memory subset of FastRedisClient used by the Redis-backed cache and queue."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        self._check()
        return self.store.pop(key, None) is not None

    async def delete_by_prefix(self, prefix: str, batch_size: int = 200) -> int:
        self._check()
        doomed = [k for k in self.store if k.startswith(prefix)]
        for key in doomed:
            del self.store[key]
        return len(doomed)

    async def ping(self) -> bool:
        return not self.fail

    async def eval_script(self, script: str, keys: list[str], args: list) -> list:
        self._check()
        raise NotImplementedError("Lua is not emulated")

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def pop_to_inflight(self, source_key: str, inflight_key: str, timeout: int = 0) -> str | None:
        self._check()
        items = self.lists.get(source_key) or []
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(inflight_key, []).insert(0, value)
        return value

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        items = self.lists.get(inflight_key) or []
        if value not in items:
            return False
        self.lists[inflight_key] = [v for v in items if v != value]
        return True

    async def requeue_from_inflight(self, inflight_key: str, destination_key: str, value: str) -> bool:
        self.lists[inflight_key] = [v for v in self.lists.get(inflight_key, []) if v != value]
        self.lists.setdefault(destination_key, []).append(value)
        return True

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        return list(self.lists.get(key, []))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def analysis_payload():
    return _analysis_payload()


@pytest.fixture
def message_factory():
    def _make(
        message_id: str = "msg-1",
        *,
        provider: str = "gmail",
        subject: str = "Q3 report review",
        sender: str = "alice@example.com",
        sender_name: str | None = "Alice",
        body: str = "Hi, please review the attached Q3 report before Friday. Thanks!",
        received_at: datetime | None = None,
        **overrides,
    ) -> NormalizedMessage:
        return NormalizedMessage(
            id=message_id,
            thread_id=f"thread-{message_id}",
            provider=provider,
            sender=EmailAddress(sender, sender_name),
            subject=subject,
            received_at=received_at or datetime.now(UTC) - timedelta(hours=3),
            to=(EmailAddress("me@example.com"),),
            body_text=body,
            **overrides,
        )

    return _make


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="memory",
        JOB_QUEUE_BACKEND="memory",
        REDIS_URL=None,
        UPSTASH_REDIS_REST_URL=None,
        UPSTASH_REDIS_REST_TOKEN=None,
        OPENAI_API_KEY="test-key",
        ANALYSIS_BATCH_DELAY_SECONDS=0,
        WORKER_IN_PROCESS=False,
        JOB_QUEUE_POLL_SECONDS=1,
    )


@pytest.fixture
def model_client():
    return FakeModelClient()


@pytest.fixture
def adapters():
    return {"gmail": FakeAdapter("gmail"), "outlook": FakeAdapter("outlook")}


@pytest.fixture
def gmail_credentials():
    return ProviderCredentials(provider="gmail", access_token="gmail-token", user_id=USER_ID)


@pytest.fixture
def outlook_credentials():
    return ProviderCredentials(provider="outlook", access_token="outlook-token", user_id=USER_ID)


@pytest.fixture
def credential_supplier(gmail_credentials, outlook_credentials):
    return StaticCredentialSupplier({USER_ID: [gmail_credentials, outlook_credentials]})


@pytest.fixture
def pipeline(test_settings, model_client, adapters, credential_supplier):
    return build_pipeline(
        test_settings,
        model_client=model_client,
        adapters=adapters,
        credential_supplier=credential_supplier,
    )


@pytest.fixture
def app(test_settings, pipeline):
    application = create_app(test_settings, pipeline)
    # ASGITransport does not run the lifespan
    application.state.pipeline = pipeline
    return application


@pytest.fixture
def api_client(app):
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver", headers={"X-User-Id": USER_ID})
