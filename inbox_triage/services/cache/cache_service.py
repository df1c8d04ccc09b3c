"""
Cache layer.

JSON values with TTLs over a pluggable backend. A cache failure is never a
pipeline failure: every store error is logged and reported as a miss or
a no-op.

Key namespaces:
    emails:<user>:<filter>        email list views
    ai:analysis:<message_id>      analysis results
    user:<user>                   user profile / context
    slack:<workspace>:<channel>   slack message lists
"""

import json
from typing import Any

from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import AnalysisResult, UserContext
from inbox_triage.services.cache.backends import CacheBackend

logger = get_logger(__name__)


class CacheService:
    def __init__(self, backend: CacheBackend):
        self.backend = backend

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning("Cache get failed", key=key[:60], error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding undecodable cache entry", key=key[:60], error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            payload = json.dumps(value, default=str)
            return bool(await self.backend.set(key, payload, ttl_seconds))
        except Exception as e:
            logger.warning("Cache set failed", key=key[:60], error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.backend.delete(key))
        except Exception as e:
            logger.warning("Cache delete failed", key=key[:60], error=str(e))
            return False

    async def delete_by_prefix(self, prefix: str) -> int:
        try:
            removed = await self.backend.delete_by_prefix(prefix)
            logger.debug("Cache prefix invalidated", prefix=prefix, removed=removed)
            return removed
        except Exception as e:
            logger.warning("Cache prefix delete failed", prefix=prefix[:60], error=str(e))
            return 0

    async def is_available(self) -> bool:
        try:
            return bool(await self.backend.ping())
        except Exception as e:
            logger.warning("Cache availability check failed", error=str(e))
            return False


class EmailListCache:
    def __init__(self, cache: CacheService, ttl_seconds: int = 300):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(user_id: str, status_filter: str | None = None) -> str:
        return f"emails:{user_id}:{status_filter or 'all'}"

    async def get(self, user_id: str, status_filter: str | None = None) -> list[dict] | None:
        return await self.cache.get(self.key(user_id, status_filter))

    async def set(self, user_id: str, emails: list[dict], status_filter: str | None = None) -> bool:
        return await self.cache.set(self.key(user_id, status_filter), emails, self.ttl_seconds)

    async def invalidate_user(self, user_id: str) -> int:
        return await self.cache.delete_by_prefix(f"emails:{user_id}:")


class AnalysisCache:
    def __init__(self, cache: CacheService, ttl_seconds: int = 3600):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(message_id: str) -> str:
        return f"ai:analysis:{message_id}"

    async def get(self, message_id: str) -> AnalysisResult | None:
        data = await self.cache.get(self.key(message_id))
        if not data:
            return None
        try:
            return AnalysisResult.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cached analysis", message_id=message_id, error=str(e))
            await self.cache.delete(self.key(message_id))
            return None

    async def set(self, analysis: AnalysisResult) -> bool:
        return await self.cache.set(self.key(analysis.message_id), analysis.to_dict(), self.ttl_seconds)

    async def invalidate(self, message_id: str) -> bool:
        return await self.cache.delete(self.key(message_id))


class UserProfileCache:
    def __init__(self, cache: CacheService, ttl_seconds: int = 1800):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(user_id: str) -> str:
        return f"user:{user_id}"

    async def get(self, user_id: str) -> UserContext | None:
        data = await self.cache.get(self.key(user_id))
        return UserContext.from_dict(data) if data else None

    async def set(self, user_id: str, context: UserContext) -> bool:
        return await self.cache.set(self.key(user_id), context.to_dict(), self.ttl_seconds)

    async def invalidate(self, user_id: str) -> bool:
        return await self.cache.delete(self.key(user_id))


class SlackMessageCache:
    def __init__(self, cache: CacheService, ttl_seconds: int = 60):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(workspace_id: str, channel_id: str | None = None) -> str:
        return f"slack:{workspace_id}:{channel_id or 'all'}"

    async def get(self, workspace_id: str, channel_id: str | None = None) -> list[dict] | None:
        return await self.cache.get(self.key(workspace_id, channel_id))

    async def set(
        self, workspace_id: str, messages: list[dict], channel_id: str | None = None
    ) -> bool:
        return await self.cache.set(self.key(workspace_id, channel_id), messages, self.ttl_seconds)

    async def invalidate_workspace(self, workspace_id: str) -> int:
        return await self.cache.delete_by_prefix(f"slack:{workspace_id}:")
