"""
Rate Limiter - sliding window admission control.

Tracks exact admission timestamps per key and admits a request only while
fewer than ``max_requests`` fall inside the trailing window.

Design:
- Pluggable backends: Redis sorted sets (atomic Lua script, shared across
  instances) or process-local dicts (tests, single process, degraded mode)
- Fail-open: a backend error admits the request and marks the decision
  degraded
- Named profiles map a traffic class (auth, api, ai, ...) to a window,
  a threshold and the identity the key is derived from

Usage:
    decision = await rate_limiter.admit_profile("ai", user_id)
    if not decision.allowed:
        raise RateLimitError("Too many requests", decision.retry_after_seconds)
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from inbox_triage.config import Settings
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.services.redis_client import FastRedisClient

logger = get_logger(__name__)


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after_seconds: int
    limit: int
    degraded: bool = False

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at // 1000),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


@dataclass(slots=True, frozen=True)
class RateLimitProfile:
    name: str
    window_ms: int
    max_requests: int
    key_prefix: str
    identity: str  # "ip", "ip_path", "user" or "source"

    def key_for(self, identity: str) -> str:
        return f"{self.key_prefix}:{identity}"


_PROFILE_IDENTITIES = {
    "auth": "ip",
    "api": "ip_path",
    "ai": "user",
    "analysis": "user",
    "email": "user",
    "webhook": "source",
    "general": "ip",
}


def build_profiles(settings: Settings) -> dict[str, RateLimitProfile]:
    """Named profiles with windows and thresholds taken from settings."""
    profiles = {}
    for name, (window_ms, max_requests) in settings.get_rate_limit_profiles().items():
        profiles[name] = RateLimitProfile(
            name=name,
            window_ms=window_ms,
            max_requests=max_requests,
            key_prefix=f"rl:{name}",
            identity=_PROFILE_IDENTITIES.get(name, "ip"),
        )
    return profiles


class RateLimitBackend:
    """Storage for sliding windows. ``hit`` returns (allowed, count before this request)."""

    async def hit(self, key: str, window_ms: int, max_requests: int, now_ms: int) -> tuple[bool, int]:
        raise NotImplementedError

    async def reset(self, key: str) -> None:
        raise NotImplementedError


class RedisRateLimitBackend(RateLimitBackend):
    """Sorted set per key, pruned and counted atomically in a Lua script."""

    # Returns {allowed (0 or 1), count before this request}
    SLIDING_WINDOW_LUA = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])
    local member = ARGV[4]

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local current_count = redis.call('ZCARD', key)

    if current_count >= limit then
        return {0, current_count}
    end

    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms)
    return {1, current_count}
    """

    def __init__(self, redis_client: FastRedisClient, namespace: str = "ratelimit"):
        self.redis = redis_client
        self.namespace = namespace

    async def hit(self, key: str, window_ms: int, max_requests: int, now_ms: int) -> tuple[bool, int]:
        member = f"{now_ms}:{time.time_ns()}"
        result = await self.redis.eval_script(
            self.SLIDING_WINDOW_LUA,
            [f"{self.namespace}:{key}"],
            [max_requests, window_ms, now_ms, member],
        )
        return bool(int(result[0])), int(result[1])

    async def reset(self, key: str) -> None:
        await self.redis.delete(f"{self.namespace}:{key}")


class InMemoryRateLimitBackend(RateLimitBackend):
    """Process-local windows guarded by an asyncio lock."""

    def __init__(self):
        self._windows: dict[str, list[int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, window_ms: int, max_requests: int, now_ms: int) -> tuple[bool, int]:
        async with self._lock:
            cutoff = now_ms - window_ms
            window = [ts for ts in self._windows.get(key, []) if ts > cutoff]
            current_count = len(window)
            allowed = current_count < max_requests
            if allowed:
                window.append(now_ms)
            if window:
                self._windows[key] = window
            else:
                self._windows.pop(key, None)
            return allowed, current_count

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)


class RateLimiter:
    """Sliding window limiter over a pluggable backend."""

    def __init__(
        self,
        backend: RateLimitBackend,
        profiles: dict[str, RateLimitProfile] | None = None,
        fail_open: bool = True,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.profiles = profiles or {}
        self.fail_open = fail_open
        self.enabled = enabled
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def admit(self, key: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        """
        Check and record one request for ``key``.

        Denied requests are not recorded. On backend failure the request is
        admitted with ``degraded=True`` unless fail-open is disabled.
        """
        now_ms = self._now_ms()
        reset_at = now_ms + window_ms
        retry_after = math.ceil(window_ms / 1000)

        if not self.enabled:
            return RateLimitDecision(True, max_requests, reset_at, 0, max_requests)

        try:
            allowed, current_count = await self.backend.hit(key, window_ms, max_requests, now_ms)
        except Exception as e:
            logger.warning(
                "rate_limiter_degraded",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return RateLimitDecision(True, max_requests, reset_at, 0, max_requests, degraded=True)
            return RateLimitDecision(False, 0, reset_at, retry_after, max_requests, degraded=True)

        if not allowed:
            logger.info("Rate limit exceeded", key=key, limit=max_requests, retry_after=retry_after)
            return RateLimitDecision(False, 0, reset_at, retry_after, max_requests)

        remaining = max(0, max_requests - current_count - 1)
        return RateLimitDecision(True, remaining, reset_at, 0, max_requests)

    async def admit_profile(self, profile_name: str, identity: str) -> RateLimitDecision:
        profile = self.profiles.get(profile_name)
        if profile is None:
            raise KeyError(f"Unknown rate limit profile: {profile_name}")
        return await self.admit(profile.key_for(identity), profile.window_ms, profile.max_requests)

    async def reset(self, key: str) -> None:
        await self.backend.reset(key)
