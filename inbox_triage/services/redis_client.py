"""
Shared async Redis client for the rate limiter, the cache and the job queue.

Data helpers never raise: a failed command is logged and the helper returns
its neutral value (None, False, 0 or []). ``eval_script`` and
``pop_to_inflight`` raise instead, because their callers decide how to
degrade: the rate limiter may fail open and the job worker backs off.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class FastRedisClient:
    def __init__(self, url: str, max_connections: int = 20, socket_timeout: float = 10.0):
        self.url = url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None

    async def initialize(self) -> None:
        """Build the connection pool and verify it with PING."""
        if self.client is not None:
            return

        pool = ConnectionPool.from_url(
            self.url,
            max_connections=self.max_connections,
            retry_on_timeout=True,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            socket_connect_timeout=self.socket_timeout,
            socket_timeout=self.socket_timeout,
            health_check_interval=30,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except Exception as e:
            await pool.disconnect()
            logger.error("Redis unreachable", host=self.url.split("@")[-1][:40], error=str(e))
            raise RuntimeError("Redis initialization failed") from e

        self.pool, self.client = pool, client
        logger.info("Redis client ready", max_connections=self.max_connections)

    async def close(self) -> None:
        client, pool = self.client, self.pool
        self.client = self.pool = None
        try:
            if client is not None:
                await client.aclose()
            if pool is not None:
                await pool.disconnect()
        except Exception as e:
            logger.error("Redis close failed", error=str(e))

    async def _run(self, command: str, key: str, default: T, call: Callable[[redis.Redis], Awaitable[T]]) -> T:
        try:
            if self.client is None:
                await self.initialize()
            return await call(self.client)
        except Exception as e:
            logger.error("Redis command failed", command=command, key=key[:40], error=str(e))
            return default

    async def ping(self) -> bool:
        return bool(await self._run("PING", "", False, lambda c: c.ping()))

    async def get(self, key: str) -> str | None:
        return await self._run("GET", key, None, lambda c: c.get(key))

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        async def _set(c: redis.Redis) -> bool:
            if ttl_s:
                return bool(await c.setex(key, ttl_s, value))
            return bool(await c.set(key, value))

        return await self._run("SET", key, False, _set)

    async def delete(self, key: str) -> bool:
        async def _delete(c: redis.Redis) -> bool:
            return await c.delete(key) > 0

        return await self._run("DEL", key, False, _delete)

    async def delete_by_prefix(self, prefix: str, batch_size: int = 200) -> int:
        """SCAN the prefix and delete matches in batches. Returns keys removed."""

        async def _scan_delete(c: redis.Redis) -> int:
            removed = 0
            batch: list[str] = []
            async for key in c.scan_iter(match=f"{prefix}*", count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    removed += await c.delete(*batch)
                    batch.clear()
            if batch:
                removed += await c.delete(*batch)
            return removed

        return await self._run("SCAN+DEL", prefix, 0, _scan_delete)

    async def eval_script(self, script: str, keys: list[str], args: list[Any]) -> Any:
        if self.client is None:
            await self.initialize()
        return await self.client.eval(script, len(keys), *keys, *args)

    # Lists backing RedisJobQueue

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        async def _push(c: redis.Redis) -> bool:
            length = await (c.lpush(key, value) if left else c.rpush(key, value))
            return length > 0

        return await self._run("LPUSH" if left else "RPUSH", key, False, _push)

    async def pop_to_inflight(self, source_key: str, inflight_key: str, timeout: int = 0) -> str | None:
        """
        Move the oldest item onto the in-flight list, blocking up to ``timeout`` seconds.

        Raises on failure so an idle consumer can tell an outage from an empty list.
        """
        if self.client is None:
            await self.initialize()
        if timeout > 0:
            return await self.client.brpoplpush(source_key, inflight_key, timeout=timeout)
        return await self.client.rpoplpush(source_key, inflight_key)

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        async def _ack(c: redis.Redis) -> bool:
            return await c.lrem(inflight_key, 0, value) > 0

        return await self._run("LREM", inflight_key, False, _ack)

    async def requeue_from_inflight(self, inflight_key: str, destination_key: str, value: str) -> bool:
        """Atomically move one in-flight item back to the consuming end of the queue."""

        async def _requeue(c: redis.Redis) -> bool:
            async with c.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 0, value)
                pipe.rpush(destination_key, value)
                results = await pipe.execute()
            return bool(results and results[-1])

        return await self._run("LREM+RPUSH", inflight_key, False, _requeue)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        async def _range(c: redis.Redis) -> list[str]:
            return [str(item) for item in await c.lrange(key, start, end)]

        return await self._run("LRANGE", key, [], _range)
