"""
FIFO job queues carrying job ids.

InMemoryJobQueue serves a single process. RedisJobQueue moves each id onto
an in-flight list while it runs, so ids claimed by a crashed worker can be
put back with ``requeue_inflight``.
"""

import asyncio
from collections.abc import Awaitable, Callable

from inbox_triage.errors import StorageError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.job_domain import JobStatus
from inbox_triage.services.redis_client import FastRedisClient

logger = get_logger(__name__)

StatusLookup = Callable[[str], Awaitable[JobStatus | None]]


class JobQueue:
    async def enqueue(self, job_id: str) -> None:
        raise NotImplementedError

    async def dequeue(self, timeout: float) -> str | None:
        """
        Next job id, or None when nothing arrived within ``timeout`` seconds.

        Raises StorageError when the queue itself is unreachable.
        """
        raise NotImplementedError

    async def ack(self, job_id: str) -> None:
        return None

    async def size(self) -> int:
        raise NotImplementedError


class InMemoryJobQueue(JobQueue):
    def __init__(self):
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def enqueue(self, job_id: str) -> None:
        await self._queue.put(job_id)

    async def dequeue(self, timeout: float) -> str | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    async def ack(self, job_id: str) -> None:
        self._queue.task_done()

    async def size(self) -> int:
        return self._queue.qsize()


class RedisJobQueue(JobQueue):
    def __init__(self, redis_client: FastRedisClient, key: str = "inbox_triage:jobs"):
        self.redis = redis_client
        self.key = key
        self.inflight_key = f"{key}:inflight"

    async def enqueue(self, job_id: str) -> None:
        # LPUSH + RPOPLPUSH gives FIFO order
        if not await self.redis.push_to_list(self.key, job_id, left=True):
            raise RuntimeError(f"Failed to enqueue job {job_id}")

    async def dequeue(self, timeout: float) -> str | None:
        try:
            return await self.redis.pop_to_inflight(
                self.key, self.inflight_key, timeout=max(1, int(timeout))
            )
        except Exception as e:
            raise StorageError(f"Job queue unavailable: {e}", operation="dequeue") from e

    async def ack(self, job_id: str) -> None:
        if not await self.redis.ack_from_inflight(self.inflight_key, job_id):
            logger.warning("Job id missing from in-flight list", job_id=job_id)

    async def requeue_inflight(self, lookup_status: StatusLookup) -> int:
        """
        Return in-flight ids whose job is still pending to the queue.

        Ids of processing jobs stay where they are since another instance may
        own them. Ids of finished or unknown jobs are dropped.
        """
        moved = dropped = 0
        for job_id in await self.redis.list_range(self.inflight_key):
            status = await lookup_status(job_id)
            if status == JobStatus.PENDING:
                if await self.redis.requeue_from_inflight(self.inflight_key, self.key, job_id):
                    moved += 1
            elif status != JobStatus.PROCESSING:
                if await self.redis.ack_from_inflight(self.inflight_key, job_id):
                    dropped += 1
        if moved or dropped:
            logger.info("Recovered in-flight jobs", requeued=moved, dropped=dropped)
        return moved

    async def size(self) -> int:
        return len(await self.redis.list_range(self.key))
