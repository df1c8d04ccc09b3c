"""
Postgres pool for the job store and the credential/profile tables.

The composition root creates one DatabasePoolManager per process when
STORAGE_BACKEND is "postgres"; Pipeline.start() opens it and Pipeline.close()
drains it.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0


class DatabasePoolManager:
    def __init__(
        self,
        conninfo: str,
        pool_config: dict[str, Any] | None = None,
        application_name: str = "inbox-triage",
    ):
        self.conninfo = conninfo
        self.pool_config = dict(pool_config or {})
        self.application_name = application_name
        self.pool: AsyncConnectionPool | None = None
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self.pool is not None and not self._closed

    async def initialize(self) -> None:
        """Open the pool and run one query through it before reporting ready."""
        if self.pool is not None:
            logger.warning("Database pool already open")
            return
        if self._closed:
            raise RuntimeError("Database pool was closed and cannot be reopened")

        pool = AsyncConnectionPool(
            conninfo=self.conninfo,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **self.pool_config,
        )
        try:
            await pool.open(wait=True)
            self.pool = pool
            await self._select_one()
        except Exception as e:
            logger.error("Database pool failed to open", error=str(e))
            self.pool = None
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info(
            "Database pool open",
            min_size=self.pool_config.get("min_size"),
            max_size=self.pool_config.get("max_size"),
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        # Rows come back as dicts; statements autocommit outside conn.transaction()
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(sql.Literal(self.application_name))
        )
        await conn.execute("SET timezone = 'UTC'")

    async def _select_one(self) -> None:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database round trip returned an unexpected row")

    async def close(self) -> None:
        if self.pool is None or self._closed:
            return
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out", timeout_s=CLOSE_TIMEOUT_SECONDS)
        finally:
            self.pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self.is_ready:
            raise RuntimeError("Database pool is not open")
        async with self.pool.connection() as conn:
            yield conn

    async def health_check(self) -> dict[str, Any]:
        """Round trip latency and pool occupancy for /readyz."""
        if not self.is_ready:
            return {"healthy": False, "error": "Pool is not open"}

        started = time.perf_counter()
        try:
            await self._select_one()
        except Exception as e:
            logger.error("Database health check failed", error=str(e), error_type=type(e).__name__)
            return {"healthy": False, "error": f"{type(e).__name__}: {e}"}

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        return {
            "healthy": True,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "pool_size": size,
            "pool_available": available,
            "requests_waiting": waiting,
            "saturated": size > 0 and available == 0 and waiting > 0,
        }
