"""
Query helpers over DatabasePoolManager.

Every helper retries dropped connections (psycopg.OperationalError) with
exponential backoff and raises DatabaseError for anything else, so
repositories only ever translate one exception type.
"""

import asyncio
import functools
from typing import Any

import psycopg

from inbox_triage.db.pool import DatabasePoolManager
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def with_db_retry(max_retries: int = 2, base_delay: float = 0.1):
    """
    Retry transient connection failures; wrap every psycopg error in DatabaseError.

    Integrity and data errors are permanent and never retried.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            operation = func.__name__
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except psycopg.OperationalError as e:
                    if attempt >= max_retries:
                        logger.error("Database operation gave up", operation=operation, attempts=attempt + 1, error=str(e))
                        raise DatabaseError(f"{operation} failed: {e}", operation=operation) from e
                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning("Database operation retrying", operation=operation, attempt=attempt, delay=delay)
                    await asyncio.sleep(delay)
                except (psycopg.IntegrityError, psycopg.DataError) as e:
                    logger.error("Database operation rejected", operation=operation, error=str(e))
                    raise DatabaseError(f"{operation} rejected: {e}", operation=operation, recoverable=False) from e
                except psycopg.Error as e:
                    logger.error("Database operation failed", operation=operation, error=str(e))
                    raise DatabaseError(f"{operation} failed: {e}", operation=operation) from e

        return wrapper

    return decorator


@with_db_retry()
async def fetch_one(pool: DatabasePoolManager, query: str, params: tuple = ()) -> dict[str, Any] | None:
    """First row as a dict, or None."""
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()


@with_db_retry()
async def fetch_all(pool: DatabasePoolManager, query: str, params: tuple = ()) -> list[dict[str, Any]]:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()


@with_db_retry()
async def execute_query(pool: DatabasePoolManager, query: str, params: tuple = ()) -> int:
    """Run a statement and return the affected row count."""
    async with pool.connection() as conn:
        cursor = await conn.execute(query, params)
        return cursor.rowcount


@with_db_retry()
async def execute_many(pool: DatabasePoolManager, query: str, params_seq: list[tuple]) -> int:
    """Run one statement per parameter tuple in a single transaction."""
    if not params_seq:
        return 0
    async with pool.connection() as conn:
        async with conn.transaction():
            async with conn.cursor() as cur:
                await cur.executemany(query, params_seq)
    return len(params_seq)
