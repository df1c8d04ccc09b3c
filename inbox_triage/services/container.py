"""
Composition root.

build_pipeline() wires every service from settings, picking Redis or
in-process backends for the rate limiter, cache and job queue and Postgres
or in-memory storage. The FastAPI lifespan and the worker CLI both hold
exactly one Pipeline and drive it through start() / close().
"""

from dataclasses import dataclass, field

from fastapi import Request

from inbox_triage.config import Settings
from inbox_triage.db.pool import DatabasePoolManager
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.job_domain import JobStatus
from inbox_triage.repositories.job_repository import (
    InMemoryJobRepository,
    JobRepository,
    PostgresJobRepository,
)
from inbox_triage.services.analysis.analysis_engine import AnalysisEngine
from inbox_triage.services.analysis.openai_client import ModelClient
from inbox_triage.services.cache.backends import InMemoryCacheBackend, RedisCacheBackend
from inbox_triage.services.cache.cache_service import (
    AnalysisCache,
    CacheService,
    EmailListCache,
    SlackMessageCache,
    UserProfileCache,
)
from inbox_triage.services.fetchers.base import ProviderAdapter
from inbox_triage.services.fetchers.gmail_fetcher import GmailFetcher
from inbox_triage.services.fetchers.message_fetcher import MessageFetcher
from inbox_triage.services.fetchers.outlook_fetcher import OutlookFetcher
from inbox_triage.services.job_manager import JobManager
from inbox_triage.services.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from inbox_triage.services.message_service import MessageService
from inbox_triage.services.rate_limiter import (
    InMemoryRateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
    build_profiles,
)
from inbox_triage.services.redis_client import FastRedisClient
from inbox_triage.services.suppliers import (
    CredentialSupplier,
    DatabaseCredentialSupplier,
    DatabaseUserContextSupplier,
    StaticCredentialSupplier,
    StaticUserContextSupplier,
    UserContextSupplier,
    ensure_supplier_schema,
)

logger = get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    rate_limiter: RateLimiter
    cache: CacheService
    email_list_cache: EmailListCache
    analysis_cache: AnalysisCache
    user_profile_cache: UserProfileCache
    slack_cache: SlackMessageCache
    fetcher: MessageFetcher
    engine: AnalysisEngine
    repository: JobRepository
    queue: JobQueue
    credential_supplier: CredentialSupplier
    user_context_supplier: UserContextSupplier
    job_manager: JobManager
    message_service: MessageService
    redis: FastRedisClient | None = None
    db_pool: DatabasePoolManager | None = None
    started: list[str] = field(default_factory=list)

    async def start(self) -> None:
        """Open connections and prepare storage. Partially opened resources are closed on failure."""
        try:
            if self.db_pool is not None:
                logger.info("Initializing database pool")
                await self.db_pool.initialize()
                self.started.append("database_pool")
                await self.repository.ensure_schema()
                await ensure_supplier_schema(self.db_pool)

            if self.redis is not None:
                logger.info("Initializing Redis connection")
                await self.redis.initialize()
                self.started.append("redis")

            if isinstance(self.queue, RedisJobQueue):
                await self.queue.requeue_inflight(self._stored_status)

            logger.info("Pipeline services initialized", services=self.started)
        except Exception as e:
            logger.error("Failed to initialize pipeline", error=str(e), completed_tasks=self.started)
            await self.close()
            raise

    async def _stored_status(self, job_id: str) -> JobStatus | None:
        job = await self.repository.get_job(job_id)
        return job.status if job is not None else None

    async def close(self) -> None:
        """Stop the worker and close connections in reverse order."""
        shutdown_errors = []

        await self.job_manager.stop()

        if "redis" in self.started and self.redis is not None:
            try:
                await self.redis.close()
            except Exception as e:
                logger.error("Error closing Redis", error=str(e))
                shutdown_errors.append(f"Redis: {e}")

        if "database_pool" in self.started and self.db_pool is not None:
            try:
                await self.db_pool.close()
            except Exception as e:
                logger.error("Error closing database pool", error=str(e))
                shutdown_errors.append(f"Database: {e}")

        self.started.clear()
        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("Pipeline services closed")


def build_adapters(settings: Settings) -> dict[str, ProviderAdapter]:
    common = {
        "timeout_seconds": settings.PROVIDER_TIMEOUT_SECONDS,
        "page_size": settings.PROVIDER_PAGE_SIZE,
        "default_max_results": settings.PROVIDER_DEFAULT_MAX_RESULTS,
    }
    return {
        "gmail": GmailFetcher(pubsub_topic=settings.GOOGLE_PUBSUB_TOPIC, **common),
        "outlook": OutlookFetcher(notification_url=settings.GRAPH_NOTIFICATION_URL, **common),
    }


def build_pipeline(
    settings: Settings,
    *,
    redis_client: FastRedisClient | None = None,
    model_client: ModelClient | None = None,
    adapters: dict[str, ProviderAdapter] | None = None,
    repository: JobRepository | None = None,
    credential_supplier: CredentialSupplier | None = None,
    user_context_supplier: UserContextSupplier | None = None,
    queue: JobQueue | None = None,
) -> Pipeline:
    """
    Wire the pipeline. Explicit arguments override what settings would build,
    which is how tests swap in fakes.
    """
    redis_url = settings.redis_url()
    if redis_client is None and redis_url:
        redis_client = FastRedisClient(redis_url)
    if redis_client is None:
        logger.warning("Redis not configured, using in-process rate limiter, cache and queue")

    # Rate limiter
    limiter_backend = (
        RedisRateLimitBackend(redis_client) if redis_client is not None else InMemoryRateLimitBackend()
    )
    rate_limiter = RateLimiter(
        limiter_backend,
        build_profiles(settings),
        fail_open=settings.RATE_LIMIT_FAIL_OPEN,
        enabled=settings.RATE_LIMIT_ENABLED,
    )

    # Cache
    cache_backend = (
        RedisCacheBackend(redis_client) if redis_client is not None else InMemoryCacheBackend()
    )
    cache = CacheService(cache_backend)
    email_list_cache = EmailListCache(cache, settings.CACHE_TTL_EMAILS)
    analysis_cache = AnalysisCache(cache, settings.CACHE_TTL_AI_ANALYSIS)
    user_profile_cache = UserProfileCache(cache, settings.CACHE_TTL_USER_DATA)
    slack_cache = SlackMessageCache(cache, settings.CACHE_TTL_SLACK_MESSAGES)

    # Storage
    db_pool = None
    if repository is None:
        if settings.STORAGE_BACKEND == "postgres":
            db_pool = DatabasePoolManager(
                settings.DATABASE_URL,
                settings.get_db_pool_config(),
                application_name=f"inbox-triage-{settings.environment}",
            )
            repository = PostgresJobRepository(db_pool)
        else:
            repository = InMemoryJobRepository()

    if credential_supplier is None:
        credential_supplier = (
            DatabaseCredentialSupplier(db_pool) if db_pool is not None else StaticCredentialSupplier()
        )
    if user_context_supplier is None:
        user_context_supplier = (
            DatabaseUserContextSupplier(db_pool, user_profile_cache)
            if db_pool is not None
            else StaticUserContextSupplier()
        )

    # Queue
    if queue is None:
        if settings.JOB_QUEUE_BACKEND == "redis" and redis_client is not None:
            queue = RedisJobQueue(redis_client, settings.JOB_QUEUE_KEY)
        else:
            queue = InMemoryJobQueue()

    fetcher = MessageFetcher(adapters if adapters is not None else build_adapters(settings))
    engine = AnalysisEngine(
        model_client or ModelClient.from_settings(settings),
        rate_limiter,
        analysis_cache,
        batch_size=settings.ANALYSIS_BATCH_SIZE,
        batch_delay_seconds=settings.ANALYSIS_BATCH_DELAY_SECONDS,
        max_concurrency=settings.ANALYSIS_MAX_CONCURRENCY,
        body_char_limit=settings.ANALYSIS_BODY_CHAR_LIMIT,
    )

    job_manager = JobManager(
        repository,
        fetcher,
        engine,
        queue,
        credential_supplier,
        user_context_supplier,
        email_list_cache,
        batch_size=settings.ANALYSIS_BATCH_SIZE,
        poll_seconds=settings.JOB_QUEUE_POLL_SECONDS,
        auto_start_worker=settings.WORKER_IN_PROCESS,
    )
    message_service = MessageService(
        repository, engine, email_list_cache, analysis_cache, user_context_supplier
    )

    return Pipeline(
        settings=settings,
        rate_limiter=rate_limiter,
        cache=cache,
        email_list_cache=email_list_cache,
        analysis_cache=analysis_cache,
        user_profile_cache=user_profile_cache,
        slack_cache=slack_cache,
        fetcher=fetcher,
        engine=engine,
        repository=repository,
        queue=queue,
        credential_supplier=credential_supplier,
        user_context_supplier=user_context_supplier,
        job_manager=job_manager,
        message_service=message_service,
        redis=redis_client,
        db_pool=db_pool,
    )


def get_pipeline(request: Request) -> Pipeline:
    """FastAPI dependency returning the pipeline opened by the lifespan."""
    return request.app.state.pipeline
