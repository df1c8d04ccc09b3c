"""
FastAPI application with pipeline lifecycle management.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from inbox_triage.config import Settings, settings
from inbox_triage.infrastructure.observability.logging import get_logger, setup_logging
from inbox_triage.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from inbox_triage.middleware.request_context import RequestContextMiddleware
from inbox_triage.routes import health, jobs, messages
from inbox_triage.services.container import Pipeline, build_pipeline

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
logger = get_logger(__name__)


def create_app(app_settings: Settings | None = None, pipeline: Pipeline | None = None) -> FastAPI:
    """
    Build the application. A prebuilt pipeline (tests) is started and closed
    by the lifespan exactly like the one built from settings.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting", environment=app_settings.environment, debug=app_settings.debug)

        app.state.pipeline = pipeline or build_pipeline(app_settings)
        await app.state.pipeline.start()
        if app_settings.WORKER_IN_PROCESS:
            app.state.pipeline.job_manager.ensure_worker_running()

        yield

        logger.info("Application shutting down")
        await app.state.pipeline.close()

    app = FastAPI(
        title="Inbox Triage",
        description="Email ingestion and AI analysis pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware, trust_forwarded_for=app_settings.environment != "development")

    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(messages.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
