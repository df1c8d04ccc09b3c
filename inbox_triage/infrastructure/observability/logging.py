"""
structlog configuration shared by the API process and the worker CLI.

Entries are JSON lines carrying the emitting logger, level, ISO timestamp
and whatever the current request has bound through structlog.contextvars
(request_id, user_id).
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

SERVICE_NAME = "inbox-triage"

# Third-party loggers that log every HTTP round trip at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "uvicorn.access")


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: JSON lines when True, the coloured console renderer otherwise
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_name,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper()))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_service_name(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_health_check(dependency: str, healthy: bool, latency_ms: float | None, error: str | None = None) -> None:
    """One line per dependency probed by /readyz."""
    logger = get_logger("health")
    fields = {"dependency": dependency, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        fields["error"] = error

    if healthy:
        logger.info("Dependency healthy", **fields)
    else:
        logger.error("Dependency unhealthy", **fields)


def log_job_event(job_id: str, user_id: str, status: str, progress: int, **extra: Any) -> None:
    """Job state transitions. Failed transitions are logged at WARNING."""
    logger = get_logger("jobs")
    fields = {"job_id": job_id, "user_id": user_id, "status": status, "progress": progress, **extra}

    if status == "failed":
        logger.warning("Job transition", **fields)
    else:
        logger.info("Job transition", **fields)
