"""
Rate Limit Dependencies - per-profile route guards.

Usage:
    @router.post("/jobs")
    async def create_job(
        request: Request,
        _rate: None = Depends(rate_limit_dependency("email")),
    ):
        ...

The guard derives the limiter key from the profile's identity (client IP,
IP plus path, upstream user id, or webhook source), stores the decision in
request.state.rate_limit_info and raises 429 with Retry-After on denial.
"""

from fastapi import HTTPException, Request, status

from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.services.rate_limiter import RateLimitProfile

logger = get_logger(__name__)


def _client_ip(request: Request) -> str:
    ip_address = getattr(request.state, "ip_address", None)
    if ip_address:
        return ip_address
    return request.client.host if request.client else "unknown"


def derive_identity(profile: RateLimitProfile, request: Request) -> str:
    ip_address = _client_ip(request)
    if profile.identity == "ip_path":
        return f"{ip_address}:{request.url.path}"
    if profile.identity == "user":
        return request.headers.get("x-user-id") or ip_address
    if profile.identity == "source":
        return (
            request.path_params.get("source")
            or request.headers.get("x-webhook-source")
            or ip_address
        )
    return ip_address


def rate_limit_dependency(profile_name: str):
    """Build a FastAPI dependency enforcing the named limiter profile."""

    async def guard(request: Request) -> None:
        rate_limiter = request.app.state.pipeline.rate_limiter
        if not rate_limiter.enabled:
            return

        profile = rate_limiter.profiles[profile_name]
        identity = derive_identity(profile, request)
        decision = await rate_limiter.admit_profile(profile_name, identity)
        request.state.rate_limit_info = decision

        if not decision.allowed:
            logger.warning(
                "Route rate limit exceeded",
                profile=profile_name,
                identity=identity,
                limit=decision.limit,
                retry_after=decision.retry_after_seconds,
                path=request.url.path,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limit_exceeded",
                    "message": (
                        f"Too many requests. Try again in {decision.retry_after_seconds} seconds."
                    ),
                    "limit": decision.limit,
                    "retry_after": decision.retry_after_seconds,
                },
                headers=decision.headers(),
            )

    guard.__name__ = f"rate_limit_{profile_name}"
    return guard
