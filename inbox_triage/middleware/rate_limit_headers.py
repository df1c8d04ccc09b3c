"""
Rate Limit Headers Middleware - rate limit info on successful responses.

Route guards store their RateLimitDecision in request.state.rate_limit_info;
this copies X-RateLimit-Limit / X-RateLimit-Remaining / X-RateLimit-Reset onto
the response. Denials already carry the headers on the 429 itself.
"""

from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        decision = getattr(request.state, "rate_limit_info", None)
        if decision is not None:
            for name, value in decision.headers().items():
                response.headers.setdefault(name, value)
        return response
