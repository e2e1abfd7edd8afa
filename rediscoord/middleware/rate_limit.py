"""Rate limiting middleware."""

import logging
import math
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from rediscoord.exceptions import RateLimitError
from rediscoord.redis.rate_limiter import RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-client request limiting for Starlette applications.

    Applies limits based on the X-Client-ID header or client IP and adds
    rate limit headers to all responses.
    """

    # Paths to exclude from rate limiting
    EXCLUDED_PATHS = {"/health", "/health/ready", "/docs", "/redoc", "/openapi.json"}

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        limit: int,
        window_seconds: float | None = None,
        sliding: bool = True,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.limit = limit
        self.window_seconds = window_seconds
        self.sliding = sliding

    async def _check(self, identifier: str) -> RateLimitResult:
        if self.sliding:
            return await self.limiter.check_sliding_window_limit(
                identifier, self.limit, self.window_seconds
            )
        return await self.limiter.check_limit(identifier, self.limit, self.window_seconds)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with rate limiting."""
        # Skip excluded paths
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        # Get identifier (client ID or IP)
        client_id = request.headers.get("X-Client-ID")
        client_ip = request.client.host if request.client else "unknown"
        identifier = client_id or client_ip

        result = await self._check(identifier)

        headers = {
            "X-RateLimit-Limit": str(result.total),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_time)),
        }

        if result.limited:
            logger.warning(f"Rate limit exceeded for {identifier}")
            retry_after = max(1, math.ceil(result.retry_after))
            error = RateLimitError(
                "Too many requests. Please try again later.",
                result.reset_time,
                retry_after,
            )
            return JSONResponse(
                status_code=429,
                content=error.to_dict(),
                headers={
                    **headers,
                    "Retry-After": str(retry_after),
                },
            )

        response = await call_next(request)

        for key, value in headers.items():
            response.headers[key] = value

        return response
