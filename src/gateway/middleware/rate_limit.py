"""Rate limiting middleware for the gate API.

- Fixed window with burst allowance (src.safety.rate_limit.RateLimiter)
- Keyed by client host; an X-Client-Id header takes precedence
- Exceeding the limit -> 429 with Retry-After
- Limit headers are added to every non-exempt response
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse

from src.safety.rate_limit import RateLimitConfig, RateLimiter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import Request, Response

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset({"/healthz", "/metrics", "/docs", "/openapi.json", "/redoc"})

DEFAULT_API_LIMITS = RateLimitConfig(window_ms=60_000, max_requests=60, burst_size=10)


def client_key(request: Request) -> str:
    explicit = request.headers.get("x-client-id")
    if explicit:
        return f"rl:client:{explicit}"
    host = request.client.host if request.client else "unknown"
    return f"rl:host:{host}"


class RateLimitMiddleware:
    """Callable middleware for request rate limiting.

    Usage with FastAPI:
        middleware = RateLimitMiddleware(config=config)
        app.middleware("http")(middleware)
    """

    def __init__(
        self,
        *,
        limiter: RateLimiter | None = None,
        config: RateLimitConfig | None = None,
        exempt_paths: frozenset[str] | None = None,
    ) -> None:
        self._config = config or DEFAULT_API_LIMITS
        self._limiter = limiter or RateLimiter(self._config)
        self._exempt_paths = exempt_paths or _EXEMPT_PATHS

    @property
    def limit(self) -> int:
        return self._config.max_requests + self._config.effective_burst

    async def __call__(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        key = client_key(request)
        result = self._limiter.check(key)

        if not result.allowed:
            logger.info("Rate limited %s on %s", key, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"error": "RATE_LIMITED", "message": "Too many requests"},
                headers={
                    "Retry-After": str(result.retry_after or 1),
                    "X-RateLimit-Limit": str(self.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        return response
