"""FastAPI application factory for the ship gate service.

- Gate API:  /api/v1/*  (rate limited per client)
- healthz:   exempt from rate limiting
- metrics:   Prometheus exposition, exempt from rate limiting
- Every GateError maps to a uniform {error, message} JSON body
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.gateway.middleware.rate_limit import RateLimitMiddleware
from src.shared.errors import (
    ConfigError,
    GateError,
    InputValidationError,
    NotFoundError,
    OperationTimeoutError,
    RateLimitExceededError,
)

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from fastapi import APIRouter
    from prometheus_client import CollectorRegistry


def _error_body(exc: GateError) -> dict[str, str]:
    return {"error": exc.code, "message": str(exc)}


def create_app(
    *,
    routers: list[APIRouter] | None = None,
    rate_limit: RateLimitMiddleware | None = None,
    registry: CollectorRegistry | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        routers: API routers to mount (see create_gate_router).
        rate_limit: Rate limit middleware; a default one is created if None.
        registry: Prometheus registry served on /metrics (default: global).
        lifespan: Async context manager factory for startup/shutdown lifecycle.
    """
    app = FastAPI(
        title="Ship Gate API",
        description="Verification and ship gate for AI-authored code changes",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    metrics_registry = registry if registry is not None else REGISTRY

    # -- Error handlers --

    @app.exception_handler(InputValidationError)
    async def _validation_error(_: Request, exc: InputValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content=_error_body(exc))

    @app.exception_handler(ConfigError)
    async def _config_error(_: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=422, content=_error_body(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(RateLimitExceededError)
    async def _rate_limited(_: Request, exc: RateLimitExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content=_error_body(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(OperationTimeoutError)
    async def _timeout(_: Request, exc: OperationTimeoutError) -> JSONResponse:
        return JSONResponse(status_code=504, content=_error_body(exc))

    @app.exception_handler(GateError)
    async def _gate_error(_: Request, exc: GateError) -> JSONResponse:
        return JSONResponse(status_code=500, content=_error_body(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code_map = {
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": code_map.get(exc.status_code, "HTTP_ERROR"),
                "message": exc.detail or f"HTTP {exc.status_code}",
            },
        )

    # -- Rate limiting --

    limiter = rate_limit or RateLimitMiddleware()
    app.state.rate_limit = limiter
    app.middleware("http")(limiter)

    # -- System routes --

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", tags=["system"], include_in_schema=False)
    async def metrics() -> Response:
        return Response(
            content=generate_latest(metrics_registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    for router in routers or []:
        app.include_router(router)

    return app
