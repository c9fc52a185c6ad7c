"""
Resonance — FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (DB pool, optional Redis registry, cleanup
  scheduler, background task draining)
- CORS and a request-context middleware (request id, timeout, access log)
- Lifecycle error → HTTP status mapping
- Health-check endpoints (liveness + deep readiness)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from resonance.config import get_settings
from resonance.database import dispose_engine, get_engine, get_session_factory
from resonance.scheduler import build_scheduler
from resonance.services.container import build_container
from resonance.services.errors import (
    InvalidStateError,
    MatchingError,
    NotAuthorizedError,
    NotFoundError,
    TransientStoreFailure,
)
from resonance.services.notification_service import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    RedisConnectionRegistry,
)

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(get_settings().LOG_LEVEL.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("resonance")

DRAIN_TIMEOUT_SECONDS = 15




# ---------------------------------------------------------------------------
# Connection registry
# ---------------------------------------------------------------------------

async def _open_registry(settings) -> tuple[ConnectionRegistry, Any]:
    """Return ``(registry, redis_client)``.

    Without ``REDIS_URL`` the registry lives in process memory and the
    client is ``None``.
    """
    if not settings.REDIS_URL:
        logger.info("redis_skip", reason="REDIS_URL not configured")
        return InMemoryConnectionRegistry(), None

    import redis.asyncio as aioredis

    client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    await client.ping()
    logger.info("redis_connected", url=settings.REDIS_URL)
    return RedisConnectionRegistry(client, settings.REDIS_CONNECTIONS_KEY), client


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the DB pool, the registry, the service graph and the sweep job."""
    settings = get_settings()
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_pool_initialised")

    registry, app.state.redis = await _open_registry(settings)
    services = build_container(get_session_factory(), registry=registry, settings=settings)
    app.state.services = services

    scheduler = build_scheduler(services.lifecycle, settings)
    scheduler.start()
    logger.info(
        "cleanup_scheduler_started",
        interval_minutes=settings.CLEANUP_INTERVAL_MINUTES,
    )
    logger.info("startup_complete")

    yield

    logger.info("shutdown_begin")
    # No new sweeps, then let in-flight discovery and pushes finish.
    scheduler.shutdown(wait=False)
    await services.runner.close(timeout=DRAIN_TIMEOUT_SECONDS)

    if app.state.redis is not None:
        await app.state.redis.aclose()
        app.state.redis = None
        logger.info("redis_closed")

    await dispose_engine()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Request middleware
# ---------------------------------------------------------------------------

class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id into the log context, enforce the request timeout
    and log the outcome.

    The caller's ``X-Request-Id`` is reused when present and echoed back on
    the response.
    """

    def __init__(self, app, timeout_seconds: float = 30.0) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ):
            try:
                response = await asyncio.wait_for(
                    call_next(request), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning("request_timeout", timeout=self.timeout_seconds)
                response = JSONResponse(
                    status_code=504, content={"detail": "Request timed out"}
                )
            except Exception:
                logger.exception("request_error", duration_ms=_elapsed_ms(start))
                raise

            logger.info(
                "request_handled",
                status=response.status_code,
                duration_ms=_elapsed_ms(start),
            )

        response.headers["X-Request-Id"] = request_id
        return response


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


# ---------------------------------------------------------------------------
# Lifecycle error mapping
# ---------------------------------------------------------------------------

_ERROR_STATUS: dict[type[MatchingError], int] = {
    NotFoundError: 404,
    NotAuthorizedError: 403,
    InvalidStateError: 409,
    TransientStoreFailure: 503,
}


async def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    logger.info(
        "matching_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        status=status_code,
        detail=str(exc),
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Readiness checks
# ---------------------------------------------------------------------------

async def _check_database(app: FastAPI) -> str:
    async with app.state.services.session_factory() as session:
        await session.execute(text("SELECT 1"))
    return "connected"


async def _check_redis(app: FastAPI) -> str:
    client = getattr(app.state, "redis", None)
    if client is None:
        return "not_configured"
    await client.ping()
    return "connected"


_READINESS_CHECKS = {
    "database": _check_database,
    "redis": _check_redis,
}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Resonance",
        description="Prompt-based match lifecycle engine",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    # Last added runs first: CORS wraps the request context.
    app.add_middleware(
        RequestContextMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MatchingError, matching_error_handler)

    @app.get("/health", tags=["health"])
    async def health_liveness() -> dict:
        return {"status": "healthy"}

    @app.get("/health/deep", tags=["health"])
    async def health_deep(request: Request) -> dict:
        """Readiness: every backing store answers, plus the number of
        background tasks still in flight."""
        result: dict[str, Any] = {"status": "healthy"}
        for name, check in _READINESS_CHECKS.items():
            try:
                result[name] = await check(request.app)
            except Exception as exc:
                logger.error("readiness_check_failed", check=name, error=str(exc))
                result[name] = f"error: {exc}"
                result["status"] = "degraded"
        result["background_tasks"] = request.app.state.services.runner.pending
        return result

    from resonance.api.realtime import router as realtime_router
    from resonance.api.router import router as api_router

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(realtime_router)
    return app


app = create_app()
