from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from intake.app.api.queue_stats import router as queue_stats_router
from intake.app.api.reports import router as reports_router
from intake.app.core.config import settings
from intake.app.core.logging import get_logger, setup_logging
from intake.app.core.redis_client import (
    close_redis_client,
    create_redis_client,
    worker_socket_timeout,
)
from intake.app.db.async_session import close_async_engine
from intake.app.db.init_db import create_all_tables
from intake.app.db.repository import PersistenceSink, ReportRepository
from intake.app.exceptions import IntakeException
from intake.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from intake.app.middleware.request_id import RequestIdMiddleware, get_request_id
from intake.app.queue.base import WorkQueue
from intake.app.queue.memory import InMemoryWorkQueue
from intake.app.queue.producer import Producer
from intake.app.queue.redis_queue import RedisWorkQueue
from intake.app.worker.pool import WorkerPool


def create_app(
    queue: Optional[WorkQueue] = None,
    rate_limiter: Optional[RateLimiter] = None,
    sink: Optional[PersistenceSink] = None,
    embedded_workers: Optional[int] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        queue: Work queue to produce into (Redis or in-memory from settings)
        rate_limiter: Admission gate (backend chosen from settings)
        sink: Persistence target for embedded workers
        embedded_workers: Workers to run inside this process
            (defaults to settings.embedded_worker_concurrency)

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    embedded_workers = (
        embedded_workers if embedded_workers is not None else settings.embedded_worker_concurrency
    )

    # Embedded workers block in BRPOP on the queue client, so it then needs
    # the longer socket timeout and the limiter gets a client of its own.
    queue_client = None
    limiter_client = None
    if settings.redis_enabled:
        if queue is None:
            queue_client = create_redis_client(
                socket_timeout=worker_socket_timeout() if embedded_workers > 0 else None
            )
        if rate_limiter is None:
            if queue_client is not None and embedded_workers == 0:
                limiter_client = queue_client
            else:
                limiter_client = create_redis_client()

    if queue is None:
        if settings.redis_enabled:
            queue = RedisWorkQueue(redis_client=queue_client)
        else:
            queue = InMemoryWorkQueue(max_retry=settings.queue_max_retry)
            logger.warning("Redis disabled, using in-process queue (not durable)")
    if rate_limiter is None:
        rate_limiter = RateLimiter(redis_client=limiter_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start embedded workers on startup and release stores on shutdown."""
        pool = None
        owns_engine = False
        if embedded_workers > 0:
            worker_sink = sink
            if worker_sink is None:
                await create_all_tables()
                worker_sink = ReportRepository()
                owns_engine = True
            pool = WorkerPool(queue, worker_sink, size=embedded_workers)
            pool.start()
        app.state.worker_pool = pool

        logger.info(
            "Application startup complete",
            extra={
                "queue_backend": type(queue).__name__,
                "rate_limit_backend": type(rate_limiter.backend).__name__,
                "embedded_workers": embedded_workers,
            },
        )

        yield

        if pool is not None:
            await pool.stop(settings.worker_shutdown_timeout_seconds)
        await queue.close()
        await rate_limiter.close()
        await close_redis_client(queue_client)
        if limiter_client is not queue_client:
            await close_redis_client(limiter_client)
        if owns_engine:
            await close_async_engine()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Bug Report Intake",
        description="Rate-limited report intake with durable queueing and idempotent persistence",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.queue = queue
    app.state.producer = Producer(queue)
    app.state.rate_limiter = rate_limiter
    app.state.worker_pool = None

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=rate_limiter,
        trusted_proxies=settings.trusted_proxy_networks,
    )

    # Request ID middleware (outermost, so rate-limited responses carry one too)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(reports_router)
    app.include_router(queue_stats_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with queue and embedded worker status."""
        health_status: dict[str, Any] = {
            "status": "ok",
            "components": {},
        }

        try:
            queue_length = await queue.queue_length()
            health_status["components"]["queue"] = {
                "status": "ok",
                "type": type(queue).__name__,
                "queue_length": queue_length,
            }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["queue"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        pool = app.state.worker_pool
        if pool is not None:
            health_status["components"]["workers"] = {
                "status": "ok" if pool.running else "stopped",
                "total": pool.size,
                "states": [s.value for s in pool.states()],
            }

        return health_status

    @app.exception_handler(IntakeException)
    async def intake_exception_handler(request: Request, exc: IntakeException) -> JSONResponse:
        """Map intake errors to their HTTP status without leaking store details."""
        request_id = get_request_id(request)
        logger.error(
            f"Request failed: {exc}",
            extra={"request_id": request_id, "path": request.url.path},
        )
        content = exc.to_response()
        if exc.status_code >= 500:
            content["error"] = "service temporarily unavailable"
        return JSONResponse(status_code=exc.status_code, content=content)

    return app


# Create the application instance
app = create_app()
