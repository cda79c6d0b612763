"""Standalone worker process.

Usage:
    python -m intake.app.worker
    intake-worker

Runs WORKER_CONCURRENCY workers until SIGINT or SIGTERM, then waits up to
WORKER_SHUTDOWN_TIMEOUT_SECONDS for in-flight items before exiting.
"""

import asyncio
import signal
import sys

from intake.app.core.config import settings
from intake.app.core.logging import get_logger, setup_logging
from intake.app.core.redis_client import (
    close_redis_client,
    create_redis_client,
    worker_socket_timeout,
)
from intake.app.db.async_session import close_async_engine
from intake.app.db.init_db import create_all_tables, verify_connection
from intake.app.db.repository import ReportRepository
from intake.app.queue.redis_queue import RedisWorkQueue
from intake.app.worker.pool import WorkerPool

logger = get_logger(__name__)


async def serve(stop_event: asyncio.Event | None = None) -> None:
    """Run the worker pool until stop_event is set."""
    stop_event = stop_event or asyncio.Event()

    redis_client = create_redis_client(socket_timeout=worker_socket_timeout())
    queue = RedisWorkQueue(redis_client=redis_client)
    try:
        await queue.ping()
        logger.info("Connected to Redis")

        if not await verify_connection():
            raise RuntimeError("Cannot connect to database")
        await create_all_tables()

        pool = WorkerPool(queue, ReportRepository())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

        pool.start()
        await stop_event.wait()
        await pool.stop(settings.worker_shutdown_timeout_seconds)
    finally:
        await close_redis_client(redis_client)
        await close_async_engine()
        logger.info("Worker process exited")


def main() -> None:
    setup_logging()
    try:
        asyncio.run(serve())
    except Exception as e:
        logger.critical(f"Worker process failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
