"""Fixed-size pool of queue workers sharing one shutdown event."""

import asyncio
from typing import Optional

from intake.app.core.config import settings
from intake.app.core.logging import get_logger
from intake.app.db.repository import PersistenceSink
from intake.app.queue.base import WorkQueue
from intake.app.worker.worker import Worker, WorkerState

logger = get_logger(__name__)


class WorkerPool:
    """Runs N workers as asyncio tasks against the same queue and sink.

    Example:
        pool = WorkerPool(queue, repository, size=10)
        pool.start()
        ...
        await pool.stop()  # waits for in-flight items, then cancels stragglers
    """

    def __init__(
        self,
        queue: WorkQueue,
        sink: PersistenceSink,
        size: Optional[int] = None,
        poll_timeout: Optional[float] = None,
        error_backoff: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.sink = sink
        self.size = size if size is not None else settings.worker_concurrency
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None else settings.queue_poll_timeout_seconds
        )
        self.error_backoff = (
            error_backoff if error_backoff is not None else settings.worker_error_backoff_seconds
        )
        self.workers: list[Worker] = []
        self._tasks: list[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def states(self) -> list[WorkerState]:
        return [w.state for w in self.workers]

    def start(self) -> None:
        """Create the worker tasks. Must be called from a running event loop."""
        if self._tasks:
            return
        self._shutdown_event.clear()
        self.workers = [
            Worker(
                worker_id=i,
                queue=self.queue,
                sink=self.sink,
                shutdown_event=self._shutdown_event,
                poll_timeout=self.poll_timeout,
                error_backoff=self.error_backoff,
            )
            for i in range(self.size)
        ]
        self._tasks = [
            asyncio.create_task(w.run(), name=f"intake.worker.{w.worker_id}")
            for w in self.workers
        ]
        logger.info(f"Starting workers (concurrency={self.size})")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for every worker to stop.

        Workers finish the item they hold before stopping. Any worker still
        running after timeout seconds is cancelled.
        """
        if not self._tasks:
            return
        timeout = timeout if timeout is not None else settings.worker_shutdown_timeout_seconds
        logger.info("Shutdown signal received, stopping workers...")
        self._shutdown_event.set()

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} workers did not stop within {timeout}s, cancelling")
            for task in pending:
                task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Worker exited with error: {result!r}")
        self._tasks = []
        logger.info("All workers stopped")
