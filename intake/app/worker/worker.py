"""Queue consumer: pulls work items and persists them, or retries them.

Each worker runs the same state machine independently:

    idle -> fetching -> persisting -> idle
    fetching -> idle (poll timeout, bad payload, store error)
    persisting -> requeuing -> idle (write failed)
    any -> stopped (shutdown event set, or the task was cancelled in a pop)

The shutdown event is only checked between items, so an item that has
been popped is always finished before the worker stops.
"""

import asyncio
from enum import Enum
from typing import Optional

from intake.app.core.logging import get_log_context, get_logger
from intake.app.db.repository import PersistenceSink
from intake.app.exceptions import RetryExhausted, SerializationError
from intake.app.queue.base import WorkQueue
from intake.app.queue.models import WorkItem

logger = get_logger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    REQUEUING = "requeuing"
    STOPPED = "stopped"


class Worker:
    """One consumer of the work queue.

    Attributes:
        worker_id: Index of this worker inside its pool, used in logs
        state: Current WorkerState
        processed: Items persisted (including duplicates skipped by the sink)
        failed: Persistence attempts that ended in a requeue or drop
        current_item: Item popped and not yet persisted or requeued
    """

    def __init__(
        self,
        worker_id: int,
        queue: WorkQueue,
        sink: PersistenceSink,
        shutdown_event: asyncio.Event,
        poll_timeout: float = 5.0,
        error_backoff: float = 1.0,
    ) -> None:
        """Initialize the worker.

        Args:
            worker_id: Index used in log lines
            queue: Queue to consume from and requeue into
            sink: Idempotent persistence target
            shutdown_event: Cancellation token shared by the whole pool
            poll_timeout: Upper bound on one blocking pop, which is also the
                longest a worker can take to notice shutdown
            error_backoff: Pause after a queue store error
        """
        self.worker_id = worker_id
        self._queue = queue
        self._sink = sink
        self._shutdown_event = shutdown_event
        self._poll_timeout = poll_timeout
        self._error_backoff = error_backoff
        self.state = WorkerState.IDLE
        self.processed = 0
        self.failed = 0
        self.current_item: Optional[WorkItem] = None

    @property
    def should_stop(self) -> bool:
        return self._shutdown_event.is_set()

    async def run(self) -> None:
        """Run until the shutdown event is set or the task is cancelled."""
        logger.info("Worker started", extra=get_log_context(worker_id=self.worker_id))
        try:
            while not self.should_stop:
                await self.run_once()
        except asyncio.CancelledError:
            item = self.current_item
            if item is None:
                logger.info("Worker cancelled", extra=get_log_context(worker_id=self.worker_id))
            else:
                logger.warning(
                    f"Worker cancelled while {self.state.value}, report left in flight",
                    extra=get_log_context(
                        event_id=item.event_id,
                        site_id=item.site_id,
                        worker_id=self.worker_id,
                        retry_count=item.retry_count,
                    ),
                )
            raise
        finally:
            self.state = WorkerState.STOPPED
            self.current_item = None
        logger.info("Worker stopped", extra=get_log_context(worker_id=self.worker_id))

    async def run_once(self) -> Optional[WorkItem]:
        """Run one pass of the state machine.

        Returns:
            The item that was handled, or None if nothing was popped
        """
        self.state = WorkerState.FETCHING
        item = await self._fetch()
        if item is None:
            self.state = WorkerState.IDLE
            return None
        self.current_item = item

        log_context = get_log_context(
            event_id=item.event_id,
            site_id=item.site_id,
            worker_id=self.worker_id,
            retry_count=item.retry_count,
        )
        logger.info("Processing report", extra=log_context)

        self.state = WorkerState.PERSISTING
        try:
            await self._sink.upsert(item)
        except Exception as e:
            self.failed += 1
            logger.error(f"Insert failed, requeuing: {e}", extra=log_context)
            self.state = WorkerState.REQUEUING
            await self._requeue(item)
        else:
            self.processed += 1
            logger.info("Report saved", extra=log_context)

        self.current_item = None
        self.state = WorkerState.IDLE
        return item

    async def _fetch(self) -> Optional[WorkItem]:
        try:
            return await self._queue.blocking_pop(self._poll_timeout)
        except SerializationError as e:
            logger.error(
                f"Malformed work item moved to dead-letter queue: {e}",
                extra=get_log_context(worker_id=self.worker_id),
            )
        except Exception as e:
            logger.error(
                f"Dequeue failed: {e}",
                extra=get_log_context(worker_id=self.worker_id),
            )
            await self._backoff()
        return None

    async def _requeue(self, item: WorkItem) -> None:
        # A failed requeue is logged and not retried: the item only exists in
        # this worker's memory now and is dropped.
        try:
            await self._queue.requeue(item)
        except RetryExhausted as e:
            logger.error(
                str(e),
                extra=get_log_context(
                    event_id=item.event_id,
                    worker_id=self.worker_id,
                    retry_count=item.retry_count,
                ),
            )
        except Exception as e:
            logger.critical(
                f"Requeue failed, report dropped: {e}",
                extra=get_log_context(
                    event_id=item.event_id,
                    site_id=item.site_id,
                    worker_id=self.worker_id,
                    retry_count=item.retry_count,
                    payload=repr(item),
                ),
            )
        else:
            logger.warning(
                "Report requeued",
                extra=get_log_context(
                    event_id=item.event_id,
                    worker_id=self.worker_id,
                    retry_count=item.retry_count,
                ),
            )

    async def _backoff(self) -> None:
        """Pause after a store error, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._error_backoff)
        except asyncio.TimeoutError:
            pass
