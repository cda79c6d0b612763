"""Durable queue contract shared by the Redis and in-memory implementations."""

from abc import ABC, abstractmethod
from typing import Optional

from intake.app.core.logging import get_log_context, get_logger
from intake.app.exceptions import RetryExhausted, SerializationError
from intake.app.queue.models import WorkItem

logger = get_logger(__name__)

MAX_RETRY = 5


class WorkQueue(ABC):
    """A main work list plus a dead-letter list.

    Subclasses provide the raw list operations; the decode, retry and
    dead-letter protocol lives here so every backend behaves the same.
    Every operation is a single store command, so no caller ever holds a
    multi-step lock against the store.
    """

    def __init__(self, max_retry: int = MAX_RETRY):
        self.max_retry = max_retry

    @abstractmethod
    async def push(self, payload: str) -> None:
        """Append a serialized work item to the main list."""

    @abstractmethod
    async def _pop_raw(self, timeout: float) -> Optional[str]:
        """Remove the oldest payload, waiting up to timeout seconds."""

    @abstractmethod
    async def _push_dead_letter(self, payload: str) -> None:
        """Append a payload to the dead-letter list."""

    @abstractmethod
    async def queue_length(self) -> int:
        pass

    @abstractmethod
    async def dead_letter_length(self) -> int:
        pass

    async def blocking_pop(self, timeout: float) -> Optional[WorkItem]:
        """Take the next work item.

        Args:
            timeout: Maximum seconds to block

        Returns:
            The item, or None when nothing arrived within the timeout

        Raises:
            SerializationError: The payload was malformed. It has already
                been moved to the dead-letter list.
            TransientStoreError: The store is unreachable.
        """
        raw = await self._pop_raw(timeout)
        if raw is None:
            return None
        try:
            return WorkItem.from_json(raw)
        except SerializationError as e:
            try:
                await self._push_dead_letter(raw)
            except Exception as dlq_error:
                # The payload is already off the main list; the log line is
                # the only copy left.
                logger.critical(
                    f"Dead-letter push failed, malformed payload dropped: {dlq_error}",
                    extra=get_log_context(error=str(e), payload=raw),
                )
                raise
            raise

    async def requeue(self, item: WorkItem) -> None:
        """Put a failed item back for another attempt.

        Increments item.retry_count. Once it reaches max_retry the item goes
        to the dead-letter list instead of the main list.

        Raises:
            RetryExhausted: The item was dead-lettered.
            TransientStoreError: The push failed; the item is only held by
                the caller now.
        """
        item.retry_count += 1
        payload = item.to_json()
        if item.retry_count >= self.max_retry:
            await self._push_dead_letter(payload)
            raise RetryExhausted(item.event_id, item.retry_count)
        await self.push(payload)

    async def close(self) -> None:
        pass
