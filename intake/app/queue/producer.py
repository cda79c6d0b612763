"""Producer: the only write path into the work queue."""

from intake.app.core.logging import get_log_context, get_logger
from intake.app.queue.base import WorkQueue
from intake.app.queue.models import WorkItem

logger = get_logger(__name__)


class Producer:
    """Serializes accepted submissions and pushes them onto the queue."""

    def __init__(self, queue: WorkQueue):
        self.queue = queue

    async def enqueue(self, item: WorkItem) -> None:
        """Serialize and push one item.

        Never drops silently: the caller gets an exception and can tell the
        client to retry instead of confirming delivery.

        Raises:
            SerializationError: The item could not be encoded.
            TransientStoreError: The push did not reach the store.
        """
        payload = item.to_json()
        await self.queue.push(payload)
        logger.info(
            "Report queued",
            extra=get_log_context(
                event_id=item.event_id,
                site_id=item.site_id,
                images=len(item.image_urls),
            ),
        )
