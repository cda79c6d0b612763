"""Redis-backed durable queue.

Producers LPUSH onto the main list and workers BRPOP from its other end,
which keeps the list FIFO. BRPOP hands each payload to exactly one waiting
client, so workers need no coordination between themselves.

Redis key layout:
- bug_reports:queue - main work list
- bug_reports:dlq - dead-letter list for items that exhausted their retries
"""

import asyncio
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import redis

from intake.app.core.config import settings
from intake.app.core.logging import get_logger
from intake.app.exceptions import TransientStoreError
from intake.app.queue.base import WorkQueue

logger = get_logger(__name__)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate Redis and network failures into TransientStoreError."""
    try:
        yield
    except redis.RedisError as e:
        raise TransientStoreError(f"redis {operation} failed: {e}") from e
    except (OSError, asyncio.TimeoutError) as e:
        raise TransientStoreError(f"redis {operation} failed: {e!r}") from e


class RedisWorkQueue(WorkQueue):
    """Work queue stored in two Redis lists."""

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        main_key: Optional[str] = None,
        dead_letter_key: Optional[str] = None,
        max_retry: Optional[int] = None,
    ) -> None:
        """Initialize the queue.

        Args:
            redis_client: Shared client. Workers need one whose socket timeout
                exceeds the poll timeout.
            redis_url: Used to build a client when none is given
            main_key: Main list name
            dead_letter_key: Dead-letter list name
            max_retry: Attempts before an item is dead-lettered
        """
        super().__init__(max_retry if max_retry is not None else settings.queue_max_retry)
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._owns_client = redis_client is None
        self.main_key = main_key or settings.queue_main_key
        self.dead_letter_key = dead_letter_key or settings.queue_dead_letter_key

    def _get_redis(self) -> Any:
        if self._redis is None:
            from intake.app.core.redis_client import create_redis_client, worker_socket_timeout
            self._redis = create_redis_client(self._redis_url, socket_timeout=worker_socket_timeout())
        return self._redis

    async def push(self, payload: str) -> None:
        with _store_errors("LPUSH"):
            await self._get_redis().lpush(self.main_key, payload)

    async def _pop_raw(self, timeout: float) -> Optional[str]:
        with _store_errors("BRPOP"):
            result = await self._get_redis().brpop([self.main_key], timeout=timeout)
        if result is None:
            return None
        # result is (key, value)
        return result[1]

    async def _push_dead_letter(self, payload: str) -> None:
        with _store_errors("LPUSH"):
            await self._get_redis().lpush(self.dead_letter_key, payload)

    async def queue_length(self) -> int:
        with _store_errors("LLEN"):
            return int(await self._get_redis().llen(self.main_key))

    async def dead_letter_length(self) -> int:
        with _store_errors("LLEN"):
            return int(await self._get_redis().llen(self.dead_letter_key))

    async def ping(self) -> bool:
        with _store_errors("PING"):
            return bool(await self._get_redis().ping())

    async def close(self) -> None:
        if self._owns_client and self._redis is not None:
            from intake.app.core.redis_client import close_redis_client
            await close_redis_client(self._redis)
            self._redis = None
