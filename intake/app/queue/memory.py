"""In-process work queue for single-process runs and tests."""

import asyncio
from collections import deque
from typing import Optional

from intake.app.queue.base import MAX_RETRY, WorkQueue


class InMemoryWorkQueue(WorkQueue):
    """Work queue held in two deques.

    Mirrors the Redis layout: pushes go on the left, pops come off the right.
    A waiting pop is woken by the next push. Nothing survives a restart.
    """

    def __init__(self, max_retry: int = MAX_RETRY):
        super().__init__(max_retry)
        self.main: deque[str] = deque()
        self.dead_letter: deque[str] = deque()
        self._not_empty = asyncio.Condition()

    async def push(self, payload: str) -> None:
        async with self._not_empty:
            self.main.appendleft(payload)
            self._not_empty.notify()

    async def _pop_raw(self, timeout: float) -> Optional[str]:
        async with self._not_empty:
            try:
                await asyncio.wait_for(
                    self._not_empty.wait_for(lambda: bool(self.main)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            return self.main.pop()

    async def _push_dead_letter(self, payload: str) -> None:
        self.dead_letter.appendleft(payload)

    async def queue_length(self) -> int:
        return len(self.main)

    async def dead_letter_length(self) -> int:
        return len(self.dead_letter)
