"""Shared test doubles for the intake tests."""

import asyncio
import math
from collections import defaultdict, deque
from typing import Optional

import pytest
import pytest_asyncio

from intake.app.db.repository import PersistenceSink
from intake.app.exceptions import TransientStoreError
from intake.app.queue.models import WorkItem


class FakeRedis:
    """Minimal in-process stand-in for the redis.asyncio client.

    Implements the list commands used by the work queue and evaluates the
    token bucket script with the same arithmetic as the Lua version.
    Setting ``error`` makes every command raise it.
    """

    def __init__(self):
        self.lists: dict[str, deque] = defaultdict(deque)
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.eval_calls: list[tuple] = []
        self.error: Optional[BaseException] = None
        self.closed = False

    def _check(self):
        if self.error is not None:
            raise self.error

    async def ping(self):
        self._check()
        return True

    async def lpush(self, key, *values):
        self._check()
        for v in values:
            self.lists[key].appendleft(v)
        return len(self.lists[key])

    async def brpop(self, keys, timeout=0):
        self._check()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for key in keys:
                if self.lists[key]:
                    return (key, self.lists[key].pop())
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def llen(self, key):
        self._check()
        return len(self.lists[key])

    async def eval(self, script, numkeys, key, now_ms, rate, burst, ttl):
        self._check()
        self.eval_calls.append((numkeys, key, now_ms, rate, burst, ttl))
        now_ms, rate, burst = int(now_ms), float(rate), float(burst)
        data = self.hashes.get(key)
        if data is None:
            tokens, last_ms = burst, now_ms
        else:
            tokens, last_ms = float(data["t"]), int(data["ts"])
        tokens = min(burst, tokens + max(0, now_ms - last_ms) / 1000 * rate)
        allowed = 0
        if tokens >= 1:
            tokens -= 1
            allowed = 1
        self.hashes[key] = {"t": str(tokens), "ts": str(now_ms)}
        self.ttls[key] = int(ttl)
        return [allowed, math.floor(tokens)]

    async def aclose(self):
        self.closed = True


class MemorySink(PersistenceSink):
    """Idempotent sink that can fail a given number of times per event_id."""

    def __init__(self, failures: Optional[dict[str, int]] = None, error: Optional[Exception] = None):
        self.failures = dict(failures or {})
        self.error = error
        self.stored: dict[str, WorkItem] = {}
        self.calls: list[str] = []

    async def upsert(self, item: WorkItem) -> bool:
        self.calls.append(item.event_id)
        if self.error is not None:
            raise self.error
        if self.failures.get(item.event_id, 0) > 0:
            self.failures[item.event_id] -= 1
            raise TransientStoreError("database unavailable", store="database")
        if item.event_id in self.stored:
            return False
        self.stored[item.event_id] = item.model_copy()
        return True


def make_item(**overrides) -> WorkItem:
    fields = {
        "site_id": "example.com",
        "title": "Button does nothing",
        "description": "Clicking submit on the checkout page has no effect.",
        "category": "functionality",
    }
    fields.update(overrides)
    return WorkItem.new(**fields)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest_asyncio.fixture
async def sqlite_session_maker(tmp_path):
    """Session maker bound to a throwaway SQLite database with tables created."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from intake.app.db.async_session import get_async_session_maker
    from intake.app.db.init_db import create_all_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'intake.db'}")
    await create_all_tables(engine)
    yield get_async_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def sink_factory():
    return MemorySink
