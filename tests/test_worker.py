"""Tests for the queue worker state machine and the worker pool."""

import asyncio
import time

import pytest
from unittest.mock import AsyncMock, patch

from intake.app.db.repository import PersistenceSink
from intake.app.exceptions import TransientStoreError
from intake.app.queue.memory import InMemoryWorkQueue
from intake.app.worker import Worker, WorkerPool, WorkerState


def make_worker(queue, sink, shutdown_event=None, **kwargs) -> Worker:
    kwargs.setdefault("poll_timeout", 0.05)
    kwargs.setdefault("error_backoff", 0.01)
    return Worker(0, queue, sink, shutdown_event or asyncio.Event(), **kwargs)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class BlockingSink(PersistenceSink):
    """Sink whose upsert waits until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.stored = []

    async def upsert(self, item):
        self.entered.set()
        await self.release.wait()
        self.stored.append(item.event_id)
        return True


class TestWorkerRunOnce:
    @pytest.mark.asyncio
    async def test_persists_popped_item(self, memory_sink, item_factory):
        queue = InMemoryWorkQueue()
        item = item_factory()
        await queue.push(item.to_json())
        worker = make_worker(queue, memory_sink)

        handled = await worker.run_once()

        assert handled.event_id == item.event_id
        assert item.event_id in memory_sink.stored
        assert worker.processed == 1
        assert worker.state == WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_poll_timeout_returns_to_idle(self, memory_sink):
        worker = make_worker(InMemoryWorkQueue(), memory_sink)
        assert await worker.run_once() is None
        assert worker.state == WorkerState.IDLE
        assert memory_sink.calls == []

    @pytest.mark.asyncio
    async def test_state_is_persisting_during_upsert(self, item_factory):
        queue = InMemoryWorkQueue()
        await queue.push(item_factory().to_json())
        sink = BlockingSink()
        worker = make_worker(queue, sink)

        task = asyncio.create_task(worker.run_once())
        await asyncio.wait_for(sink.entered.wait(), timeout=1)
        assert worker.state == WorkerState.PERSISTING

        sink.release.set()
        await task
        assert worker.state == WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_failed_insert_is_requeued(self, sink_factory, item_factory):
        queue = InMemoryWorkQueue()
        item = item_factory()
        await queue.push(item.to_json())
        sink = sink_factory(failures={item.event_id: 1})
        worker = make_worker(queue, sink)

        with patch("intake.app.worker.worker.logger") as mock_logger:
            await worker.run_once()

        assert worker.failed == 1
        assert await queue.queue_length() == 1
        assert worker.state == WorkerState.IDLE
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.kwargs["extra"]["retry_count"] == 1

        await worker.run_once()
        assert sink.stored[item.event_id].retry_count == 1
        assert await queue.queue_length() == 0

    @pytest.mark.asyncio
    async def test_exhausted_item_is_dead_lettered(self, sink_factory, item_factory):
        queue = InMemoryWorkQueue(max_retry=5)
        await queue.push(item_factory(retry_count=4).to_json())
        sink = sink_factory(error=TransientStoreError("database down", store="database"))
        worker = make_worker(queue, sink)

        with patch("intake.app.worker.worker.logger") as mock_logger:
            await worker.run_once()

        assert await queue.queue_length() == 0
        assert await queue.dead_letter_length() == 1
        assert any("dead-lettered" in c.args[0] for c in mock_logger.error.call_args_list)
        mock_logger.critical.assert_not_called()

    @pytest.mark.asyncio
    async def test_requeue_failure_drops_item(self, sink_factory, item_factory):
        queue = InMemoryWorkQueue()
        item = item_factory()
        await queue.push(item.to_json())
        queue.requeue = AsyncMock(side_effect=TransientStoreError("redis down"))
        sink = sink_factory(error=TransientStoreError("database down", store="database"))
        worker = make_worker(queue, sink)

        with patch("intake.app.worker.worker.logger") as mock_logger:
            handled = await worker.run_once()

        assert handled.event_id == item.event_id
        mock_logger.critical.assert_called_once()
        assert mock_logger.critical.call_args.kwargs["extra"]["event_id"] == item.event_id
        assert await queue.queue_length() == 0
        assert await queue.dead_letter_length() == 0
        assert worker.state == WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_malformed_payload_is_skipped(self, memory_sink):
        queue = InMemoryWorkQueue()
        await queue.push("{not a work item")
        worker = make_worker(queue, memory_sink)

        with patch("intake.app.worker.worker.logger") as mock_logger:
            assert await worker.run_once() is None

        assert await queue.dead_letter_length() == 1
        assert memory_sink.calls == []
        mock_logger.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_store_error_backs_off(self, memory_sink):
        queue = AsyncMock()
        queue.blocking_pop.side_effect = TransientStoreError("redis down")
        worker = make_worker(queue, memory_sink, error_backoff=0.2)

        started = time.monotonic()
        assert await worker.run_once() is None
        assert time.monotonic() - started >= 0.15
        assert worker.state == WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_backoff_wakes_on_shutdown(self, memory_sink):
        queue = AsyncMock()
        queue.blocking_pop.side_effect = TransientStoreError("redis down")
        shutdown = asyncio.Event()
        shutdown.set()
        worker = make_worker(queue, memory_sink, shutdown_event=shutdown, error_backoff=10)

        await asyncio.wait_for(worker.run_once(), timeout=1)


class TestWorkerRun:
    @pytest.mark.asyncio
    async def test_stops_when_event_is_set(self, memory_sink):
        shutdown = asyncio.Event()
        shutdown.set()
        worker = make_worker(InMemoryWorkQueue(), memory_sink, shutdown_event=shutdown)

        await asyncio.wait_for(worker.run(), timeout=1)
        assert worker.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_finishes_in_flight_item_before_stopping(self, item_factory):
        queue = InMemoryWorkQueue()
        item = item_factory()
        await queue.push(item.to_json())
        sink = BlockingSink()
        shutdown = asyncio.Event()
        worker = make_worker(queue, sink, shutdown_event=shutdown)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(sink.entered.wait(), timeout=1)
        shutdown.set()
        sink.release.set()
        await asyncio.wait_for(task, timeout=1)

        assert sink.stored == [item.event_id]
        assert worker.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_cancel_while_blocked_in_pop(self, memory_sink):
        worker = make_worker(InMemoryWorkQueue(), memory_sink, poll_timeout=10)
        task = asyncio.create_task(worker.run())
        await wait_until(lambda: worker.state == WorkerState.FETCHING)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert worker.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_cancel_mid_persist_logs_in_flight_item(self, item_factory):
        queue = InMemoryWorkQueue()
        item = item_factory(retry_count=2)
        await queue.push(item.to_json())
        sink = BlockingSink()
        worker = make_worker(queue, sink)

        with patch("intake.app.worker.worker.logger") as mock_logger:
            task = asyncio.create_task(worker.run())
            await asyncio.wait_for(sink.entered.wait(), timeout=1)
            assert worker.current_item.event_id == item.event_id

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        mock_logger.warning.assert_called_once()
        assert "persisting" in mock_logger.warning.call_args.args[0]
        extra = mock_logger.warning.call_args.kwargs["extra"]
        assert extra["event_id"] == item.event_id
        assert extra["retry_count"] == 2
        assert worker.current_item is None


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_every_item_persisted_exactly_once(self, sink_factory, item_factory):
        """K workers, M > K items, up to K-1 transient failures per item."""
        k, m = 3, 8
        queue = InMemoryWorkQueue(max_retry=5)
        items = [item_factory(title=f"report {i}") for i in range(m)]
        failures = {item.event_id: i % k for i, item in enumerate(items)}
        sink = sink_factory(failures=failures)
        for item in items:
            await queue.push(item.to_json())

        pool = WorkerPool(queue, sink, size=k, poll_timeout=0.05, error_backoff=0.01)
        pool.start()
        try:
            await wait_until(lambda: len(sink.stored) == m)
        finally:
            await pool.stop(timeout=2)

        assert set(sink.stored) == {item.event_id for item in items}
        for item in items:
            expected_attempts = failures[item.event_id] + 1
            assert sink.calls.count(item.event_id) == expected_attempts
            assert sink.stored[item.event_id].retry_count == expected_attempts - 1
        assert await queue.queue_length() == 0
        assert await queue.dead_letter_length() == 0

    @pytest.mark.asyncio
    async def test_stop_waits_for_idle_workers(self, memory_sink):
        pool = WorkerPool(InMemoryWorkQueue(), memory_sink, size=4, poll_timeout=0.05)
        pool.start()
        await wait_until(lambda: pool.running)

        await asyncio.wait_for(pool.stop(timeout=2), timeout=3)

        assert not pool.running
        assert pool.states() == [WorkerState.STOPPED] * 4

    @pytest.mark.asyncio
    async def test_stop_cancels_workers_past_deadline(self, item_factory):
        queue = InMemoryWorkQueue()
        await queue.push(item_factory().to_json())
        sink = BlockingSink()
        pool = WorkerPool(queue, sink, size=1, poll_timeout=0.05)
        pool.start()
        await asyncio.wait_for(sink.entered.wait(), timeout=1)

        started = time.monotonic()
        await pool.stop(timeout=0.1)

        assert time.monotonic() - started < 1
        assert not pool.running
        assert pool.states() == [WorkerState.STOPPED]
        assert sink.stored == []

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, memory_sink):
        pool = WorkerPool(InMemoryWorkQueue(), memory_sink, size=2)
        await pool.stop(timeout=0.1)
        assert pool.states() == []
