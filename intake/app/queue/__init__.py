"""Durable work queue with bounded retry and dead-letter escalation."""

from intake.app.queue.base import MAX_RETRY, WorkQueue
from intake.app.queue.memory import InMemoryWorkQueue
from intake.app.queue.models import Category, ContactType, ReportType, WorkItem, utc_timestamp
from intake.app.queue.producer import Producer
from intake.app.queue.redis_queue import RedisWorkQueue

__all__ = [
    "MAX_RETRY",
    "WorkQueue",
    "InMemoryWorkQueue",
    "RedisWorkQueue",
    "Producer",
    "WorkItem",
    "Category",
    "ContactType",
    "ReportType",
    "utc_timestamp",
]
