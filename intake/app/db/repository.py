"""Persistence sink: idempotent storage of work items.

Each item is written with ``INSERT ... ON CONFLICT (id) DO NOTHING`` keyed
by its event_id. Redelivering an item that was already stored (a worker
crashed after the commit, or a requeue after a timeout that actually
succeeded) is a silent no-op, which turns at-least-once queue delivery into
exactly-once stored state.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intake.app.core.logging import get_log_context, get_logger
from intake.app.db.async_session import get_async_session_maker
from intake.app.db.models import BugReport
from intake.app.exceptions import SerializationError, TransientStoreError
from intake.app.queue.models import WorkItem

logger = get_logger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _insert_for(dialect: str) -> Any:
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"upsert is not supported on {dialect}")
    return insert


class PersistenceSink(ABC):
    """Idempotent write target for work items."""

    @abstractmethod
    async def upsert(self, item: WorkItem) -> bool:
        """Store item unless a record with its event_id exists.

        Returns:
            True if a record was created, False if it already existed

        Raises:
            TransientStoreError: The store could not be reached.
        """


def _row_values(item: WorkItem) -> dict[str, Any]:
    try:
        created_at = datetime.fromisoformat(item.received_at.replace("Z", "+00:00"))
    except ValueError as e:
        raise SerializationError(f"invalid received_at {item.received_at!r}") from e
    return {
        "id": item.event_id,
        "site_id": item.site_id,
        "report_type": item.report_type,
        "title": item.title,
        "description": item.description,
        "category": item.category,
        "page_url": item.page_url,
        "contact_type": item.contact_type,
        "contact_value": item.contact_value,
        "first_name": item.first_name,
        "last_name": item.last_name,
        "image_urls": list(item.image_urls) or None,
        "status": "new",
        "created_at": created_at,
    }


class ReportRepository(PersistenceSink):
    """Stores reports in the bug_reports table."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker or get_async_session_maker()
        # Fail at startup rather than requeueing every report on a bad URL
        bind = self._session_maker.kw.get("bind")
        if bind is not None:
            _insert_for(bind.dialect.name)

    async def upsert(self, item: WorkItem) -> bool:
        values = _row_values(item)
        try:
            async with self._session_maker() as session:
                insert = _insert_for(session.get_bind().dialect.name)
                stmt = insert(BugReport).values(**values).on_conflict_do_nothing(
                    index_elements=[BugReport.id]
                )
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise TransientStoreError(f"insert report failed: {e}", store="database") from e
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientStoreError(f"insert report failed: {e!r}", store="database") from e

        created = result.rowcount == 1
        if not created:
            logger.info(
                "Report already stored, skipping duplicate",
                extra=get_log_context(event_id=item.event_id, retry_count=item.retry_count),
            )
        return created

    async def get_report(self, event_id: str) -> Optional[BugReport]:
        """Read one stored report back, or None if it was never persisted."""
        async with self._session_maker() as session:
            return await session.get(BugReport, event_id)
