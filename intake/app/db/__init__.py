"""Database package for the intake service.

This package provides:
- The BugReport model
- Async engine and session management
- The idempotent report repository used by the workers
"""

from intake.app.db.base import Base
from intake.app.db.models import BugReport
from intake.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    get_async_session_maker,
)
from intake.app.db.init_db import create_all_tables, verify_connection
from intake.app.db.repository import PersistenceSink, ReportRepository

__all__ = [
    "Base",
    "BugReport",
    "close_async_engine",
    "get_async_engine",
    "get_async_session_maker",
    "create_all_tables",
    "verify_connection",
    "PersistenceSink",
    "ReportRepository",
]
