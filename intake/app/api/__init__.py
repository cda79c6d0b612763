"""API endpoints package for the intake service."""

from intake.app.api.queue_stats import router as queue_stats_router
from intake.app.api.reports import router as reports_router

__all__ = [
    "queue_stats_router",
    "reports_router",
]
