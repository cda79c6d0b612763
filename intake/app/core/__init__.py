"""Core utilities for the intake application."""

from intake.app.core.config import Settings, settings
from intake.app.core.logging import get_log_context, get_logger, setup_logging
from intake.app.core.redis_client import close_redis_client, create_redis_client

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "create_redis_client",
    "close_redis_client",
]
