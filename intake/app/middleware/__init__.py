"""Middleware package for the intake API."""

from intake.app.middleware.client_ip import get_client_ip, resolve_client_ip
from intake.app.middleware.rate_limit import (
    InMemoryTokenBucket,
    RateLimitBackend,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitResult,
    RedisTokenBucket,
)
from intake.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "get_client_ip",
    "resolve_client_ip",
    "InMemoryTokenBucket",
    "RateLimitBackend",
    "RateLimiter",
    "RateLimitMiddleware",
    "RateLimitResult",
    "RedisTokenBucket",
    "RequestIdMiddleware",
    "get_request_id",
]
