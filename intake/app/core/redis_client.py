"""Redis connection factory shared by the rate limiter and the work queues."""

from typing import Optional

import redis.asyncio as aioredis

from intake.app.core.config import settings
from intake.app.core.logging import get_logger

logger = get_logger(__name__)


def create_redis_client(
    redis_url: Optional[str] = None,
    socket_timeout: Optional[float] = None,
) -> aioredis.Redis:
    """Create an asyncio Redis client.

    The client connects lazily, so creating it never touches the network.

    Args:
        redis_url: Redis connection URL. Uses settings if not provided.
        socket_timeout: Per-command timeout in seconds. Clients that issue
            blocking pops must pass a value longer than the poll timeout.

    Returns:
        Redis client with string responses
    """
    return aioredis.from_url(
        redis_url or settings.redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout or settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_connect_timeout,
    )


def worker_socket_timeout() -> float:
    """Socket timeout for clients that block in BRPOP."""
    return settings.queue_poll_timeout_seconds + settings.redis_socket_timeout


async def close_redis_client(client: Optional[aioredis.Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.warning(f"Error closing Redis connection: {e}")
