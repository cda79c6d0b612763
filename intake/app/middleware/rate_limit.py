"""Rate limiting middleware for the intake API.

Every request is admitted through a per-client token bucket. The bucket
holds ``burst = rate * 2`` tokens, refills continuously at ``rate`` tokens
per second and each request costs one token. With the Redis backend the
bucket lives in Redis and all API instances share it; the in-memory backend
is for single-process deployments and tests.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import redis
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from intake.app.core.config import IPNetwork, settings
from intake.app.core.logging import get_logger
from intake.app.exceptions import RateLimiterUnavailable, RateLimitExceededError
from intake.app.middleware.client_ip import get_client_ip
from intake.app.middleware.redis_lua import TOKEN_BUCKET_SCRIPT

logger = get_logger(__name__)

KEY_PREFIX = "rl:"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int] = None


@dataclass
class TokenBucket:
    """Token bucket state for one client identity."""
    tokens: float
    last_refill_ms: int


class RateLimitBackend(ABC):
    """Abstract base class for token bucket stores."""

    def __init__(self, rate: float, burst: Optional[float] = None, ttl_seconds: int = 300):
        """Initialize the bucket parameters.

        Args:
            rate: Refill rate in tokens per second
            burst: Bucket capacity, defaults to twice the rate
            ttl_seconds: Idle time after which a bucket is forgotten
        """
        self.rate = float(rate)
        self.burst = float(burst) if burst is not None else self.rate * 2
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def try_acquire(self, identity: str, now_ms: Optional[int] = None) -> RateLimitResult:
        """Take one token for identity.

        Args:
            identity: Client identity, usually an IP address
            now_ms: Current wall clock in milliseconds (defaults to time.time())

        Returns:
            RateLimitResult with the admission decision
        """

    async def close(self) -> None:
        pass

    def _retry_after(self, tokens: float) -> int:
        """Seconds until one full token is available again."""
        return max(1, math.ceil((1 - tokens) / self.rate))


class InMemoryTokenBucket(RateLimitBackend):
    """In-process token bucket.

    The check-and-debit runs under an asyncio.Lock, which makes it atomic for
    every coroutine in this process. Buckets idle longer than ttl_seconds
    are dropped, and an LRU bound keeps memory flat under address churn.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        rate: float,
        burst: Optional[float] = None,
        ttl_seconds: int = 300,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        super().__init__(rate, burst, ttl_seconds)
        self._max_entries = max_entries
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._lock = asyncio.Lock()

    def _evict(self, now_ms: int) -> None:
        ttl_ms = self.ttl_seconds * 1000
        while self._buckets:
            key, bucket = next(iter(self._buckets.items()))
            if now_ms - bucket.last_refill_ms <= ttl_ms and len(self._buckets) <= self._max_entries:
                break
            del self._buckets[key]

    async def try_acquire(self, identity: str, now_ms: Optional[int] = None) -> RateLimitResult:
        now_ms = _now_ms() if now_ms is None else now_ms
        async with self._lock:
            self._evict(now_ms)

            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = TokenBucket(tokens=self.burst, last_refill_ms=now_ms)
                self._buckets[identity] = bucket
            else:
                self._buckets.move_to_end(identity)

            elapsed_s = max(0, now_ms - bucket.last_refill_ms) / 1000
            bucket.tokens = min(self.burst, bucket.tokens + elapsed_s * self.rate)
            bucket.last_refill_ms = now_ms

            if bucket.tokens < 1:
                return RateLimitResult(
                    allowed=False,
                    limit=int(self.burst),
                    remaining=0,
                    retry_after=self._retry_after(bucket.tokens),
                )

            bucket.tokens -= 1
            return RateLimitResult(
                allowed=True,
                limit=int(self.burst),
                remaining=int(bucket.tokens),
            )

    def __len__(self) -> int:
        return len(self._buckets)


class RedisTokenBucket(RateLimitBackend):
    """Redis-based distributed token bucket.

    The whole read, refill, debit and write-back sequence is a single EVAL
    of TOKEN_BUCKET_SCRIPT, so it is atomic across API instances. When
    Redis cannot be reached the request is allowed (fail open) unless
    rate_limit_fail_closed is set.
    """

    def __init__(
        self,
        rate: float,
        burst: Optional[float] = None,
        ttl_seconds: int = 300,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(rate, burst, ttl_seconds)
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._owns_client = redis_client is None
        self.fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            from intake.app.core.redis_client import create_redis_client
            self._redis = create_redis_client(self._redis_url)
        return self._redis

    @staticmethod
    def make_key(identity: str) -> str:
        return f"{KEY_PREFIX}{identity}"

    async def _eval(self, identity: str, now_ms: int) -> tuple[bool, int]:
        try:
            result = await self._get_redis().eval(
                TOKEN_BUCKET_SCRIPT,
                1,  # Number of keys
                self.make_key(identity),  # KEYS[1]
                now_ms,  # ARGV[1]
                self.rate,  # ARGV[2]
                self.burst,  # ARGV[3]
                self.ttl_seconds,  # ARGV[4]
            )
        except redis.ConnectionError as e:
            raise RateLimiterUnavailable("connection_error") from e
        except redis.TimeoutError as e:
            raise RateLimiterUnavailable("timeout") from e
        except redis.RedisError as e:
            raise RateLimiterUnavailable("redis_error") from e
        except (OSError, asyncio.TimeoutError) as e:
            raise RateLimiterUnavailable("network") from e
        return bool(int(result[0])), int(result[1])

    async def try_acquire(self, identity: str, now_ms: Optional[int] = None) -> RateLimitResult:
        now_ms = _now_ms() if now_ms is None else now_ms
        try:
            allowed, remaining = await self._eval(identity, now_ms)
        except RateLimiterUnavailable as e:
            logger.error(f"Rate limiter store error: {e.__cause__!r}", extra={"client_ip": identity})
            return self._handle_redis_failure(e.reason)

        if not allowed:
            return RateLimitResult(
                allowed=False,
                limit=int(self.burst),
                remaining=0,
                retry_after=self._retry_after(remaining),
            )
        return RateLimitResult(allowed=True, limit=int(self.burst), remaining=remaining)

    def _handle_redis_failure(self, error_type: str) -> RateLimitResult:
        """Apply the fail-open / fail-closed policy after a store failure.

        Args:
            error_type: Type of error for logging purposes

        Returns:
            RateLimitResult based on fail_closed configuration
        """
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. "
                "Request denied."
            )
            return RateLimitResult(
                allowed=False,
                limit=int(self.burst),
                remaining=0,
                retry_after=1,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult(allowed=True, limit=int(self.burst), remaining=1)

    async def close(self) -> None:
        if self._owns_client and self._redis is not None:
            from intake.app.core.redis_client import close_redis_client
            await close_redis_client(self._redis)
            self._redis = None


class RateLimiter:
    """Admission gate that selects the appropriate token bucket store.

    Uses the Redis backend when Redis is enabled in settings, otherwise the
    in-memory backend. A backend can also be injected directly.
    """

    def __init__(
        self,
        rate: Optional[float] = None,
        burst: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
        use_redis: Optional[bool] = None,
        redis_client: Optional[Any] = None,
        backend: Optional[RateLimitBackend] = None,
    ):
        """Initialize rate limiter with appropriate backend.

        Args:
            rate: Tokens per second (defaults to settings.rate_limit_rps)
            burst: Bucket capacity (defaults to twice the rate)
            ttl_seconds: Idle bucket expiry
            use_redis: Force Redis usage (None = auto-detect from settings)
            redis_client: Shared Redis client for the Redis backend
            backend: Pre-built backend, overrides every other argument
        """
        if backend is not None:
            self._backend = backend
            return

        rate = rate if rate is not None else settings.rate_limit_rps
        ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.rate_limit_key_ttl_seconds
        should_use_redis = use_redis if use_redis is not None else settings.redis_enabled

        if should_use_redis:
            self._backend = RedisTokenBucket(
                rate=rate,
                burst=burst,
                ttl_seconds=ttl_seconds,
                redis_client=redis_client,
            )
            logger.info("Using Redis rate limiter backend")
        else:
            self._backend = InMemoryTokenBucket(rate=rate, burst=burst, ttl_seconds=ttl_seconds)
            logger.debug("Using in-memory rate limiter backend")

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    async def try_acquire(self, identity: str, now_ms: Optional[int] = None) -> RateLimitResult:
        return await self._backend.try_acquire(identity, now_ms)

    async def close(self) -> None:
        await self._backend.close()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce the per-client token bucket on every request."""

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        trusted_proxies: Optional[Iterable[IPNetwork]] = None,
    ):
        super().__init__(app)
        self.limiter = limiter or RateLimiter()
        self.trusted_proxies = list(
            trusted_proxies if trusted_proxies is not None else settings.trusted_proxy_networks
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        client_ip = get_client_ip(request, self.trusted_proxies)
        request.state.client_ip = client_ip
        result = await self.limiter.try_acquire(client_ip)

        if not result.allowed:
            error = RateLimitExceededError(retry_after=result.retry_after or 1)
            logger.info(
                "Rate limit exceeded",
                extra={"client_ip": client_ip, "path": request.url.path},
            )
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers={
                    "Retry-After": str(error.retry_after),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)

        return response
