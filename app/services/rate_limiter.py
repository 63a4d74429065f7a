"""
Checkout Rate Limiting

Per-client admission control in front of the checkout orchestrator.
Uses a Redis fixed-window counter (INCR + EXPIRE) when REDIS_URL is set, and an
in-process window for development and tests.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import math
import threading
import time

import structlog

from app.config import settings

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float  # epoch seconds when the current window ends

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, int(math.ceil(self.reset - now)))


class RedisRateLimiter:
    """
    Fixed-window limiter shared by every API process.

    Key format: routine_checkout:ratelimit:{prefix}:{client}:{window_start}
    """

    KEY_PREFIX = "routine_checkout:ratelimit"

    def __init__(self, redis_client, max_requests: int, window_seconds: int, prefix: str = "checkout"):
        """
        Args:
            redis_client: Redis client instance (from redis-py)
            max_requests: Requests allowed per window
            window_seconds: Window length
            prefix: Limiter name, part of the key
        """
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix

    def limit(self, client_key: str) -> RateLimitResult:
        now = time.time()
        window_start = int(now // self.window_seconds) * self.window_seconds
        reset = window_start + self.window_seconds
        key = f"{self.KEY_PREFIX}:{self.prefix}:{client_key}:{window_start}"

        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.window_seconds + 1)
        count, _ = pipe.execute()
        count = int(count)

        if count > self.max_requests:
            logger.warning("rate_limit_exceeded", client=client_key, count=count, limit=self.max_requests)
            return RateLimitResult(success=False, limit=self.max_requests, remaining=0, reset=reset)

        return RateLimitResult(
            success=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset=reset,
        )


class InMemoryRateLimiter:
    """
    Per-process window limiter. Counts are not shared between processes.
    """

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def limit(self, client_key: str) -> RateLimitResult:
        now = time.time()
        with self._lock:
            count, reset = self._windows.get(client_key, (0, 0.0))
            if reset <= now:
                count, reset = 0, now + self.window_seconds
                self._cleanup(now)

            if count >= self.max_requests:
                return RateLimitResult(success=False, limit=self.max_requests, remaining=0, reset=reset)

            count += 1
            self._windows[client_key] = (count, reset)
            return RateLimitResult(
                success=True,
                limit=self.max_requests,
                remaining=self.max_requests - count,
                reset=reset,
            )

    def _cleanup(self, now: float) -> None:
        expired = [key for key, (_, reset) in self._windows.items() if reset <= now]
        for key in expired:
            del self._windows[key]


def create_checkout_rate_limiter():
    """
    Build the checkout limiter from settings.

    Returns:
        RedisRateLimiter when REDIS_URL is configured, else InMemoryRateLimiter
    """
    if settings.redis_url:
        import redis

        client = redis.Redis.from_url(settings.redis_url, socket_timeout=2, socket_connect_timeout=2)
        logger.info("rate_limiter_configured", type="redis")
        return RedisRateLimiter(
            client,
            max_requests=settings.checkout_rate_limit,
            window_seconds=settings.checkout_rate_window_seconds,
        )

    logger.warning("rate_limiter_configured", type="in_memory", reason="REDIS_URL not set")
    return InMemoryRateLimiter(
        max_requests=settings.checkout_rate_limit,
        window_seconds=settings.checkout_rate_window_seconds,
    )


def get_client_ip(headers, peer: Optional[str] = None) -> str:
    """
    Best-effort client address for rate limiting.

    Checks X-Forwarded-For (first hop), X-Real-IP, CF-Connecting-IP,
    then the socket peer.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return value.strip()

    return peer or "unknown"
