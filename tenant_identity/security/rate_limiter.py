"""In-memory sliding window rate limiter and backend selection."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Deque, DefaultDict

if TYPE_CHECKING:
    from ..config import Settings
    from .redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Outcome of one limiter check; ``retry_after`` is whole seconds, 0 when allowed."""

    allowed: bool
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter.

    Keys whose newest event has left the window are dropped by a sweep that
    runs at most once per window.
    """

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()
        self._last_sweep = time.monotonic()

    def hit(self, key: str) -> RateLimitDecision:
        """Record an attempt for ``key`` unless the window is already full."""
        now = time.monotonic()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(now)
            queue = self._events[key]
            while queue and now - queue[0] > self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                wait = self._window - (now - queue[0])
                return RateLimitDecision(allowed=False, retry_after=max(1, math.ceil(wait)))
            queue.append(now)
            return RateLimitDecision(allowed=True)

    def tracked_keys(self) -> int:
        """Number of keys currently holding window state."""
        with self._lock:
            return len(self._events)

    def _sweep(self, now: float) -> None:
        stale = [key for key, queue in self._events.items() if not queue or now - queue[-1] > self._window]
        for key in stale:
            del self._events[key]
        self._last_sweep = now


def build_rate_limiter(settings: Settings) -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        import redis

        from .redis_rate_limiter import RedisSlidingWindowRateLimiter

        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
        except redis.RedisError as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        else:
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
                key_prefix="identity-rate",
            )

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
