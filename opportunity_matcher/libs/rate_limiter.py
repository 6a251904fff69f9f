"""
In-memory sliding-window rate limiter.

Advisory, per-process limits keyed by an arbitrary string (usually a user
id). Expired hits are dropped on access and by ``prune()``; past
``max_keys`` the least recently active keys are evicted.
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import RateLimitExceeded
from opportunity_matcher.log.logging import logger


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` hits per key within ``window_seconds``."""

    def __init__(
        self,
        max_requests: int = settings.rate_limit_max_requests,
        window_seconds: float = settings.rate_limit_window_seconds,
        max_keys: int = settings.rate_limit_max_keys,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the limiter.

        Args:
            max_requests: Hits allowed per key inside one window
            window_seconds: Window length in seconds
            max_keys: Keys tracked before the least recently active are evicted
            clock: Monotonic time source, injectable for tests
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    def _expire(self, hits: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _evict(self) -> None:
        overflow = len(self._hits) - self.max_keys
        if overflow <= 0:
            return
        by_activity = sorted(self._hits.items(), key=lambda kv: kv[1][-1] if kv[1] else float("-inf"))
        for key, _ in by_activity[:overflow]:
            del self._hits[key]
        logger.debug("Evicted rate limiter keys", evicted=overflow, max_keys=self.max_keys)

    async def allow(self, key: str) -> bool:
        """
        Record a hit for ``key`` if it is under its limit.

        Returns:
            True if the hit was accepted, False if the key is rate limited
        """
        async with self._lock:
            now = self._clock()
            hits = self._hits.get(key)
            if hits is not None:
                self._expire(hits, now)
                if len(hits) >= self.max_requests:
                    return False
            else:
                hits = deque()
                self._hits[key] = hits
            hits.append(now)
            self._evict()
            return True

    async def acquire(self, key: str) -> None:
        """
        Record a hit for ``key`` or raise.

        Raises:
            RateLimitExceeded: The key has used up its window
        """
        if await self.allow(key):
            return
        async with self._lock:
            hits = self._hits.get(key)
            oldest = hits[0] if hits else self._clock()
            retry_after = max(0.0, oldest + self.window_seconds - self._clock())
        logger.warning("Rate limit exceeded", key=key, retry_after=round(retry_after, 2))
        raise RateLimitExceeded(key, retry_after)

    async def remaining(self, key: str) -> int:
        async with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.max_requests
            self._expire(hits, self._clock())
            return max(0, self.max_requests - len(hits))

    async def prune(self) -> int:
        """
        Drop every key whose window has fully expired.

        Returns:
            Number of keys removed
        """
        async with self._lock:
            now = self._clock()
            stale = []
            for key, hits in self._hits.items():
                self._expire(hits, now)
                if not hits:
                    stale.append(key)
            for key in stale:
                del self._hits[key]
        if stale:
            logger.info("Pruned idle rate limiter keys", removed=len(stale), remaining=len(self._hits))
        return len(stale)
