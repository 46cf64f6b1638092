"""Sliding-window rate limiter (single process).

A key may record ``max_events`` events per ``window_seconds``. Exceeding the
limit blocks the key for ``block_seconds``.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from quay.config import RateLimitConfig, get_settings


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float | None = None


class SlidingWindowRateLimiter:
    """In-memory sliding window keyed by an arbitrary string.

    hit() has no await points, so it is atomic with respect to other
    coroutines on the same loop.
    """

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        block_seconds: float = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_events = max_events
        self._window = window_seconds
        self._block = block_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._blocked_until: dict[str, float] = {}

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "SlidingWindowRateLimiter":
        return cls(config.max_uploads, config.window_seconds, config.block_seconds)

    def hit(self, key: str) -> RateLimitResult:
        """Record an event for key if allowed."""
        now = self._clock()

        blocked_until = self._blocked_until.get(key)
        if blocked_until is not None:
            if blocked_until > now:
                return RateLimitResult(allowed=False, remaining=0, retry_after=blocked_until - now)
            del self._blocked_until[key]

        events = self._events.setdefault(key, deque())
        while events and events[0] <= now - self._window:
            events.popleft()

        if len(events) >= self._max_events:
            if self._block > 0:
                self._blocked_until[key] = now + self._block
                retry_after = self._block
            else:
                retry_after = events[0] + self._window - now
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

        events.append(now)
        return RateLimitResult(allowed=True, remaining=self._max_events - len(events))

    def reset(self, key: str) -> None:
        self._events.pop(key, None)
        self._blocked_until.pop(key, None)


@lru_cache
def get_upload_rate_limiter() -> SlidingWindowRateLimiter:
    """Process-wide upload limiter."""
    return SlidingWindowRateLimiter.from_config(get_settings().quota.rate_limit)
