"""Fixed-window rate limiter keyed per seller (or per client)."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from sqp_orchestrator.models.errors import RateLimitExceeded
from sqp_orchestrator.monitoring.logger import StructuredLogger


@dataclass
class RateLimiterState:
    """Counter for the current window of one key."""
    window_start: float
    count: int = 0


class RateLimiter:
    """Fixed-window counter allowing `points` operations per `duration_seconds` per key.

    Two enforcement styles share the same counters:
    - check_limit() waits until the window resets (outbound API calls)
    - consume() rejects with RateLimitExceeded (HTTP-facing, mapped to 429)
    """

    def __init__(
        self,
        points: int = 100,
        duration_seconds: float = 60.0,
        now: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[StructuredLogger] = None,
    ):
        """Initialize rate limiter.

        Args:
            points: Operations allowed per window
            duration_seconds: Window length in seconds
            now: Clock function for time operations (default: time.monotonic)
            sleeper: Async sleep function (default: asyncio.sleep)
            logger: Optional structured logger for wait events
        """
        if points <= 0:
            raise ValueError(f"points must be positive, got: {points}")
        if duration_seconds <= 0:
            raise ValueError(f"duration_seconds must be positive, got: {duration_seconds}")
        self.points = points
        self.duration_seconds = duration_seconds
        self._now = now
        self._sleep = sleeper
        self.logger = logger
        self._windows: Dict[str, RateLimiterState] = {}

    def _get_window(self, key: str) -> RateLimiterState:
        """Return the live window for key, starting a new one when the old has expired."""
        current_time = self._now()
        window = self._windows.get(key)
        if window is None or current_time - window.window_start >= self.duration_seconds:
            window = RateLimiterState(window_start=current_time)
            self._windows[key] = window
        return window

    def _try_acquire(self, key: str) -> float:
        """Take a slot if one is free.

        Returns:
            0.0 when a slot was taken, otherwise seconds until the window resets
        """
        window = self._get_window(key)
        if window.count < self.points:
            window.count += 1
            return 0.0
        return max(window.window_start + self.duration_seconds - self._now(), 0.0)

    async def check_limit(self, key: str) -> None:
        """Acquire a slot for key, waiting for the window to reset if needed.

        Args:
            key: Seller identifier the outbound call is made for
        """
        while True:
            wait = self._try_acquire(key)
            if wait == 0.0:
                return
            if self.logger:
                self.logger.rate_limited(key, wait)
            await self._sleep(wait)

    def consume(self, key: str) -> int:
        """Take a slot for key or reject immediately.

        Returns:
            Remaining slots in the current window

        Raises:
            RateLimitExceeded: If the window is exhausted
        """
        wait = self._try_acquire(key)
        if wait > 0.0:
            raise RateLimitExceeded(key, self.points, wait)
        return self.remaining(key)

    def remaining(self, key: str) -> int:
        """Slots left in the current window for key."""
        return max(self.points - self._get_window(key).count, 0)

    def reset_in(self, key: str) -> float:
        """Seconds until the current window for key resets."""
        window = self._get_window(key)
        return max(window.window_start + self.duration_seconds - self._now(), 0.0)
