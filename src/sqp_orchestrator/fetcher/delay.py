"""Clock and delay service shared by the resilience components."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from sqp_orchestrator.monitoring.logger import StructuredLogger


class Clock(Protocol):
    """Clock interface for testable time management."""

    def now(self) -> float:
        """Return current time in seconds."""
        ...


class MonotonicClock:
    """Default clock implementation using time.monotonic."""

    def now(self) -> float:
        """Return current monotonic time in seconds."""
        return time.monotonic()


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 15.0,
    step_seconds: float = 15.0,
    max_delay: float = 120.0,
) -> float:
    """
    Calculate a linear backoff delay capped at a ceiling.

    Formula: min(base_delay + attempt * step_seconds, max_delay)

    Args:
        attempt: Attempt number that just failed (1-indexed)
        base_delay: Delay before any step is added, in seconds
        step_seconds: Seconds added per attempt
        max_delay: Maximum delay cap in seconds

    Returns:
        Delay in seconds
    """
    return min(base_delay + max(attempt, 0) * step_seconds, max_delay)


@dataclass(frozen=True)
class BackoffPolicy:
    """Linear-capped backoff parameters."""
    base_delay: float = 15.0
    step_seconds: float = 15.0
    max_delay: float = 120.0

    def delay_for(self, attempt: int) -> float:
        return calculate_backoff_delay(
            attempt,
            base_delay=self.base_delay,
            step_seconds=self.step_seconds,
            max_delay=self.max_delay,
        )


class DelayService:
    """
    Computes sleep durations and performs the actual suspension.

    Every wait is logged with its reason so the audit trail shows where a
    run spent its time.
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize delay service.

        Args:
            policy: Backoff parameters used by backoff()
            sleeper: Async sleep function (default: asyncio.sleep)
            logger: Optional structured logger for telemetry
        """
        self.policy = policy or BackoffPolicy()
        self._sleep = sleeper
        self.logger = logger

    async def wait(self, seconds: float, reason: str, **context) -> float:
        """Suspend for a fixed number of seconds.

        Args:
            seconds: Duration to wait; non-positive values return immediately
            reason: Short description logged with the wait
            **context: Extra fields for the log event

        Returns:
            The number of seconds waited
        """
        if seconds <= 0:
            return 0.0
        if self.logger:
            self.logger.backoff_wait(seconds=seconds, reason=reason, **context)
        await self._sleep(seconds)
        return seconds

    async def backoff(self, attempt: int, reason: str, **context) -> float:
        """Suspend for the policy's delay after the given attempt."""
        delay = self.policy.delay_for(attempt)
        return await self.wait(delay, reason, attempt=attempt, **context)
