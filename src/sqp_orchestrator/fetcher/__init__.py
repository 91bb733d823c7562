"""Reporting API access with rate limiting, circuit breaking and retries."""

from .circuit_breaker import CircuitBreaker
from .rate_limiter import RateLimiter
from .retry_handler import RetryHandler

__all__ = ["CircuitBreaker", "RateLimiter", "RetryHandler"]
