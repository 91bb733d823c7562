"""Exception hierarchy for the report orchestrator.

Each phase classifies failures into one of these types so the retry engine
can decide between retrying, skipping and giving up.
"""

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": str(self.args[0]) if self.args else "",
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(OrchestratorError):
    """Invalid or missing configuration."""


class NotFoundError(OrchestratorError):
    """A WorkUnit, seller or record could not be resolved from storage."""


class RetryableError(OrchestratorError):
    """Transient failure; the retry engine may attempt the operation again."""

    retryable = True


class ReportNotReadyError(RetryableError):
    """The provider is still processing the report (IN_QUEUE / IN_PROGRESS).

    Args:
        status: Last processing status returned by the provider
        backoff_applied: True when the caller already waited before raising
    """

    def __init__(self, status: str, *, backoff_applied: bool = False):
        self.status = status
        self.backoff_applied = backoff_applied
        super().__init__(f"Report not ready: {status}", details={"status": status})


class CircuitOpenError(RetryableError):
    """Circuit breaker is open for the (operation, seller) key."""

    def __init__(self, key: str, retry_in: float):
        self.key = key
        self.retry_in = retry_in
        super().__init__(
            f"Circuit breaker open for {key}",
            details={"key": key, "retry_in": round(retry_in, 3)},
        )


class FatalReportError(OrchestratorError):
    """Unrecoverable failure; no retry, immediate notification."""

    def __init__(self, message: str, *, status: Optional[str] = None, **kwargs):
        self.status = status
        super().__init__(message, **kwargs)


class SkipPhase(OrchestratorError):
    """Precondition not met (e.g. no report id logged yet).

    Not counted as a retry and never notified.
    """


class ReportsApiError(OrchestratorError):
    """Error response from the reporting API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, details=details)


class AuthError(ReportsApiError):
    """401/403 from the reporting API. Triggers one forced credential refresh."""

    def __init__(self, message: str, *, status_code: int):
        super().__init__(message, status_code=status_code, retryable=False)


class RateLimitExceeded(OrchestratorError):
    """Fixed-window limit reached for a key (reject policy)."""

    def __init__(self, key: str, limit: int, retry_after: float):
        self.key = key
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit of {limit} exceeded for {key}",
            details={"key": key, "retry_after": round(retry_after, 3)},
        )


class InvalidTransitionError(OrchestratorError):
    """Attempted a DownloadRecord status transition that is not allowed."""


class DownloadAttemptsExhausted(InvalidTransitionError):
    """DownloadRecord reached its maximum number of attempts."""
