"""Retry engine wrapping every report phase with bounded, logged attempts."""

from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from sqp_orchestrator.fetcher.delay import Clock, DelayService, MonotonicClock
from sqp_orchestrator.models.data_models import (
    ActivityLogEntry,
    ActivityStatus,
    DateRange,
    PhaseResult,
    ReportType,
    RetryAttempt,
    RetryResult,
)
from sqp_orchestrator.models.errors import FatalReportError, SkipPhase
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.storage.base import ReportStore

Operation = Callable[[RetryAttempt], Awaitable[Any]]
ExhaustedHandler = Callable[[RetryResult], Awaitable[None]]


@dataclass
class RetryContext:
    """Identifies the (WorkUnit, type, action) an operation runs for."""
    work_unit_id: int
    amazon_seller_id: str
    report_type: ReportType
    action: str
    date_range: Optional[DateRange] = None
    report_id: Optional[str] = None


def is_terminal_error(error: BaseException) -> bool:
    """Fatal errors and errors flagged non-retryable stop the retry loop."""
    if isinstance(error, FatalReportError):
        return True
    return not getattr(error, "retryable", True)


class RetryHandler:
    """
    Executes a phase operation up to N times.

    Outcomes:
    - success: the operation's result is returned
    - retryable failure: logged, retry count incremented, backoff, retried
    - terminal failure (fatal error or attempts exhausted): on_exhausted is
      awaited once and no further attempt is made
    - skip (SkipPhase): logged only; not counted, not notified

    Every attempt appends an ActivityLogEntry through the store.
    """

    def __init__(
        self,
        store: ReportStore,
        delay_service: Optional[DelayService] = None,
        max_attempts: int = 5,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize retry handler.

        Args:
            store: Persistence used for the activity log and retry counters
            delay_service: Performs backoff waits between attempts
            max_attempts: Default maximum attempts per execution
            clock: Clock used to measure elapsed time
            logger: Optional structured logger for telemetry
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {max_attempts}")
        self.store = store
        self.delay_service = delay_service or DelayService(logger=logger)
        self.max_attempts = max_attempts
        self.clock = clock or MonotonicClock()
        self.logger = logger

    async def execute_with_retry(
        self,
        operation: Operation,
        context: RetryContext,
        max_attempts: Optional[int] = None,
        on_exhausted: Optional[ExhaustedHandler] = None,
    ) -> RetryResult:
        """
        Execute operation with retry logic.

        Args:
            operation: Coroutine function receiving the RetryAttempt
            context: WorkUnit/type/action identity used for logging
            max_attempts: Overrides the handler default
            on_exhausted: Awaited once on terminal failure or exhaustion

        Returns:
            RetryResult describing the outcome
        """
        attempts = max_attempts or self.max_attempts
        started = self.clock.now()
        retry_count = await self.store.get_retry_count(context.work_unit_id, context.report_type)

        for attempt in range(1, attempts + 1):
            elapsed = self.clock.now() - started
            await self._log(
                context, ActivityStatus.STARTED,
                f"{context.action} attempt {attempt}/{attempts}",
                retry_count, elapsed,
            )
            if self.logger:
                self.logger.phase_attempt(
                    context.action, context.work_unit_id, context.report_type.value, attempt
                )

            try:
                data = await operation(RetryAttempt(attempt=attempt, max_attempts=attempts, elapsed=elapsed))
            except SkipPhase as e:
                elapsed = self.clock.now() - started
                await self._log(context, ActivityStatus.SKIPPED, str(e), retry_count, elapsed)
                return RetryResult(
                    success=False,
                    attempt=attempt,
                    retry_count=retry_count,
                    skipped=True,
                    reason=str(e),
                    execution_time=elapsed,
                )
            except Exception as e:
                elapsed = self.clock.now() - started
                if is_terminal_error(e):
                    await self._log(context, ActivityStatus.FAILED, str(e), retry_count, elapsed)
                    result = RetryResult(
                        success=False,
                        attempt=attempt,
                        retry_count=retry_count,
                        fatal=True,
                        final_failure=True,
                        reason=str(e),
                        error=e,
                        execution_time=elapsed,
                    )
                    if on_exhausted:
                        await on_exhausted(result)
                    return result

                retry_count = await self.store.increment_retry_count(
                    context.work_unit_id, context.report_type
                )

                if attempt >= attempts:
                    message = f"{context.action} failed after {attempt} attempts: {e}"
                    await self._log(context, ActivityStatus.FAILED, message, retry_count, elapsed)
                    result = RetryResult(
                        success=False,
                        attempt=attempt,
                        retry_count=retry_count,
                        final_failure=True,
                        reason=message,
                        error=e,
                        execution_time=elapsed,
                    )
                    if on_exhausted:
                        await on_exhausted(result)
                    return result

                await self._log(
                    context, ActivityStatus.RETRYING,
                    f"Attempt {attempt} failed, will retry: {e}",
                    retry_count, elapsed,
                )
                if self.logger:
                    self.logger.phase_retry(
                        context.action, context.work_unit_id, context.report_type.value,
                        attempt, retry_count, str(e),
                    )
                # Operations that already waited (e.g. status polling) skip the engine backoff
                if not getattr(e, "backoff_applied", False):
                    await self.delay_service.backoff(
                        attempt,
                        reason=f"{context.action} retry",
                        work_unit_id=context.work_unit_id,
                        report_type=context.report_type.value,
                    )
                continue

            elapsed = self.clock.now() - started
            message = f"{context.action} succeeded on attempt {attempt}"
            log_context = context
            if isinstance(data, PhaseResult):
                message = data.message
                log_context = replace(context, report_id=data.report_id or context.report_id)
            await self._log(
                log_context, ActivityStatus.SUCCEEDED, message, retry_count, elapsed,
                document_id=data.document_id if isinstance(data, PhaseResult) else None,
            )
            return RetryResult(
                success=True,
                attempt=attempt,
                retry_count=retry_count,
                data=data,
                execution_time=elapsed,
            )

        # attempts >= 1 guarantees a return inside the loop
        raise RuntimeError("retry loop exited without a result")

    async def _log(
        self,
        context: RetryContext,
        status: ActivityStatus,
        message: str,
        retry_count: int,
        elapsed: float,
        document_id: Optional[str] = None,
    ) -> None:
        await self.store.log_activity(ActivityLogEntry(
            work_unit_id=context.work_unit_id,
            amazon_seller_id=context.amazon_seller_id,
            report_type=context.report_type,
            action=context.action,
            status=status,
            message=message,
            report_id=context.report_id,
            document_id=document_id,
            retry_count=retry_count,
            execution_time=round(elapsed, 3),
            date_range=context.date_range,
        ))
