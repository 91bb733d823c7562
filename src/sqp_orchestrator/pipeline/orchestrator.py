"""Report-lifecycle orchestrator: Request -> Poll Status -> Download -> Import."""

import asyncio
import time
import uuid
from datetime import date, datetime, timedelta
from typing import (
    Any,
    Awaitable,
    Callable,
    Collection,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

from sqp_orchestrator.fetcher.auth import TokenProvider
from sqp_orchestrator.fetcher.circuit_breaker import CircuitBreaker
from sqp_orchestrator.fetcher.delay import DelayService
from sqp_orchestrator.fetcher.rate_limiter import RateLimiter
from sqp_orchestrator.fetcher.reports_client import ReportsApiClient, build_report_payload
from sqp_orchestrator.fetcher.retry_handler import RetryContext, RetryHandler
from sqp_orchestrator.models.config import OrchestratorConfig
from sqp_orchestrator.models.data_models import (
    IN_PROGRESS_STATUSES,
    STATUS_DONE,
    TERMINAL_PULL_STATUSES,
    ActivityLogEntry,
    ActivityStatus,
    AsinPullStatus,
    AuthOverrides,
    CronRunningStatus,
    DateRange,
    DownloadRecord,
    DownloadStatus,
    ImportResult,
    PhaseResult,
    PhaseStatus,
    PullStatus,
    RecoveryResult,
    ReportTask,
    ReportType,
    ReportTypeState,
    RetryAttempt,
    RetryResult,
    RunSummary,
    Seller,
    TaskState,
    WorkUnit,
    utc_now,
)
from sqp_orchestrator.models.errors import (
    AuthError,
    FatalReportError,
    NotFoundError,
    ReportNotReadyError,
    ReportsApiError,
    SkipPhase,
)
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.monitoring.notifier import FailureNotifier
from sqp_orchestrator.pipeline.importer import ArtifactImporter
from sqp_orchestrator.pipeline.output import JSONArtifactWriter
from sqp_orchestrator.scheduling.chunker import AsinChunk, split_asins_into_chunks
from sqp_orchestrator.scheduling.eligibility import PullPlan, build_initial_pull_plan, build_pull_plan
from sqp_orchestrator.scheduling.periods import PeriodCalculator
from sqp_orchestrator.storage.base import ReportStore

T = TypeVar("T")

ACTION_REQUEST = "Request Report"
ACTION_STATUS = "Check Status"
ACTION_DOWNLOAD = "Download Report"
ACTION_IMPORT = "Import Report"


def compute_cron_running_status(statuses: Iterable[PullStatus]) -> CronRunningStatus:
    """
    Aggregate per-type pull statuses.

    Priority: any NeedsRetry, then any Pending, then all Completed,
    otherwise a Completed/Failed mix.
    """
    statuses = list(statuses)
    if any(s is PullStatus.NEEDS_RETRY for s in statuses):
        return CronRunningStatus.NEEDS_RETRY
    if any(s is PullStatus.PENDING for s in statuses):
        return CronRunningStatus.RUNNING
    if statuses and all(s is PullStatus.COMPLETED for s in statuses):
        return CronRunningStatus.COMPLETED
    return CronRunningStatus.COMPLETED_WITH_FATAL


def derive_task_state(state: ReportTypeState, report_id: Optional[str]) -> TaskState:
    if state.pull_status is PullStatus.COMPLETED:
        return TaskState.IMPORTED
    if state.pull_status is PullStatus.FAILED:
        return TaskState.FAILED
    if state.phase_status is PhaseStatus.NOT_STARTED:
        return TaskState.NOT_REQUESTED
    if state.phase_status is PhaseStatus.REQUESTING:
        return TaskState.AWAITING_STATUS if report_id else TaskState.REQUESTING
    if state.phase_status is PhaseStatus.CHECKING_STATUS:
        return TaskState.AWAITING_STATUS
    return TaskState.DOWNLOADING


class ReportLifecycleOrchestrator:
    """
    Drives each (WorkUnit, report type) through the report lifecycle.

    Every phase re-reads the WorkUnit and the report/document ids from the
    store before acting, and writes its transition back before the next
    phase starts. Failures are contained per (WorkUnit, type).
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        store: ReportStore,
        api_client: ReportsApiClient,
        token_provider: TokenProvider,
        retry_handler: RetryHandler,
        circuit_breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        delay_service: DelayService,
        period_calculator: PeriodCalculator,
        importer: ArtifactImporter,
        artifact_writer: JSONArtifactWriter,
        notifier: Optional[FailureNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize orchestrator with injected components.

        Args:
            config: Orchestrator configuration (allow-list, limits, delays)
            store: Durable state
            api_client: Reporting API client
            token_provider: Credentials per seller
            retry_handler: Retry engine wrapping every phase
            circuit_breaker: Breaker keyed per (operation, seller)
            rate_limiter: Outbound limiter keyed per seller
            delay_service: Performs initial, pacing and polling waits
            period_calculator: Window and availability calculations
            importer: Import trigger for completed downloads
            artifact_writer: Saves downloaded rows
            notifier: Failure notification sender
            clock: UTC clock for persisted timestamps
            logger: Optional structured logger
        """
        self.config = config
        self.store = store
        self.api_client = api_client
        self.token_provider = token_provider
        self.retry_handler = retry_handler
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.delay_service = delay_service
        self.period_calculator = period_calculator
        self.importer = importer
        self.artifact_writer = artifact_writer
        self.notifier = notifier
        self._now = clock
        self.logger = logger or StructuredLogger(level=config.log_level)
        self._seller_locks: Dict[int, asyncio.Lock] = {}

    # Exposed operations

    async def run_once(self, user_id: Optional[int] = None, seller_id: Optional[int] = None) -> RunSummary:
        """
        Process the first eligible seller, then stop.

        A seller whose pending ranges are all covered by in-flight work units
        does not count as processed; the run moves on to the next seller.

        Args:
            user_id: Restrict the run to this user's sellers
            seller_id: Restrict the run to one seller

        Returns:
            RunSummary for the processed seller (or the reason nothing ran)
        """
        return await self._run_first_seller(user_id, seller_id, self._plan_for, "no eligible seller")

    async def run_initial_pull(
        self,
        user_id: Optional[int] = None,
        seller_id: Optional[int] = None,
        report_type: Optional[ReportType] = None,
    ) -> RunSummary:
        """
        Backfill history for the first seller that was never pulled, then stop.

        Requests every window of the configured depth per type that has no
        watermark yet, oldest first. Re-running it after a partial failure
        only requests the windows not yet imported. The watermark is set to
        the latest window once every window is imported.

        Args:
            user_id: Restrict the run to this user's sellers
            seller_id: Restrict the run to one seller
            report_type: Backfill only this type

        Returns:
            RunSummary for the processed seller (or the reason nothing ran)
        """
        report_types = [report_type] if report_type else self.config.enabled_report_types

        async def plan(seller: Seller) -> PullPlan:
            return await self._initial_plan_for(seller, report_types)

        return await self._run_first_seller(user_id, seller_id, plan, "no seller needs an initial pull")

    async def retry_stuck_unit(self, work_unit_id: int, report_type: ReportType) -> RecoveryResult:
        """
        Re-drive one (WorkUnit, type) through Poll Status and Download.

        Request is never repeated; the provider-side report still exists.
        A type whose artifact is already downloaded only retries the import.

        Returns:
            RecoveryResult with the type's resulting pull status
        """
        unit = await self._load(work_unit_id)
        async with self._lock_for(unit.seller_id):
            return await self._retry_stuck_unit(work_unit_id, report_type)

    async def _retry_stuck_unit(self, work_unit_id: int, report_type: ReportType) -> RecoveryResult:
        unit = await self._load(work_unit_id)
        state = self._type_state(unit, report_type)
        if state.pull_status in TERMINAL_PULL_STATUSES:
            return RecoveryResult(
                work_unit_id=work_unit_id,
                report_type=report_type,
                pull_status=state.pull_status,
                cron_running_status=unit.cron_running_status,
                message="already terminal",
            )

        unit = await self._update_type(
            work_unit_id, report_type,
            pull_status=PullStatus.NEEDS_RETRY,
            recovery_attempts=state.recovery_attempts + 1,
        )
        unit.cron_running_status = CronRunningStatus.RETRY_RUNNING
        unit = await self.store.save_work_unit(unit)
        await self.store.update_asin_status(
            unit.seller_id, unit.asins, report_type, AsinPullStatus.IN_PROGRESS, started_at=self._now()
        )

        try:
            record = await self._pending_import(unit, report_type)
            if record is not None:
                await self._import_phase(work_unit_id, report_type, record.report_id)
            else:
                await self._status_phase(work_unit_id, report_type)
        except Exception as e:
            await self._contain_failure(work_unit_id, report_type, e)

        unit = await self._load(work_unit_id)
        state = unit.state(report_type)
        notified = False
        message = f"{report_type.value} is {state.pull_status.name}"

        if state.pull_status not in TERMINAL_PULL_STATUSES:
            if state.recovery_attempts >= self.config.stuck_retry_limit:
                report_id = await self.store.get_latest_report_id(work_unit_id, report_type, state.date_range)
                message = (f"{report_type.value} still not completed after "
                           f"{state.recovery_attempts} recovery attempts")
                await self._fail_type(work_unit_id, report_type, message, state.retry_count,
                                      report_id=report_id, is_fatal=False)
                notified = True
            else:
                await self._update_type(work_unit_id, report_type, pull_status=PullStatus.NEEDS_RETRY)
                await self._log_activity(unit, report_type, "Retry Failed", ActivityStatus.FAILED, message)

        status = await self._finalize(work_unit_id)
        await self._advance_watermark_if_complete(unit.run_id)
        unit = await self._load(work_unit_id)
        return RecoveryResult(
            work_unit_id=work_unit_id,
            report_type=report_type,
            pull_status=unit.state(report_type).pull_status,
            cron_running_status=status,
            notified=notified,
            message=message,
        )

    async def check_phase(self, work_unit_id: int, report_type: ReportType) -> ReportTask:
        """Read-only snapshot of one report task, resolved from the store."""
        unit = await self._load(work_unit_id)
        state = self._type_state(unit, report_type)
        report_id = await self.store.get_latest_report_id(work_unit_id, report_type, state.date_range)
        record = (
            await self.store.get_download_record(work_unit_id, report_type, report_id)
            if report_id else None
        )
        document_id = record.document_id if record else None
        if report_id and not document_id:
            document_id = await self.store.get_latest_document_id(work_unit_id, report_type, report_id)
        return ReportTask(
            work_unit_id=work_unit_id,
            report_type=report_type,
            date_range=state.date_range,
            state=derive_task_state(state, report_id),
            pull_status=state.pull_status,
            phase_status=state.phase_status,
            report_id=report_id,
            document_id=document_id,
            download_status=record.status if record else None,
            retry_count=state.retry_count,
            updated_at=unit.updated_at,
        )

    # Planning

    def _lock_for(self, seller_id: int) -> asyncio.Lock:
        """Per-seller lock; planning and unit creation for a seller never overlap."""
        return self._seller_locks.setdefault(seller_id, asyncio.Lock())

    async def _run_first_seller(
        self,
        user_id: Optional[int],
        seller_id: Optional[int],
        planner: Callable[[Seller], Awaitable[PullPlan]],
        idle_reason: str,
    ) -> RunSummary:
        started = time.monotonic()
        summary = RunSummary(user_id=user_id)

        for seller in await self._candidate_sellers(user_id, seller_id):
            async with self._lock_for(seller.id):
                plan = await planner(seller)
                if plan.is_empty:
                    self.logger.log("seller_skipped", seller=seller.amazon_seller_id,
                                    reasons={rt.value: r for rt, r in plan.skipped.items()},
                                    asins=len(plan.asins))
                    continue
                created = await self._process_seller(seller, plan, summary)
            if not created:
                self.logger.log("seller_skipped", seller=seller.amazon_seller_id,
                                reason="pending ranges already in flight")
                continue
            summary.user_id = seller.user_id
            summary.seller_id = seller.id
            summary.amazon_seller_id = seller.amazon_seller_id
            summary.report_types = plan.report_types
            break
        else:
            summary.skipped_reason = idle_reason

        summary.duration_seconds = time.monotonic() - started
        self.logger.run_complete(summary.amazon_seller_id, len(summary.work_units),
                                 round(summary.duration_seconds * 1000, 1))
        return summary

    async def _candidate_sellers(self, user_id: Optional[int], seller_id: Optional[int]) -> List[Seller]:
        if seller_id is not None or user_id is not None:
            sellers = await self.store.list_sellers(user_id=user_id, seller_id=seller_id)
        else:
            sellers = []
            for uid in await self.store.list_user_ids():
                if self.config.is_user_allowed(uid):
                    sellers.extend(await self.store.list_sellers(user_id=uid))
        allowed = [s for s in sellers if self.config.is_user_allowed(s.user_id)]
        if len(allowed) < len(sellers):
            self.logger.log("sellers_filtered", reason="user not allowed",
                            count=len(sellers) - len(allowed))
        return allowed

    async def _watermarks(
        self, seller: Seller, report_types: Iterable[ReportType]
    ) -> Dict[ReportType, Optional[date]]:
        return {rt: await self.store.get_watermark(seller.id, rt) for rt in report_types}

    async def _plan_for(self, seller: Seller) -> PullPlan:
        today = self.period_calculator.today(seller.timezone or self.config.timezone)
        report_types = self.config.enabled_report_types
        return build_pull_plan(
            calculator=self.period_calculator,
            report_types=report_types,
            watermarks=await self._watermarks(seller, report_types),
            asins=await self.store.list_seller_asins(seller.id),
            today=today,
            now=self._now(),
            stale_after=timedelta(hours=self.config.asin_stale_after_hours),
            max_asins=self.config.max_asins_per_request,
        )

    async def _initial_plan_for(self, seller: Seller, report_types: List[ReportType]) -> PullPlan:
        return build_initial_pull_plan(
            calculator=self.period_calculator,
            report_types=report_types,
            watermarks=await self._watermarks(seller, report_types),
            asins=await self.store.list_seller_asins(seller.id),
            today=self.period_calculator.today(seller.timezone or self.config.timezone),
            depths={rt: self.config.initial_pull_depth(rt) for rt in report_types},
            max_asins=self.config.max_asins_per_request,
        )

    async def _imported_ranges(self, seller_id: int) -> Set[Tuple[str, ReportType, DateRange]]:
        """(batch, type, range) keys already Completed for the seller."""
        return {
            (unit.asin_list, rt, state.date_range)
            for unit in await self.store.list_work_units(seller_id=seller_id)
            for rt, state in unit.types.items()
            if state.pull_status is PullStatus.COMPLETED
        }

    async def _process_seller(self, seller: Seller, plan: PullPlan, summary: RunSummary) -> bool:
        """Create and drive the work units of a plan. Returns False when none was created."""
        run_id = uuid.uuid4().hex
        chunks = split_asins_into_chunks(plan.asins, self.config.asin_chunk_chars)
        slots = plan.range_slots()
        imported = await self._imported_ranges(seller.id) if plan.history else set()
        self.logger.log("seller_start", seller=seller.amazon_seller_id, run_id=run_id,
                        chunks=len(chunks), asins=len(plan.asins), slots=len(slots),
                        ranges={rt.value: str(r) for rt, r in plan.ranges.items()})

        for chunk in chunks:
            for ranges in slots:
                try:
                    unit_id = await self._process_chunk(seller, chunk, ranges, run_id, imported)
                except Exception as e:
                    self.logger.error("chunk_failed", seller=seller.amazon_seller_id,
                                      run_id=run_id, error=str(e))
                    continue
                if unit_id is not None:
                    unit = await self._load(unit_id)
                    summary.work_units[unit_id] = unit.cron_running_status

        if not summary.work_units:
            return False
        if plan.history:
            summary.watermark_advanced = await self._complete_initial_pull(seller, plan, chunks)
        else:
            summary.watermark_advanced = await self._advance_watermark_if_complete(run_id)
        return True

    async def _process_chunk(
        self,
        seller: Seller,
        chunk: AsinChunk,
        ranges: Dict[ReportType, DateRange],
        run_id: str,
        imported: Collection[Tuple[str, ReportType, DateRange]] = (),
    ) -> Optional[int]:
        claimed: Dict[ReportType, DateRange] = {}
        for report_type, date_range in ranges.items():
            if (chunk.asin_string, report_type, date_range) in imported:
                self.logger.log("request_skipped", reason="range already imported",
                                report_type=report_type.value, date_range=str(date_range))
                continue
            existing = await self.store.find_active_work_unit(
                seller.id, chunk.asin_string, report_type, date_range
            )
            if existing is not None:
                self.logger.log("request_skipped", reason="active task exists",
                                work_unit_id=existing.id, report_type=report_type.value,
                                date_range=str(date_range))
                continue
            claimed[report_type] = date_range
        if not claimed:
            return None

        # Types start in REQUESTING so find_active_work_unit sees the claim at once
        now = self._now()
        unit = await self.store.create_work_unit(WorkUnit(
            seller_id=seller.id,
            amazon_seller_id=seller.amazon_seller_id,
            marketplace_id=seller.marketplace_id,
            asin_list=chunk.asin_string,
            user_id=seller.user_id,
            run_id=run_id,
            types={
                rt: ReportTypeState(date_range=r, phase_status=PhaseStatus.REQUESTING, started_at=now)
                for rt, r in claimed.items()
            },
        ))

        requested: List[ReportType] = []
        for report_type in unit.report_types:
            try:
                if await self._request_phase(unit.id, report_type):
                    requested.append(report_type)
            except Exception as e:
                await self._contain_failure(unit.id, report_type, e)

        if requested:
            await self.delay_service.wait(
                self.config.initial_delay_seconds, "initial delay before status check",
                work_unit_id=unit.id,
            )
        for report_type in requested:
            try:
                await self._status_phase(unit.id, report_type)
            except Exception as e:
                await self._contain_failure(unit.id, report_type, e)

        await self._finalize(unit.id)
        return unit.id

    # Phases

    async def _request_phase(self, work_unit_id: int, report_type: ReportType) -> bool:
        """Phase 1. Returns True when a report id is on record for the type."""
        unit = await self._load(work_unit_id)
        state = unit.state(report_type)

        if await self.store.get_latest_report_id(work_unit_id, report_type, state.date_range):
            self.logger.log("request_skipped", reason="report already requested",
                            work_unit_id=work_unit_id, report_type=report_type.value)
            return state.pull_status not in TERMINAL_PULL_STATUSES

        now = self._now()
        unit = await self._update_type(work_unit_id, report_type,
                                       phase_status=PhaseStatus.REQUESTING, started_at=now)
        await self.store.update_asin_status(
            unit.seller_id, unit.asins, report_type, AsinPullStatus.IN_PROGRESS, started_at=now
        )

        seller = unit.amazon_seller_id
        context = RetryContext(work_unit_id, seller, report_type, ACTION_REQUEST, state.date_range)

        async def operation(attempt: RetryAttempt) -> PhaseResult:
            if not unit.marketplace_id:
                raise FatalReportError("Missing marketplace id for seller")
            payload = build_report_payload(unit.marketplace_id, unit.asin_list, report_type, state.date_range)
            report_id = await self._call_api(
                "create_report", seller,
                lambda auth: self.api_client.create_report(seller, payload, auth),
            )
            return PhaseResult(
                message=f"Report requested for range {state.date_range}",
                report_id=report_id,
            )

        async def on_exhausted(result: RetryResult) -> None:
            await self._fail_type(work_unit_id, report_type, result.reason or "request failed",
                                  result.retry_count, is_fatal=result.fatal)

        result = await self.retry_handler.execute_with_retry(
            operation, context,
            max_attempts=self.config.retry_max_attempts,
            on_exhausted=on_exhausted,
        )
        if not result.success:
            return False

        await self.delay_service.wait(self.config.request_delay_seconds, "request pacing",
                                      work_unit_id=work_unit_id, report_type=report_type.value)
        return True

    async def _status_phase(
        self, work_unit_id: int, report_type: ReportType, max_attempts: Optional[int] = None
    ) -> None:
        """Phase 2. Polls until DONE, then hands over to Download."""
        unit = await self._update_type(work_unit_id, report_type,
                                       phase_status=PhaseStatus.CHECKING_STATUS)
        state = unit.state(report_type)
        seller = unit.amazon_seller_id
        context = RetryContext(work_unit_id, seller, report_type, ACTION_STATUS, state.date_range)

        async def operation(attempt: RetryAttempt) -> PhaseResult:
            report_id = await self.store.get_latest_report_id(work_unit_id, report_type, state.date_range)
            if not report_id:
                raise SkipPhase("Skipping status check: report id not found in logs yet")
            context.report_id = report_id

            response = await self._call_api(
                "get_report_status", seller,
                lambda auth: self.api_client.get_report_status(seller, report_id, auth),
            )
            status = response.processing_status
            self.logger.report_status(work_unit_id, report_type.value, report_id, status, attempt.attempt)

            if status == STATUS_DONE:
                if not response.report_document_id:
                    raise ReportsApiError("Report is DONE but has no document id", retryable=True)
                return PhaseResult(
                    message=f"Report ready, document {response.report_document_id}",
                    report_id=report_id,
                    document_id=response.report_document_id,
                )
            if status in IN_PROGRESS_STATUSES:
                if not attempt.is_last:
                    await self.delay_service.backoff(
                        attempt.attempt,
                        reason=f"report {status} on attempt {attempt.attempt}",
                        work_unit_id=work_unit_id,
                        report_type=report_type.value,
                    )
                raise ReportNotReadyError(status, backoff_applied=True)
            raise FatalReportError(f"Report {report_id} ended with status {status or 'UNKNOWN'}",
                                   status=status)

        async def on_exhausted(result: RetryResult) -> None:
            report_id = await self.store.get_latest_report_id(work_unit_id, report_type, state.date_range)
            if result.fatal:
                await self._fail_type(work_unit_id, report_type, result.reason or "fatal status",
                                      result.retry_count, report_id=report_id, is_fatal=True)
            else:
                await self._mark_needs_retry(work_unit_id, report_type,
                                             result.reason or "status check exhausted", report_id)

        result = await self.retry_handler.execute_with_retry(
            operation, context,
            max_attempts=max_attempts or self.config.retry_max_attempts,
            on_exhausted=on_exhausted,
        )
        if not result.success:
            return

        ready: PhaseResult = result.data
        await self._prepare_download(work_unit_id, report_type, ready.report_id, ready.document_id)
        await self._update_type(work_unit_id, report_type, phase_status=PhaseStatus.DOWNLOADING)
        await self._download_phase(work_unit_id, report_type, ready.report_id)

    async def _prepare_download(
        self, work_unit_id: int, report_type: ReportType, report_id: str, document_id: Optional[str]
    ) -> DownloadRecord:
        """Reuse a live download record for the report, or start a new PENDING one."""
        record = await self.store.get_download_record(work_unit_id, report_type, report_id)
        if record is not None and record.status is not DownloadStatus.FAILED:
            if document_id and record.document_id != document_id and not record.is_terminal:
                record.document_id = document_id
                record = await self.store.save_download_record(record)
            return record

        unit = await self._load(work_unit_id)
        return await self.store.save_download_record(DownloadRecord(
            work_unit_id=work_unit_id,
            report_type=report_type,
            report_id=report_id,
            document_id=document_id,
            date_range=unit.state(report_type).date_range,
            max_attempts=self.config.max_download_attempts,
        ))

    async def _download_phase(self, work_unit_id: int, report_type: ReportType, report_id: str) -> None:
        """Phase 3. Downloads the document, saves the artifact and triggers import."""
        unit = await self._load(work_unit_id)
        state = unit.state(report_type)
        seller = unit.amazon_seller_id

        record = await self.store.get_download_record(work_unit_id, report_type, report_id)
        if record is None:
            raise NotFoundError(f"No download record for report {report_id}")
        if record.status is DownloadStatus.COMPLETED:
            await self._import_phase(work_unit_id, report_type, report_id)
            return

        document_id = record.document_id or await self.store.get_latest_document_id(
            work_unit_id, report_type, report_id
        )
        context = RetryContext(work_unit_id, seller, report_type, ACTION_DOWNLOAD,
                               state.date_range, report_id=report_id)

        async def operation(attempt: RetryAttempt) -> PhaseResult:
            current = await self.store.get_download_record(work_unit_id, report_type, report_id)
            current.begin_attempt()
            current.document_id = document_id
            await self.store.save_download_record(current)
            if not document_id:
                raise NotFoundError(f"No document id recorded for report {report_id}")

            rows = await self._call_api(
                "download_report_document", seller,
                lambda auth: self.api_client.download_report_document(seller, document_id, auth),
            )
            return PhaseResult(
                message=f"Downloaded {len(rows)} rows" if rows else "No data in report",
                data=rows,
                report_id=report_id,
                document_id=document_id,
            )

        async def on_exhausted(result: RetryResult) -> None:
            current = await self.store.get_download_record(work_unit_id, report_type, report_id)
            if current is not None and not current.is_terminal:
                if current.status is DownloadStatus.PENDING:
                    current.begin_attempt()
                current.fail(result.reason or "download failed")
                await self.store.save_download_record(current)
            if isinstance(result.error, FatalReportError):
                await self._fail_type(work_unit_id, report_type, result.reason or "download failed",
                                      result.retry_count, report_id=report_id, is_fatal=True)
            else:
                await self._mark_needs_retry(work_unit_id, report_type,
                                             result.reason or "download exhausted", report_id)

        result = await self.retry_handler.execute_with_retry(
            operation, context,
            max_attempts=self.config.retry_max_attempts,
            on_exhausted=on_exhausted,
        )
        if not result.success:
            return

        rows: List[Dict[str, Any]] = result.data.data or []
        record = await self.store.get_download_record(work_unit_id, report_type, report_id)
        if rows:
            saved = self.artifact_writer.save(seller, record, rows)
            record.complete(saved.path, saved.size, self._now())
        else:
            record.complete(None, 0, self._now())
        record = await self.store.save_download_record(record)
        self.logger.download_complete(work_unit_id, report_type.value, len(rows), record.file_path)

        await self._import_phase(work_unit_id, report_type, report_id)

    async def _import_phase(self, work_unit_id: int, report_type: ReportType, report_id: str) -> None:
        """Import a COMPLETED download. Failures leave the download COMPLETED."""
        unit = await self._update_type(work_unit_id, report_type, phase_status=PhaseStatus.IMPORTING)
        record = await self.store.get_download_record(work_unit_id, report_type, report_id)
        has_data = record.file_path is not None

        try:
            outcome = await self.importer.import_downloaded_artifact(record, has_data=has_data)
        except Exception as e:
            outcome = ImportResult(errors=[str(e)])

        if outcome.ok:
            record.imported = True
            record.import_error = None
            await self.store.save_download_record(record)
            now = self._now()
            await self._update_type(work_unit_id, report_type,
                                    pull_status=PullStatus.COMPLETED, ended_at=now)
            await self.store.update_asin_status(
                unit.seller_id, unit.asins, report_type, AsinPullStatus.COMPLETED, ended_at=now
            )
            message = f"Imported {outcome.imported_rows} rows" if has_data else "No data in report"
            await self._log_activity(unit, report_type, ACTION_IMPORT, ActivityStatus.SUCCEEDED,
                                     message, report_id=report_id)
            return

        error = "; ".join(outcome.errors)
        record.import_error = error
        await self.store.save_download_record(record)
        await self._update_type(work_unit_id, report_type, pull_status=PullStatus.NEEDS_RETRY)
        await self.store.update_asin_status(
            unit.seller_id, unit.asins, report_type, AsinPullStatus.FAILED, ended_at=self._now()
        )
        await self._log_activity(unit, report_type, ACTION_IMPORT, ActivityStatus.FAILED,
                                 f"Import failed: {error}", report_id=report_id)
        self.logger.import_failed(work_unit_id, report_type.value, report_id, error)

    async def _pending_import(self, unit: WorkUnit, report_type: ReportType) -> Optional[DownloadRecord]:
        """Downloaded-but-not-imported record for the type, if any."""
        state = unit.state(report_type)
        if state.phase_status is not PhaseStatus.IMPORTING:
            return None
        report_id = await self.store.get_latest_report_id(unit.id, report_type, state.date_range)
        if not report_id:
            return None
        record = await self.store.get_download_record(unit.id, report_type, report_id)
        if record is not None and record.status is DownloadStatus.COMPLETED and not record.imported:
            return record
        return None

    # Finalization

    async def _finalize(self, work_unit_id: int) -> CronRunningStatus:
        unit = await self._load(work_unit_id)
        status = compute_cron_running_status(s.pull_status for s in unit.types.values())
        unit.cron_running_status = status
        await self.store.save_work_unit(unit)
        self.logger.log("work_unit_finalized", work_unit_id=work_unit_id, status=status.name,
                        types={rt.value: s.pull_status.name for rt, s in unit.types.items()})
        return status

    async def _advance_watermark_if_complete(self, run_id: str) -> bool:
        """Advance the seller watermark once every unit of the run is Completed."""
        if not run_id:
            return False
        units = await self.store.list_work_units(run_id=run_id)
        if not units or any(u.cron_running_status is not CronRunningStatus.COMPLETED for u in units):
            return False

        ends: Dict[ReportType, date] = {}
        for unit in units:
            for report_type, state in unit.types.items():
                if state.date_range and (report_type not in ends or state.date_range.end > ends[report_type]):
                    ends[report_type] = state.date_range.end

        seller_id = units[0].seller_id
        for report_type, end in ends.items():
            current = await self.store.get_watermark(seller_id, report_type)
            if current is None or end > current:
                await self.store.set_watermark(seller_id, report_type, end)
        self.logger.log("watermark_advanced", seller_id=seller_id,
                        watermarks={rt.value: end.isoformat() for rt, end in ends.items()})
        return True

    async def _complete_initial_pull(self, seller: Seller, plan: PullPlan, chunks: List[AsinChunk]) -> bool:
        """Set the watermark to the latest window once every backfilled window is imported."""
        imported = await self._imported_ranges(seller.id)
        missing = [
            (chunk.asin_string, rt, r)
            for chunk in chunks
            for rt, ranges in plan.history.items()
            for r in ranges
            if (chunk.asin_string, rt, r) not in imported
        ]
        if missing:
            self.logger.log("initial_pull_incomplete", seller=seller.amazon_seller_id,
                            missing=len(missing))
            return False

        for report_type, ranges in plan.history.items():
            await self.store.set_watermark(seller.id, report_type, ranges[-1].end)
        self.logger.log("watermark_advanced", seller_id=seller.id, initial_pull=True,
                        watermarks={rt.value: r[-1].end.isoformat() for rt, r in plan.history.items()})
        return True

    # Outcomes

    async def _fail_type(
        self,
        work_unit_id: int,
        report_type: ReportType,
        message: str,
        retry_count: int,
        report_id: Optional[str] = None,
        is_fatal: bool = False,
    ) -> None:
        """Mark the type Failed, its ASINs Failed, and notify.

        Fatal failures are reported with a retry count of zero.
        """
        now = self._now()
        unit = await self._update_type(work_unit_id, report_type,
                                       pull_status=PullStatus.FAILED, ended_at=now)
        await self.store.update_asin_status(
            unit.seller_id, unit.asins, report_type, AsinPullStatus.FAILED, ended_at=now
        )
        await self._log_activity(
            unit, report_type, "Fatal Error" if is_fatal else "Retry Failed",
            ActivityStatus.FAILED, message, report_id=report_id, retry_count=retry_count,
        )
        if self.notifier:
            await self.notifier.send_failure_notification(
                work_unit_id, unit.amazon_seller_id, report_type, message,
                0 if is_fatal else retry_count, report_id=report_id, is_fatal=is_fatal,
            )

    async def _mark_needs_retry(
        self, work_unit_id: int, report_type: ReportType, message: str, report_id: Optional[str]
    ) -> None:
        now = self._now()
        unit = await self._update_type(work_unit_id, report_type, pull_status=PullStatus.NEEDS_RETRY)
        await self.store.update_asin_status(
            unit.seller_id, unit.asins, report_type, AsinPullStatus.FAILED, ended_at=now
        )
        await self._log_activity(unit, report_type, "Needs Retry", ActivityStatus.FAILED,
                                 message, report_id=report_id)

    async def _contain_failure(self, work_unit_id: int, report_type: ReportType, error: Exception) -> None:
        """Log an unexpected phase error without letting it reach other types."""
        self.logger.error("phase_error", work_unit_id=work_unit_id,
                          report_type=report_type.value, error=str(error),
                          error_type=type(error).__name__)
        try:
            unit = await self._load(work_unit_id)
            if unit.state(report_type).pull_status not in TERMINAL_PULL_STATUSES:
                await self._update_type(work_unit_id, report_type, pull_status=PullStatus.NEEDS_RETRY)
        except Exception as e:
            self.logger.error("phase_error_unrecorded", work_unit_id=work_unit_id,
                              report_type=report_type.value, error=str(e))

    # Helpers

    async def _call_api(
        self,
        operation: str,
        seller_id: str,
        call: Callable[[AuthOverrides], Awaitable[T]],
    ) -> T:
        """
        Call the reporting API under the rate limiter and circuit breaker.

        A 401/403 forces one credential refresh and a single retry; a second
        auth failure is fatal.
        """
        await self.rate_limiter.check_limit(seller_id)
        auth = await self.token_provider.build_auth_overrides(seller_id)
        try:
            return await self.circuit_breaker.call(operation, seller_id, lambda: call(auth))
        except AuthError as e:
            self.logger.warning("auth_refresh", operation=operation, seller=seller_id,
                                status=e.status_code)

        refreshed = await self.token_provider.build_auth_overrides(seller_id, force_refresh=True)
        await self.rate_limiter.check_limit(seller_id)
        try:
            return await self.circuit_breaker.call(operation, seller_id, lambda: call(refreshed))
        except AuthError as e:
            raise FatalReportError(
                f"{operation} unauthorized after credential refresh ({e.status_code})"
            ) from e

    async def _load(self, work_unit_id: int) -> WorkUnit:
        unit = await self.store.get_work_unit(work_unit_id)
        if unit is None:
            raise NotFoundError(f"Work unit {work_unit_id} not found")
        return unit

    @staticmethod
    def _type_state(unit: WorkUnit, report_type: ReportType) -> ReportTypeState:
        if report_type not in unit.types:
            raise NotFoundError(f"Work unit {unit.id} has no {report_type.value} report")
        return unit.types[report_type]

    async def _update_type(self, work_unit_id: int, report_type: ReportType, **changes: Any) -> WorkUnit:
        """Re-read the unit, apply per-type changes and save it back."""
        unit = await self._load(work_unit_id)
        state = self._type_state(unit, report_type)
        for name, value in changes.items():
            setattr(state, name, value)
        return await self.store.save_work_unit(unit)

    async def _log_activity(
        self,
        unit: WorkUnit,
        report_type: ReportType,
        action: str,
        status: ActivityStatus,
        message: str,
        report_id: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        state = unit.types.get(report_type)
        await self.store.log_activity(ActivityLogEntry(
            work_unit_id=unit.id,
            amazon_seller_id=unit.amazon_seller_id,
            report_type=report_type,
            action=action,
            status=status,
            message=message,
            report_id=report_id,
            retry_count=retry_count if retry_count is not None else (state.retry_count if state else 0),
            date_range=state.date_range if state else None,
        ))
