"""Core data models for the SQP report orchestrator."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from sqp_orchestrator.models.errors import DownloadAttemptsExhausted, InvalidTransitionError


def utc_now() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


class ReportType(Enum):
    """Report period types supported by the SQP report."""
    WEEK = "WEEK"
    MONTH = "MONTH"
    QUARTER = "QUARTER"

    @property
    def field_prefix(self) -> str:
        """Prefix used for per-type persisted columns (e.g. ``weekly_pull_status``)."""
        return REPORT_FIELD_PREFIX[self]

    @property
    def label(self) -> str:
        return REPORT_FIELD_PREFIX[self].capitalize()

    @classmethod
    def parse(cls, value: Any) -> "ReportType":
        """Resolve a report type from its name or its field prefix.

        Raises:
            ValueError: If the value matches no report type
        """
        if isinstance(value, ReportType):
            return value
        text = str(value).strip()
        for report_type, prefix in REPORT_FIELD_PREFIX.items():
            if text.upper() == report_type.value or text.lower() == prefix:
                return report_type
        raise ValueError(f"Unknown report type: {value!r}")


REPORT_FIELD_PREFIX: Dict[ReportType, str] = {
    ReportType.WEEK: "weekly",
    ReportType.MONTH: "monthly",
    ReportType.QUARTER: "quarterly",
}


class PullStatus(IntEnum):
    """Coarse per-type status persisted on the WorkUnit."""
    PENDING = 0
    COMPLETED = 1
    NEEDS_RETRY = 2
    FAILED = 3


class PhaseStatus(IntEnum):
    """In-flight phase marker persisted on the WorkUnit."""
    NOT_STARTED = 0
    REQUESTING = 1
    CHECKING_STATUS = 2
    DOWNLOADING = 3
    IMPORTING = 4


ACTIVE_PHASES: FrozenSet[PhaseStatus] = frozenset({
    PhaseStatus.REQUESTING,
    PhaseStatus.CHECKING_STATUS,
    PhaseStatus.DOWNLOADING,
    PhaseStatus.IMPORTING,
})

TERMINAL_PULL_STATUSES: FrozenSet[PullStatus] = frozenset({
    PullStatus.COMPLETED,
    PullStatus.FAILED,
})


class CronRunningStatus(IntEnum):
    """Aggregate status of a WorkUnit across its report types."""
    RUNNING = 1
    COMPLETED = 2
    NEEDS_RETRY = 3
    RETRY_RUNNING = 4
    COMPLETED_WITH_FATAL = 5


class AsinPullStatus(IntEnum):
    """Per-ASIN, per-type pull status."""
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3


class DownloadStatus(Enum):
    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ActivityStatus(IntEnum):
    """Outcome code of an activity log entry."""
    STARTED = 0
    SUCCEEDED = 1
    FAILED = 2
    RETRYING = 3
    SKIPPED = 4


class TaskState(Enum):
    """Fine-grained state of one (WorkUnit, type, range) report task."""
    NOT_REQUESTED = "not_requested"
    REQUESTING = "requesting"
    AWAITING_STATUS = "awaiting_status"
    DOWNLOADING = "downloading"
    IMPORTED = "imported"
    FAILED = "failed"


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# Provider processing statuses
STATUS_DONE = "DONE"
STATUS_FATAL = "FATAL"
STATUS_CANCELLED = "CANCELLED"
IN_PROGRESS_STATUSES: FrozenSet[str] = frozenset({"IN_QUEUE", "IN_PROGRESS", "PROCESSING"})


@dataclass
class HalfOpenToken:
    """Token for tracking the single half-open trial call of a circuit."""
    key: str
    timestamp: float


@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting window."""
    start: date
    end: date

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"

    @classmethod
    def parse(cls, value: str) -> "DateRange":
        """Parse a ``YYYY-MM-DD to YYYY-MM-DD`` string."""
        try:
            start, end = (part.strip() for part in value.split(" to "))
            return cls(date.fromisoformat(start), date.fromisoformat(end))
        except ValueError as e:
            raise ValueError(f"Invalid date range: {value!r}") from e

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass
class Seller:
    """Seller account owned by a user."""
    id: int
    user_id: int
    amazon_seller_id: str
    marketplace_id: str
    name: str = ""
    timezone: Optional[str] = None
    is_active: bool = True


@dataclass
class SellerAsin:
    """An ASIN tracked for a seller with its per-type pull bookkeeping."""
    seller_id: int
    asin: str
    is_active: bool = True
    statuses: Dict[ReportType, AsinPullStatus] = field(default_factory=dict)
    last_pull_started: Dict[ReportType, datetime] = field(default_factory=dict)
    last_pull_ended: Dict[ReportType, datetime] = field(default_factory=dict)


@dataclass
class ReportTypeState:
    """Per-type slice of a WorkUnit."""
    date_range: Optional[DateRange] = None
    pull_status: PullStatus = PullStatus.PENDING
    phase_status: PhaseStatus = PhaseStatus.NOT_STARTED
    retry_count: int = 0
    recovery_attempts: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return (
            self.phase_status in ACTIVE_PHASES
            and self.pull_status not in TERMINAL_PULL_STATUSES
        )


@dataclass
class WorkUnit:
    """One request batch (seller + ASIN chunk) tracked across report types."""
    seller_id: int
    amazon_seller_id: str
    marketplace_id: str
    asin_list: str
    user_id: Optional[int] = None
    run_id: str = ""
    types: Dict[ReportType, ReportTypeState] = field(default_factory=dict)
    cron_running_status: CronRunningStatus = CronRunningStatus.RUNNING
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def asins(self) -> List[str]:
        return self.asin_list.split()

    @property
    def report_types(self) -> List[ReportType]:
        return list(self.types)

    def state(self, report_type: ReportType) -> ReportTypeState:
        """Return the per-type state, raising KeyError when the type was never requested."""
        return self.types[report_type]


@dataclass
class ReportTask:
    """Read-side view of one (WorkUnit, type, range) report task."""
    work_unit_id: int
    report_type: ReportType
    date_range: Optional[DateRange]
    state: TaskState
    pull_status: PullStatus
    phase_status: PhaseStatus
    report_id: Optional[str] = None
    document_id: Optional[str] = None
    download_status: Optional[DownloadStatus] = None
    retry_count: int = 0
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in (
            TaskState.REQUESTING,
            TaskState.AWAITING_STATUS,
            TaskState.DOWNLOADING,
        )


_DOWNLOAD_TRANSITIONS: Dict[DownloadStatus, FrozenSet[DownloadStatus]] = {
    DownloadStatus.PENDING: frozenset({DownloadStatus.DOWNLOADING}),
    DownloadStatus.DOWNLOADING: frozenset({
        DownloadStatus.DOWNLOADING,
        DownloadStatus.COMPLETED,
        DownloadStatus.FAILED,
    }),
    DownloadStatus.COMPLETED: frozenset(),
    DownloadStatus.FAILED: frozenset(),
}


@dataclass
class DownloadRecord:
    """Tracks one report document's download attempts."""
    work_unit_id: int
    report_type: ReportType
    report_id: str
    document_id: Optional[str] = None
    date_range: Optional[DateRange] = None
    status: DownloadStatus = DownloadStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    file_path: Optional[str] = None
    file_size: int = 0
    error: Optional[str] = None
    imported: bool = False
    import_error: Optional[str] = None
    id: Optional[int] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DownloadStatus.COMPLETED, DownloadStatus.FAILED)

    def _transition(self, target: DownloadStatus) -> None:
        if target not in _DOWNLOAD_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Download record cannot move from {self.status.value} to {target.value}",
                details={"report_id": self.report_id},
            )
        self.status = target

    def begin_attempt(self) -> None:
        """Move to DOWNLOADING and count the attempt.

        Raises:
            DownloadAttemptsExhausted: If max_attempts has already been used
            InvalidTransitionError: If the record is already terminal
        """
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Download record is already {self.status.value}",
                details={"report_id": self.report_id},
            )
        if self.attempts >= self.max_attempts:
            raise DownloadAttemptsExhausted(
                f"Download attempts exhausted ({self.attempts}/{self.max_attempts})",
                details={"report_id": self.report_id},
            )
        self._transition(DownloadStatus.DOWNLOADING)
        self.attempts += 1

    def complete(self, file_path: Optional[str], file_size: int, completed_at: datetime) -> None:
        self._transition(DownloadStatus.COMPLETED)
        self.file_path = file_path
        self.file_size = file_size
        self.error = None
        self.completed_at = completed_at

    def fail(self, error: str) -> None:
        self._transition(DownloadStatus.FAILED)
        self.error = error


@dataclass
class ActivityLogEntry:
    """Append-only audit record of one phase attempt."""
    work_unit_id: int
    amazon_seller_id: str
    report_type: ReportType
    action: str
    status: ActivityStatus
    message: str = ""
    report_id: Optional[str] = None
    document_id: Optional[str] = None
    retry_count: int = 0
    execution_time: float = 0.0
    date_range: Optional[DateRange] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class AuthOverrides:
    """Credentials handed to the reporting API client."""
    access_token: str
    seller_id: str
    expires_at: float = 0.0


@dataclass
class ReportStatusResponse:
    processing_status: str
    report_document_id: Optional[str] = None
    report_id: Optional[str] = None


@dataclass
class PhaseResult:
    """Value returned by a successful phase operation."""
    message: str
    data: Any = None
    report_id: Optional[str] = None
    document_id: Optional[str] = None


@dataclass
class RetryAttempt:
    """Passed to the operation on each retry engine attempt."""
    attempt: int
    max_attempts: int
    elapsed: float

    @property
    def is_last(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class RetryResult:
    """Outcome of RetryHandler.execute_with_retry."""
    success: bool
    attempt: int
    retry_count: int = 0
    data: Any = None
    skipped: bool = False
    fatal: bool = False
    final_failure: bool = False
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    execution_time: float = 0.0


@dataclass
class ImportResult:
    imported_rows: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class RecoveryResult:
    """Outcome of re-driving one stuck (WorkUnit, type)."""
    work_unit_id: int
    report_type: ReportType
    pull_status: PullStatus
    cron_running_status: CronRunningStatus
    notified: bool = False
    message: str = ""


@dataclass
class RunSummary:
    """Outcome of one orchestrator run."""
    user_id: Optional[int] = None
    seller_id: Optional[int] = None
    amazon_seller_id: Optional[str] = None
    work_units: Dict[int, CronRunningStatus] = field(default_factory=dict)
    report_types: List[ReportType] = field(default_factory=list)
    watermark_advanced: bool = False
    skipped_reason: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def processed(self) -> bool:
        return self.seller_id is not None and not self.skipped_reason
