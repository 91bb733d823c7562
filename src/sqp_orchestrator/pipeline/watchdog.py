"""Stuck-job watchdog: finds idle in-flight report types and re-drives them."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqp_orchestrator.models.data_models import (
    ACTIVE_PHASES,
    PullStatus,
    RecoveryResult,
    ReportType,
    utc_now,
)
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.pipeline.orchestrator import ReportLifecycleOrchestrator
from sqp_orchestrator.storage.base import ReportStore

RECOVERABLE_PULL_STATUSES = (PullStatus.PENDING, PullStatus.NEEDS_RETRY)


@dataclass
class StuckTask:
    work_unit_id: int
    report_type: ReportType
    phase: str
    idle_seconds: float


@dataclass
class WatchdogReport:
    """Outcome of one watchdog pass."""
    stuck: List[StuckTask] = field(default_factory=list)
    recovered: List[RecoveryResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class StuckJobWatchdog:
    """
    Periodic scan for (WorkUnit, type) pairs sitting in an active phase past
    the stuck threshold. Each one is handed to
    ``ReportLifecycleOrchestrator.retry_stuck_unit``.
    """

    def __init__(
        self,
        store: ReportStore,
        orchestrator: ReportLifecycleOrchestrator,
        threshold_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize watchdog.

        Args:
            store: Store queried for stuck units
            orchestrator: Orchestrator that re-drives each stuck type
            threshold_seconds: Idle time after which a type counts as stuck
            clock: UTC clock
            logger: Optional structured logger
        """
        if threshold_seconds <= 0:
            raise ValueError(f"threshold_seconds must be positive, got: {threshold_seconds}")
        self.store = store
        self.orchestrator = orchestrator
        self.threshold = timedelta(seconds=threshold_seconds)
        self._now = clock
        self.logger = logger or orchestrator.logger

    async def scan(self) -> List[StuckTask]:
        """Return stuck (WorkUnit, type) pairs without touching them."""
        now = self._now()
        stuck = []
        for unit in await self.store.find_stuck_work_units(now - self.threshold):
            idle = (now - unit.updated_at).total_seconds() if unit.updated_at else 0.0
            for report_type, state in unit.types.items():
                if state.phase_status in ACTIVE_PHASES and state.pull_status in RECOVERABLE_PULL_STATUSES:
                    task = StuckTask(unit.id, report_type, state.phase_status.name, idle)
                    self.logger.stuck_unit(unit.id, report_type.value, task.phase, idle)
                    stuck.append(task)
        return stuck

    async def run_once(self) -> WatchdogReport:
        """Scan and re-drive every stuck type; one failure never stops the pass."""
        report = WatchdogReport(stuck=await self.scan())
        for task in report.stuck:
            try:
                result = await self.orchestrator.retry_stuck_unit(task.work_unit_id, task.report_type)
            except Exception as e:
                self.logger.error("stuck_retry_failed", work_unit_id=task.work_unit_id,
                                  report_type=task.report_type.value, error=str(e))
                report.errors.append(f"{task.work_unit_id}/{task.report_type.value}: {e}")
                continue
            report.recovered.append(result)
        self.logger.log("watchdog_complete", stuck=len(report.stuck),
                        recovered=len(report.recovered), errors=len(report.errors))
        return report
