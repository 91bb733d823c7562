"""Select which ASINs and report types a seller should pull this run."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqp_orchestrator.models.data_models import (
    AsinPullStatus,
    DateRange,
    ReportType,
    SellerAsin,
)
from sqp_orchestrator.scheduling.periods import PeriodCalculator


@dataclass
class PullPlan:
    """What one seller run will request."""
    ranges: Dict[ReportType, DateRange] = field(default_factory=dict)
    asins: List[str] = field(default_factory=list)
    skipped: Dict[ReportType, str] = field(default_factory=dict)
    # Initial pull only: every window to backfill per type, oldest first
    history: Dict[ReportType, List[DateRange]] = field(default_factory=dict)

    @property
    def report_types(self) -> List[ReportType]:
        return list(self.ranges)

    @property
    def is_empty(self) -> bool:
        return not self.ranges or not self.asins

    def range_slots(self) -> List[Dict[ReportType, DateRange]]:
        """Range sets to request, one WorkUnit per slot and ASIN chunk.

        A regular plan has a single slot. An initial pull pairs the i-th
        oldest window of every type, so slot count is the deepest history.
        """
        if not self.history:
            return [dict(self.ranges)] if self.ranges else []
        depth = max(len(ranges) for ranges in self.history.values())
        return [
            {rt: ranges[i] for rt, ranges in self.history.items() if i < len(ranges)}
            for i in range(depth)
        ]


def is_asin_eligible(
    asin: SellerAsin,
    report_type: ReportType,
    now: datetime,
    stale_after: timedelta,
) -> bool:
    """An ASIN is eligible unless a pull for the type is in progress and still fresh."""
    if not asin.is_active:
        return False
    if asin.statuses.get(report_type) is not AsinPullStatus.IN_PROGRESS:
        return True
    started = asin.last_pull_started.get(report_type)
    return started is None or started <= now - stale_after


def build_pull_plan(
    calculator: PeriodCalculator,
    report_types: Sequence[ReportType],
    watermarks: Dict[ReportType, Optional[date]],
    asins: Sequence[SellerAsin],
    today: date,
    now: datetime,
    stale_after: timedelta,
    max_asins: int,
) -> PullPlan:
    """
    Pick the oldest pending range per type and the ASINs eligible for them.

    Types are skipped while delayed or when nothing is pending. ASINs are
    kept when eligible for at least one selected type, capped at max_asins.

    Args:
        calculator: Period calculator with the configured thresholds
        report_types: Types enabled for the run
        watermarks: Last fully pulled window end per type
        asins: Seller ASINs with pull bookkeeping
        today: Seller-local date
        now: Current UTC time (for stale in-progress detection)
        stale_after: Age after which an in-progress ASIN is eligible again
        max_asins: Cap on ASINs per run

    Returns:
        PullPlan, empty when nothing should be requested
    """
    plan = PullPlan()
    for report_type in report_types:
        if calculator.is_delayed(report_type, today):
            plan.skipped[report_type] = "delayed"
            continue
        pending = calculator.pending_ranges(report_type, watermarks.get(report_type), today)
        if not pending:
            plan.skipped[report_type] = "no pending range"
            continue
        plan.ranges[report_type] = pending[0]

    for asin in asins:
        if len(plan.asins) >= max_asins:
            break
        if any(is_asin_eligible(asin, rt, now, stale_after) for rt in plan.ranges):
            plan.asins.append(asin.asin)
    return plan


def build_initial_pull_plan(
    calculator: PeriodCalculator,
    report_types: Sequence[ReportType],
    watermarks: Dict[ReportType, Optional[date]],
    asins: Sequence[SellerAsin],
    today: date,
    depths: Dict[ReportType, int],
    max_asins: int,
) -> PullPlan:
    """
    Backfill plan for the types a seller has never pulled.

    Types with a watermark are already past their initial pull. Delayed
    types are skipped like in a regular run. Every active ASIN is kept,
    capped at max_asins.
    """
    plan = PullPlan()
    for report_type in report_types:
        if watermarks.get(report_type) is not None:
            plan.skipped[report_type] = "already pulled"
            continue
        if calculator.is_delayed(report_type, today):
            plan.skipped[report_type] = "delayed"
            continue
        history = calculator.historical_ranges(report_type, today, depths[report_type])
        plan.history[report_type] = history
        plan.ranges[report_type] = history[-1]

    plan.asins = [a.asin for a in asins if a.is_active][:max_asins]
    return plan
