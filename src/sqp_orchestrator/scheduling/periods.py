"""Reporting window calculations for WEEK, MONTH and QUARTER reports.

Weeks run Sunday through Saturday. All computations take a local ``today``
so callers decide the timezone once (see PeriodCalculator.today).
"""

import calendar
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqp_orchestrator.models.data_models import DateRange, ReportType, utc_now

# Windows backfilled for a seller that was never pulled
INITIAL_PULL_DEPTHS: Dict[ReportType, int] = {
    ReportType.WEEK: 52,
    ReportType.MONTH: 12,
    ReportType.QUARTER: 4,
}


def sunday_weekday(day: date) -> int:
    """Day of week with Sunday=0 ... Saturday=6."""
    return (day.weekday() + 1) % 7


def start_of_week(day: date) -> date:
    return day - timedelta(days=sunday_weekday(day))


def month_range(year: int, month: int) -> DateRange:
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(date(year, month, 1), date(year, month, last_day))


def quarter_of(day: date) -> int:
    return (day.month - 1) // 3 + 1


def quarter_range(year: int, quarter: int) -> DateRange:
    first_month = (quarter - 1) * 3 + 1
    return DateRange(
        date(year, first_month, 1),
        month_range(year, first_month + 2).end,
    )


def day_of_quarter(day: date) -> int:
    """1-based day index within the calendar quarter."""
    start = quarter_range(day.year, quarter_of(day)).start
    return (day - start).days + 1


def window_containing(report_type: ReportType, day: date) -> DateRange:
    """The (possibly still open) window of report_type that contains day."""
    if report_type is ReportType.WEEK:
        start = start_of_week(day)
        return DateRange(start, start + timedelta(days=6))
    if report_type is ReportType.MONTH:
        return month_range(day.year, day.month)
    return quarter_range(day.year, quarter_of(day))


def previous_window(report_type: ReportType, window: DateRange) -> DateRange:
    return window_containing(report_type, window.start - timedelta(days=1))


def next_window(report_type: ReportType, window: DateRange) -> DateRange:
    return window_containing(report_type, window.end + timedelta(days=1))


class PeriodCalculator:
    """
    Computes closed reporting windows, availability delays and pending ranges.

    Thresholds:
    - week_unlock_weekday: WEEK reports unlock on this Sunday-based weekday (2 = Tuesday)
    - month_unlock_day: MONTH reports unlock on this day of the month
    - quarter_unlock_day: QUARTER reports unlock on this day of the quarter
    - month_rollback_days: on days 1..N of a month the previous month is
      treated as unpublished and the latest closed MONTH rolls back one more;
      QUARTER applies the same rule in a quarter's first month only
    """

    def __init__(
        self,
        week_unlock_weekday: int = 2,
        month_unlock_day: int = 3,
        quarter_unlock_day: int = 5,
        month_rollback_days: int = 2,
        default_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.week_unlock_weekday = week_unlock_weekday
        self.month_unlock_day = month_unlock_day
        self.quarter_unlock_day = quarter_unlock_day
        self.month_rollback_days = month_rollback_days
        self.default_timezone = default_timezone
        self._clock = clock

    def today(self, timezone: Optional[str] = None) -> date:
        """Local calendar date in the given (or default) IANA timezone."""
        tz = ZoneInfo(timezone or self.default_timezone)
        return self._clock().astimezone(tz).date()

    def latest_closed_range(self, report_type: ReportType, today: date) -> DateRange:
        """Most recent window of report_type that is closed and published as of today."""
        window = previous_window(report_type, window_containing(report_type, today))

        if report_type is ReportType.MONTH and today.day <= self.month_rollback_days:
            window = previous_window(report_type, window)
        elif (
            report_type is ReportType.QUARTER
            and today.month % 3 == 1
            and today.day <= self.month_rollback_days
        ):
            window = previous_window(report_type, window)
        return window

    def is_delayed(self, report_type: ReportType, today: date) -> bool:
        """True when report_type must not be requested yet.

        A type is delayed strictly before its unlock threshold; on the
        threshold day itself it is available.
        """
        if report_type is ReportType.WEEK:
            return sunday_weekday(today) < self.week_unlock_weekday
        if report_type is ReportType.MONTH:
            return today.day < self.month_unlock_day
        return day_of_quarter(today) < self.quarter_unlock_day

    def pending_ranges(
        self,
        report_type: ReportType,
        last_pull: Optional[date],
        today: date,
        limit: Optional[int] = None,
    ) -> List[DateRange]:
        """
        Closed windows not yet covered since last_pull, oldest first.

        Args:
            report_type: Window size to enumerate
            last_pull: End date of the last successfully pulled window; None
                means the seller was never pulled and only the latest closed
                window is returned
            today: Local date of the seller
            limit: Keep at most this many of the most recent windows; None
                returns every window back to last_pull

        Returns:
            Contiguous, non-overlapping windows with last_pull < end
        """
        latest = self.latest_closed_range(report_type, today)
        if last_pull is None:
            return [latest]
        if last_pull >= today:
            return []

        ranges: List[DateRange] = []
        window = latest
        while window.end > last_pull and (limit is None or len(ranges) < limit):
            ranges.append(window)
            window = previous_window(report_type, window)
        ranges.reverse()
        return ranges

    def historical_ranges(
        self,
        report_type: ReportType,
        today: date,
        count: Optional[int] = None,
    ) -> List[DateRange]:
        """The last `count` closed windows, oldest first, ending at the latest closed one."""
        count = count or INITIAL_PULL_DEPTHS[report_type]
        ranges = [self.latest_closed_range(report_type, today)]
        while len(ranges) < count:
            ranges.append(previous_window(report_type, ranges[-1]))
        ranges.reverse()
        return ranges
