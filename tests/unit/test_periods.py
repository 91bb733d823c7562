"""Unit tests for reporting window calculations."""

from datetime import date, datetime, timezone

import pytest

from sqp_orchestrator.models.data_models import DateRange, ReportType
from sqp_orchestrator.scheduling.periods import (
    INITIAL_PULL_DEPTHS,
    PeriodCalculator,
    day_of_quarter,
    next_window,
    previous_window,
    start_of_week,
    sunday_weekday,
    window_containing,
)

WEDNESDAY = date(2026, 10, 28)


@pytest.fixture
def calculator():
    return PeriodCalculator()


class TestCalendarHelpers:

    def test_sunday_based_weekday(self):
        assert sunday_weekday(date(2026, 10, 25)) == 0
        assert sunday_weekday(date(2026, 10, 27)) == 2
        assert sunday_weekday(date(2026, 10, 31)) == 6

    def test_weeks_start_on_sunday(self):
        assert start_of_week(WEDNESDAY) == date(2026, 10, 25)
        assert start_of_week(date(2026, 10, 25)) == date(2026, 10, 25)

    def test_window_containing(self):
        assert window_containing(ReportType.WEEK, WEDNESDAY) == DateRange(date(2026, 10, 25), date(2026, 10, 31))
        assert window_containing(ReportType.MONTH, date(2028, 2, 10)) == DateRange(date(2028, 2, 1), date(2028, 2, 29))
        assert window_containing(ReportType.QUARTER, WEDNESDAY) == DateRange(date(2026, 10, 1), date(2026, 12, 31))

    def test_previous_and_next_windows_are_contiguous(self):
        week = window_containing(ReportType.WEEK, WEDNESDAY)
        quarter = window_containing(ReportType.QUARTER, date(2026, 2, 1))

        assert previous_window(ReportType.WEEK, week).end == date(2026, 10, 24)
        assert next_window(ReportType.WEEK, week).start == date(2026, 11, 1)
        assert previous_window(ReportType.QUARTER, quarter) == DateRange(date(2025, 10, 1), date(2025, 12, 31))

    def test_day_of_quarter(self):
        assert day_of_quarter(date(2026, 10, 1)) == 1
        assert day_of_quarter(date(2026, 11, 1)) == 32


class TestLatestClosedRange:

    def test_week_is_previous_sunday_to_saturday(self, calculator):
        assert calculator.latest_closed_range(ReportType.WEEK, WEDNESDAY) == DateRange(
            date(2026, 10, 18), date(2026, 10, 24)
        )

    def test_month_and_quarter(self, calculator):
        assert calculator.latest_closed_range(ReportType.MONTH, WEDNESDAY) == DateRange(
            date(2026, 9, 1), date(2026, 9, 30)
        )
        assert calculator.latest_closed_range(ReportType.QUARTER, WEDNESDAY) == DateRange(
            date(2026, 7, 1), date(2026, 9, 30)
        )

    def test_month_rolls_back_in_first_days(self, calculator):
        assert calculator.latest_closed_range(ReportType.MONTH, date(2026, 11, 2)).start == date(2026, 9, 1)
        assert calculator.latest_closed_range(ReportType.MONTH, date(2026, 11, 3)).start == date(2026, 10, 1)

    def test_quarter_rolls_back_in_first_days_of_quarter(self, calculator):
        assert calculator.latest_closed_range(ReportType.QUARTER, date(2026, 10, 2)).start == date(2026, 4, 1)
        assert calculator.latest_closed_range(ReportType.QUARTER, date(2026, 10, 3)).start == date(2026, 7, 1)
        # Rollback only applies in a quarter's first month
        assert calculator.latest_closed_range(ReportType.QUARTER, date(2026, 11, 1)).start == date(2026, 7, 1)

    def test_month_crosses_year_boundary(self, calculator):
        assert calculator.latest_closed_range(ReportType.MONTH, date(2027, 1, 15)) == DateRange(
            date(2026, 12, 1), date(2026, 12, 31)
        )


class TestAvailabilityThresholds:

    @pytest.mark.parametrize("today,delayed", [
        (date(2026, 10, 25), True),   # Sunday
        (date(2026, 10, 26), True),   # Monday
        (date(2026, 10, 27), False),  # Tuesday
        (date(2026, 10, 31), False),
    ])
    def test_week(self, calculator, today, delayed):
        assert calculator.is_delayed(ReportType.WEEK, today) is delayed

    @pytest.mark.parametrize("day,delayed", [(1, True), (2, True), (3, False), (20, False)])
    def test_month(self, calculator, day, delayed):
        assert calculator.is_delayed(ReportType.MONTH, date(2026, 11, day)) is delayed

    @pytest.mark.parametrize("today,delayed", [
        (date(2026, 10, 4), True),
        (date(2026, 10, 5), False),
        (date(2026, 11, 2), False),
    ])
    def test_quarter(self, calculator, today, delayed):
        assert calculator.is_delayed(ReportType.QUARTER, today) is delayed

    def test_custom_thresholds(self):
        calculator = PeriodCalculator(week_unlock_weekday=4, month_unlock_day=10)

        assert calculator.is_delayed(ReportType.WEEK, WEDNESDAY) is True
        assert calculator.is_delayed(ReportType.MONTH, date(2026, 11, 9)) is True


class TestPendingRanges:

    def test_three_weeks_behind(self, calculator):
        ranges = calculator.pending_ranges(ReportType.WEEK, date(2026, 10, 7), WEDNESDAY)

        assert ranges == [
            DateRange(date(2026, 10, 4), date(2026, 10, 10)),
            DateRange(date(2026, 10, 11), date(2026, 10, 17)),
            DateRange(date(2026, 10, 18), date(2026, 10, 24)),
        ]

    def test_up_to_date_month_and_quarter(self, calculator):
        watermark = date(2026, 9, 30)

        assert calculator.pending_ranges(ReportType.MONTH, watermark, WEDNESDAY) == []
        assert calculator.pending_ranges(ReportType.QUARTER, watermark, WEDNESDAY) == []

    def test_never_pulled_returns_latest_only(self, calculator):
        assert calculator.pending_ranges(ReportType.WEEK, None, WEDNESDAY) == [
            DateRange(date(2026, 10, 18), date(2026, 10, 24))
        ]

    def test_watermark_in_future_returns_nothing(self, calculator):
        assert calculator.pending_ranges(ReportType.WEEK, date(2026, 11, 5), WEDNESDAY) == []

    def test_limit_keeps_most_recent(self, calculator):
        ranges = calculator.pending_ranges(ReportType.WEEK, date(2026, 1, 1), WEDNESDAY, limit=2)

        assert [r.start for r in ranges] == [date(2026, 10, 11), date(2026, 10, 18)]

    def test_ranges_are_contiguous(self, calculator):
        ranges = calculator.pending_ranges(ReportType.MONTH, date(2026, 3, 31), WEDNESDAY)

        assert len(ranges) == 6
        for earlier, later in zip(ranges, ranges[1:]):
            assert (later.start - earlier.end).days == 1

    def test_outage_longer_than_a_year_is_fully_covered(self, calculator):
        ranges = calculator.pending_ranges(ReportType.WEEK, date(2025, 8, 30), WEDNESDAY)

        assert len(ranges) == 60
        assert ranges[0] == DateRange(date(2025, 8, 31), date(2025, 9, 6))
        assert ranges[-1] == DateRange(date(2026, 10, 18), date(2026, 10, 24))
        for earlier, later in zip(ranges, ranges[1:]):
            assert (later.start - earlier.end).days == 1

    def test_historical_ranges_oldest_first(self, calculator):
        ranges = calculator.historical_ranges(ReportType.QUARTER, WEDNESDAY, count=3)

        assert [r.start for r in ranges] == [date(2026, 1, 1), date(2026, 4, 1), date(2026, 7, 1)]

    def test_historical_ranges_default_depth(self, calculator):
        ranges = calculator.historical_ranges(ReportType.WEEK, WEDNESDAY)

        assert len(ranges) == INITIAL_PULL_DEPTHS[ReportType.WEEK]
        assert ranges[0].start == date(2025, 10, 26)
        assert ranges[-1] == calculator.latest_closed_range(ReportType.WEEK, WEDNESDAY)


class TestToday:

    def test_uses_seller_timezone(self):
        calculator = PeriodCalculator(clock=lambda: datetime(2026, 10, 28, 3, 0, tzinfo=timezone.utc))

        assert calculator.today("UTC") == date(2026, 10, 28)
        assert calculator.today("America/Los_Angeles") == date(2026, 10, 27)

    def test_defaults_to_configured_timezone(self):
        calculator = PeriodCalculator(default_timezone="Asia/Tokyo",
                                      clock=lambda: datetime(2026, 10, 28, 20, 0, tzinfo=timezone.utc))

        assert calculator.today() == date(2026, 10, 29)
