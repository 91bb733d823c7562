"""Unit tests for CLI interface."""

from contextlib import asynccontextmanager
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from sqp_orchestrator.models.data_models import (
    CronRunningStatus,
    DateRange,
    PhaseStatus,
    PullStatus,
    RecoveryResult,
    ReportTask,
    ReportType,
    RunSummary,
    Seller,
    TaskState,
)
from sqp_orchestrator.pipeline.main import cli
from sqp_orchestrator.pipeline.watchdog import StuckTask, WatchdogReport
from sqp_orchestrator.storage.memory import InMemoryReportStore


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("environment: test\nreport_types: [WEEK]\n")
    return path


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.orchestrator.run_once = AsyncMock()
    runtime.orchestrator.run_initial_pull = AsyncMock()
    runtime.orchestrator.check_phase = AsyncMock()
    runtime.orchestrator.retry_stuck_unit = AsyncMock()
    runtime.watchdog.run_once = AsyncMock()
    return runtime


@pytest.fixture
def opened_configs(runtime):
    """Patch open_runtime to yield the mock runtime, recording each config."""
    configs = []

    @asynccontextmanager
    async def fake_open_runtime(config):
        configs.append(config)
        yield runtime

    with patch("sqp_orchestrator.pipeline.main.open_runtime", fake_open_runtime):
        yield configs


def _invoke(config_file, *args):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_cli_help():
    """Test that CLI help message works."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    assert "SQP Report Orchestrator" in result.output
    assert "--config" in result.output
    for command in ("run", "initial-pull", "watchdog", "check-phase", "retry-stuck", "pending-ranges", "serve"):
        assert command in result.output


def test_cli_version():
    """Test that version flag works."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "1.0.0" in result.output


def test_run_displays_summary(config_file, runtime, opened_configs):
    runtime.orchestrator.run_once.return_value = RunSummary(
        user_id=10,
        seller_id=1,
        amazon_seller_id="A1SELLER",
        work_units={7: CronRunningStatus.COMPLETED},
        report_types=[ReportType.WEEK],
        watermark_advanced=True,
    )

    result = _invoke(config_file, "run", "--user-id", "10")

    assert result.exit_code == 0, result.output
    assert "Run Complete!" in result.output
    assert "A1SELLER" in result.output
    runtime.orchestrator.run_once.assert_awaited_once_with(user_id=10, seller_id=None)
    assert opened_configs[0].environment == "test"
    assert opened_configs[0].report_types == ["WEEK"]


def test_run_applies_overrides(config_file, runtime, opened_configs):
    runtime.orchestrator.run_once.return_value = RunSummary(skipped_reason="no eligible seller")

    result = _invoke(config_file, "--log-level", "debug", "run", "--initial-delay", "5")

    assert result.exit_code == 0, result.output
    assert "Nothing processed" in result.output
    assert opened_configs[0].initial_delay_seconds == 5.0
    assert opened_configs[0].log_level == "DEBUG"


def test_run_failure_exits_with_error(config_file, runtime, opened_configs):
    runtime.orchestrator.run_once.side_effect = RuntimeError("database is locked")

    result = _invoke(config_file, "run")

    assert result.exit_code == 1
    assert "database is locked" in result.output


def test_initial_pull_for_one_report_type(config_file, runtime, opened_configs):
    runtime.orchestrator.run_initial_pull.return_value = RunSummary(
        user_id=10,
        seller_id=1,
        amazon_seller_id="A1SELLER",
        work_units={7: CronRunningStatus.COMPLETED, 8: CronRunningStatus.COMPLETED},
        report_types=[ReportType.MONTH],
        watermark_advanced=True,
    )

    result = _invoke(config_file, "initial-pull", "--seller-id", "1", "--report-type", "month")

    assert result.exit_code == 0, result.output
    assert "A1SELLER" in result.output
    runtime.orchestrator.run_initial_pull.assert_awaited_once_with(
        user_id=None, seller_id=1, report_type=ReportType.MONTH
    )
    runtime.orchestrator.run_once.assert_not_awaited()


def test_initial_pull_rejects_unknown_report_type(config_file, runtime, opened_configs):
    result = _invoke(config_file, "initial-pull", "--report-type", "DAY")

    assert result.exit_code == 2
    runtime.orchestrator.run_initial_pull.assert_not_awaited()


def test_watchdog_displays_recoveries(config_file, runtime, opened_configs):
    runtime.watchdog.run_once.return_value = WatchdogReport(
        stuck=[StuckTask(7, ReportType.WEEK, "CHECKING_STATUS", 4000.0)],
        recovered=[RecoveryResult(7, ReportType.WEEK, PullStatus.COMPLETED, CronRunningStatus.COMPLETED)],
    )

    result = _invoke(config_file, "watchdog")

    assert result.exit_code == 0, result.output
    assert "Stuck tasks: 1" in result.output
    assert "COMPLETED" in result.output


def test_check_phase(config_file, runtime, opened_configs):
    runtime.orchestrator.check_phase.return_value = ReportTask(
        work_unit_id=7,
        report_type=ReportType.MONTH,
        date_range=DateRange(date(2026, 9, 1), date(2026, 9, 30)),
        state=TaskState.AWAITING_STATUS,
        pull_status=PullStatus.PENDING,
        phase_status=PhaseStatus.CHECKING_STATUS,
        report_id="R1",
    )

    result = _invoke(config_file, "check-phase", "7", "month")

    assert result.exit_code == 0, result.output
    assert "CHECKING_STATUS" in result.output
    runtime.orchestrator.check_phase.assert_awaited_once_with(7, ReportType.MONTH)


def test_check_phase_rejects_unknown_type(config_file, opened_configs):
    result = _invoke(config_file, "check-phase", "7", "DAY")

    assert result.exit_code == 2
    assert opened_configs == []


def test_retry_stuck_reports_notification(config_file, runtime, opened_configs):
    runtime.orchestrator.retry_stuck_unit.return_value = RecoveryResult(
        7, ReportType.WEEK, PullStatus.FAILED, CronRunningStatus.COMPLETED_WITH_FATAL, notified=True,
    )

    result = _invoke(config_file, "retry-stuck", "7", "WEEK")

    assert result.exit_code == 0, result.output
    assert "FAILED" in result.output
    assert "Failure notification sent" in result.output


def test_pending_ranges(config_file):
    store = InMemoryReportStore()
    store.add_seller(Seller(id=1, user_id=10, amazon_seller_id="A1SELLER", marketplace_id="ATVPDKIKX0DER"))

    with patch("sqp_orchestrator.pipeline.main.open_store", return_value=store):
        result = _invoke(config_file, "pending-ranges", "--seller-id", "1", "--limit", "2")

    assert result.exit_code == 0, result.output
    assert "A1SELLER" in result.output
    assert "WEEK" in result.output


def test_pending_ranges_unknown_seller(config_file):
    with patch("sqp_orchestrator.pipeline.main.open_store", return_value=InMemoryReportStore()):
        result = _invoke(config_file, "pending-ranges", "--seller-id", "99")

    assert result.exit_code == 1
    assert "Seller 99 not found" in result.output
