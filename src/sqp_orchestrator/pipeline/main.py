"""CLI entry point for the SQP report orchestrator.

This module provides the command-line interface for scheduled runs, stuck
job recovery, phase inspection, and the HTTP trigger.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import uvicorn
from rich.console import Console
from rich.table import Table

from sqp_orchestrator.models.config import ConfigManager, OrchestratorConfig
from sqp_orchestrator.models.data_models import ReportTask, ReportType, RunSummary
from sqp_orchestrator.pipeline.api import create_app
from sqp_orchestrator.pipeline.runtime import open_runtime, open_store
from sqp_orchestrator.pipeline.watchdog import WatchdogReport
from sqp_orchestrator.scheduling.periods import PeriodCalculator


console = Console()

REPORT_TYPE_CHOICE = click.Choice([rt.value for rt in ReportType], case_sensitive=False)


def _load_config(config_path: Path, **overrides: Any) -> OrchestratorConfig:
    return ConfigManager(config_path).load_config(overrides)


def _run(func, *args) -> None:
    """Run a command body with the standard exit codes."""
    try:
        func(*args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)  # Standard exit code for SIGINT
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        if "--debug" in sys.argv:
            console.print_exception()
        sys.exit(1)
    sys.exit(0)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.version_option(version="1.0.0", prog_name="sqp-orchestrator")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, log_level: Optional[str]) -> None:
    """
    SQP Report Orchestrator - Search Query Performance report pulls.

    Requests, polls, downloads and imports WEEK/MONTH/QUARTER reports per
    seller, with retries, circuit breaking, rate limiting and stuck job
    recovery.

    Examples:

        # Process the next eligible seller
        $ sqp-orchestrator run

        # Re-drive stuck work units
        $ sqp-orchestrator watchdog

        # Inspect one report task
        $ sqp-orchestrator check-phase 42 WEEK
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["overrides"] = {"log_level": log_level.upper() if log_level else None}


def _config_from(ctx: click.Context, **extra: Any) -> OrchestratorConfig:
    overrides: Dict[str, Any] = {**ctx.obj["overrides"], **extra}
    return _load_config(ctx.obj["config_path"], **overrides)


@cli.command()
@click.option("--user-id", type=int, help="Only process this user's sellers")
@click.option("--seller-id", type=int, help="Only process this seller")
@click.option("--initial-delay", type=float, help="Seconds between Request and first status check (overrides config)")
@click.pass_context
def run(ctx: click.Context, user_id: Optional[int], seller_id: Optional[int],
        initial_delay: Optional[float]) -> None:
    """Process the first eligible seller through the report lifecycle."""
    def body() -> None:
        config = _config_from(ctx, initial_delay_seconds=initial_delay)
        _display_config_summary(config)
        summary = asyncio.run(_run_once(config, user_id, seller_id))
        _display_run_summary(summary)
    _run(body)


async def _run_once(config: OrchestratorConfig, user_id: Optional[int], seller_id: Optional[int]) -> RunSummary:
    async with open_runtime(config) as runtime:
        return await runtime.orchestrator.run_once(user_id=user_id, seller_id=seller_id)


@cli.command("initial-pull")
@click.option("--user-id", type=int, help="Only process this user's sellers")
@click.option("--seller-id", type=int, help="Only process this seller")
@click.option("--report-type", type=REPORT_TYPE_CHOICE, help="Backfill only this report type")
@click.pass_context
def initial_pull(ctx: click.Context, user_id: Optional[int], seller_id: Optional[int],
                 report_type: Optional[str]) -> None:
    """Backfill history for the first seller that was never pulled."""
    def body() -> None:
        config = _config_from(ctx)
        _display_config_summary(config)
        parsed = ReportType.parse(report_type) if report_type else None
        summary = asyncio.run(_run_initial_pull(config, user_id, seller_id, parsed))
        _display_run_summary(summary)
    _run(body)


async def _run_initial_pull(config: OrchestratorConfig, user_id: Optional[int], seller_id: Optional[int],
                            report_type: Optional[ReportType]) -> RunSummary:
    async with open_runtime(config) as runtime:
        return await runtime.orchestrator.run_initial_pull(
            user_id=user_id, seller_id=seller_id, report_type=report_type
        )


@cli.command()
@click.pass_context
def watchdog(ctx: click.Context) -> None:
    """Scan for stuck work units and re-drive them."""
    def body() -> None:
        config = _config_from(ctx)
        report = asyncio.run(_run_watchdog(config))
        _display_watchdog_report(report)
    _run(body)


async def _run_watchdog(config: OrchestratorConfig) -> WatchdogReport:
    async with open_runtime(config) as runtime:
        return await runtime.watchdog.run_once()


@cli.command("check-phase")
@click.argument("work_unit_id", type=int)
@click.argument("report_type", type=REPORT_TYPE_CHOICE)
@click.pass_context
def check_phase(ctx: click.Context, work_unit_id: int, report_type: str) -> None:
    """Show the current phase of one (work unit, report type)."""
    def body() -> None:
        config = _config_from(ctx)
        task = asyncio.run(_check_phase(config, work_unit_id, ReportType.parse(report_type)))
        _display_task(task)
    _run(body)


async def _check_phase(config: OrchestratorConfig, work_unit_id: int, report_type: ReportType) -> ReportTask:
    async with open_runtime(config) as runtime:
        return await runtime.orchestrator.check_phase(work_unit_id, report_type)


@cli.command("retry-stuck")
@click.argument("work_unit_id", type=int)
@click.argument("report_type", type=REPORT_TYPE_CHOICE)
@click.pass_context
def retry_stuck(ctx: click.Context, work_unit_id: int, report_type: str) -> None:
    """Re-drive one (work unit, report type) from Poll Status."""
    def body() -> None:
        config = _config_from(ctx)
        result = asyncio.run(_retry_stuck(config, work_unit_id, ReportType.parse(report_type)))
        console.print(
            f"[bold]{result.report_type.value}[/bold] of work unit {result.work_unit_id}: "
            f"[cyan]{result.pull_status.name}[/cyan] (unit {result.cron_running_status.name})"
        )
        if result.notified:
            console.print("[yellow]Failure notification sent[/yellow]")
    _run(body)


async def _retry_stuck(config: OrchestratorConfig, work_unit_id: int, report_type: ReportType):
    async with open_runtime(config) as runtime:
        return await runtime.orchestrator.retry_stuck_unit(work_unit_id, report_type)


@cli.command("pending-ranges")
@click.option("--seller-id", type=int, required=True, help="Seller to compute ranges for")
@click.option("--limit", type=int, help="Maximum ranges per report type")
@click.pass_context
def pending_ranges(ctx: click.Context, seller_id: int, limit: Optional[int]) -> None:
    """List the reporting windows a seller still has to pull."""
    def body() -> None:
        config = _config_from(ctx)
        asyncio.run(_show_pending_ranges(config, seller_id, limit))
    _run(body)


async def _show_pending_ranges(config: OrchestratorConfig, seller_id: int, limit: Optional[int]) -> None:
    store = open_store(config)
    seller = await store.get_seller(seller_id)
    if seller is None:
        raise click.ClickException(f"Seller {seller_id} not found")

    calculator = PeriodCalculator(
        week_unlock_weekday=config.week_unlock_weekday,
        month_unlock_day=config.month_unlock_day,
        quarter_unlock_day=config.quarter_unlock_day,
        month_rollback_days=config.month_rollback_days,
        default_timezone=config.timezone,
    )
    today = calculator.today(seller.timezone)

    table = Table(title=f"Pending ranges for {seller.amazon_seller_id} (today {today.isoformat()})")
    table.add_column("Type", style="cyan")
    table.add_column("Last pull", style="magenta")
    table.add_column("Delayed", justify="center")
    table.add_column("Pending", style="green")
    for report_type in config.enabled_report_types:
        watermark = await store.get_watermark(seller_id, report_type)
        ranges = calculator.pending_ranges(report_type, watermark, today, limit=limit)
        table.add_row(
            report_type.value,
            watermark.isoformat() if watermark else "-",
            "yes" if calculator.is_delayed(report_type, today) else "no",
            "\n".join(str(r) for r in ranges) or "-",
        )
    console.print(table)


@cli.command()
@click.option("--host", help="Bind host (overrides config)")
@click.option("--port", type=int, help="Bind port (overrides config)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP trigger."""
    def body() -> None:
        config = _config_from(ctx, api_host=host, api_port=port)
        console.print(f"[cyan]Serving trigger on http://{config.api_host}:{config.api_port}[/cyan]")
        uvicorn.run(create_app(config), host=config.api_host, port=config.api_port,
                    log_level=config.log_level.lower())
    _run(body)


@cli.command("mock-api")
@click.option("--host", default="127.0.0.1", help="Bind host")
@click.option("--port", type=int, default=8001, help="Bind port")
def mock_api(host: str, port: int) -> None:
    """Run the mock reporting API (behavior from MOCK_* environment variables)."""
    def body() -> None:
        console.print(f"[cyan]Mock reporting API on http://{host}:{port}[/cyan]")
        uvicorn.run("sqp_orchestrator.mock_servers.app:create_app", factory=True, host=host, port=port)
    _run(body)


def _display_config_summary(config: OrchestratorConfig) -> None:
    """Display configuration summary before running."""
    console.print("\n[bold cyan]Orchestrator Configuration[/bold cyan]")
    console.print(f"  Environment: {config.environment}")
    console.print(f"  Report Types: {', '.join(config.report_types)}")
    console.print(f"  Retries: {config.retry_max_attempts} attempts, "
                  f"backoff {config.retry_base_delay:g}s + {config.retry_step_seconds:g}s/attempt "
                  f"(max {config.retry_max_delay:g}s)")
    console.print(f"  Initial Delay: {config.initial_delay_seconds:g}s")
    console.print(f"  Rate Limit: {config.rate_limit_points} calls / {config.rate_limit_duration:g}s per seller")
    console.print()


def _display_run_summary(summary: RunSummary) -> None:
    """Display final run results."""
    if not summary.processed:
        console.print(f"[yellow]Nothing processed:[/yellow] {summary.skipped_reason}")
        return

    console.print("\n[bold green]Run Complete![/bold green]\n")
    summary_table = Table(title="Execution Summary", show_header=False)
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Value", style="green")
    summary_table.add_row("Seller", f"{summary.amazon_seller_id} (id {summary.seller_id})")
    summary_table.add_row("Report Types", ", ".join(rt.value for rt in summary.report_types))
    summary_table.add_row("Work Units", str(len(summary.work_units)))
    summary_table.add_row("Watermark Advanced", "yes" if summary.watermark_advanced else "no")
    summary_table.add_row("Processing Time", f"{summary.duration_seconds:.2f}s")
    console.print(summary_table)

    if summary.work_units:
        unit_table = Table(title="Work Units")
        unit_table.add_column("Id", justify="right", style="cyan")
        unit_table.add_column("Status", style="green")
        for unit_id, status in summary.work_units.items():
            unit_table.add_row(str(unit_id), status.name)
        console.print(unit_table)
    console.print()


def _display_watchdog_report(report: WatchdogReport) -> None:
    console.print(f"\n[bold]Stuck tasks:[/bold] {len(report.stuck)}")
    if report.recovered:
        table = Table(title="Recovery Results")
        table.add_column("Work Unit", justify="right", style="cyan")
        table.add_column("Type", style="cyan")
        table.add_column("Pull Status", style="green")
        table.add_column("Notified", justify="center", style="yellow")
        for result in report.recovered:
            table.add_row(str(result.work_unit_id), result.report_type.value,
                          result.pull_status.name, "yes" if result.notified else "no")
        console.print(table)
    for error in report.errors:
        console.print(f"[red]Error:[/red] {error}")


def _display_task(task: ReportTask) -> None:
    table = Table(title=f"Work unit {task.work_unit_id} / {task.report_type.value}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("State", task.state.value)
    table.add_row("Date Range", str(task.date_range) if task.date_range else "-")
    table.add_row("Pull Status", task.pull_status.name)
    table.add_row("Phase", task.phase_status.name)
    table.add_row("Report Id", task.report_id or "-")
    table.add_row("Document Id", task.document_id or "-")
    table.add_row("Download", task.download_status.value if task.download_status else "-")
    table.add_row("Retry Count", str(task.retry_count))
    console.print(table)


if __name__ == "__main__":
    cli()
