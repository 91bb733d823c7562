"""Wires the orchestrator, watchdog and their dependencies from configuration."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from sqp_orchestrator.fetcher.auth import CachedTokenProvider, LwaTokenFetcher, TokenFetcher
from sqp_orchestrator.fetcher.circuit_breaker import CircuitBreaker
from sqp_orchestrator.fetcher.delay import BackoffPolicy, DelayService
from sqp_orchestrator.fetcher.http_client import AsyncHTTPClient
from sqp_orchestrator.fetcher.rate_limiter import RateLimiter
from sqp_orchestrator.fetcher.reports_client import ReportsApiClient
from sqp_orchestrator.fetcher.retry_handler import RetryHandler
from sqp_orchestrator.models.config import OrchestratorConfig
from sqp_orchestrator.models.data_models import utc_now
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.monitoring.notifier import FailureNotifier, SmtpEmailSender
from sqp_orchestrator.pipeline.importer import JsonArtifactImporter
from sqp_orchestrator.pipeline.orchestrator import ReportLifecycleOrchestrator
from sqp_orchestrator.pipeline.output import JSONArtifactWriter
from sqp_orchestrator.pipeline.watchdog import StuckJobWatchdog
from sqp_orchestrator.scheduling.periods import PeriodCalculator
from sqp_orchestrator.storage.base import ReportStore
from sqp_orchestrator.storage.sqlite_store import SqliteReportStore


@dataclass
class Runtime:
    config: OrchestratorConfig
    store: ReportStore
    orchestrator: ReportLifecycleOrchestrator
    watchdog: StuckJobWatchdog
    logger: StructuredLogger


def open_store(config: OrchestratorConfig) -> SqliteReportStore:
    store = SqliteReportStore(config.database_path)
    store.init_schema()
    return store


@asynccontextmanager
async def open_runtime(
    config: OrchestratorConfig,
    store: Optional[ReportStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    token_fetcher: Optional[TokenFetcher] = None,
    sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> AsyncIterator[Runtime]:
    """
    Build every component for one process lifetime.

    Args:
        config: Loaded configuration
        store: Store override; defaults to the SQLite file in config
        transport: httpx transport override (mock server, tests)
        token_fetcher: Token fetcher override; defaults to LWA refresh-token exchange
        sleeper: Async sleep used by every delay
        clock: UTC clock for calendar decisions and persisted timestamps

    Yields:
        Runtime holding the orchestrator and watchdog
    """
    logger = StructuredLogger(level=config.log_level)
    store = store or open_store(config)

    async with AsyncHTTPClient(
        base_url=config.api_base_url,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        transport=transport,
        clock=clock,
    ) as http_client:
        fetch_token = token_fetcher or LwaTokenFetcher(
            http_client,
            token_url=config.lwa_token_url,
            client_id=config.lwa_client_id,
            client_secret=config.lwa_client_secret,
            refresh_tokens=config.lwa_refresh_tokens,
        )
        delay_service = DelayService(
            BackoffPolicy(config.retry_base_delay, config.retry_step_seconds, config.retry_max_delay),
            sleeper=sleeper,
            logger=logger,
        )
        sender = None
        if config.email_enabled:
            sender = SmtpEmailSender(
                host=config.smtp_host,
                port=config.smtp_port,
                username=config.smtp_user,
                password=config.smtp_password,
                sender=config.smtp_from,
            )
        writer = JSONArtifactWriter(config.download_directory)

        orchestrator = ReportLifecycleOrchestrator(
            config=config,
            store=store,
            api_client=ReportsApiClient(http_client),
            token_provider=CachedTokenProvider(fetch_token, ttl_seconds=config.token_ttl_seconds,
                                               logger=logger),
            retry_handler=RetryHandler(store, delay_service, max_attempts=config.retry_max_attempts,
                                       logger=logger),
            circuit_breaker=CircuitBreaker(config.circuit_breaker_threshold,
                                           config.circuit_breaker_timeout, logger=logger),
            rate_limiter=RateLimiter(config.rate_limit_points, config.rate_limit_duration,
                                     sleeper=sleeper, logger=logger),
            delay_service=delay_service,
            period_calculator=PeriodCalculator(
                week_unlock_weekday=config.week_unlock_weekday,
                month_unlock_day=config.month_unlock_day,
                quarter_unlock_day=config.quarter_unlock_day,
                month_rollback_days=config.month_rollback_days,
                default_timezone=config.timezone,
                clock=clock,
            ),
            importer=JsonArtifactImporter(store, writer, logger=logger),
            artifact_writer=writer,
            notifier=FailureNotifier(store, sender, to=config.notify_to, cc=config.notify_cc,
                                     bcc=config.notify_bcc, logger=logger),
            clock=clock,
            logger=logger,
        )
        watchdog = StuckJobWatchdog(store, orchestrator,
                                    threshold_seconds=config.stuck_threshold_seconds, clock=clock,
                                    logger=logger)
        yield Runtime(config=config, store=store, orchestrator=orchestrator,
                      watchdog=watchdog, logger=logger)
