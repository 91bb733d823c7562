"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from sqp_orchestrator.fetcher.auth import CachedTokenProvider
from sqp_orchestrator.fetcher.circuit_breaker import CircuitBreaker
from sqp_orchestrator.fetcher.delay import BackoffPolicy, DelayService
from sqp_orchestrator.fetcher.rate_limiter import RateLimiter
from sqp_orchestrator.fetcher.retry_handler import RetryHandler
from sqp_orchestrator.models.config import OrchestratorConfig
from sqp_orchestrator.models.data_models import ReportStatusResponse, Seller
from sqp_orchestrator.monitoring.notifier import FailureNotifier
from sqp_orchestrator.pipeline.importer import JsonArtifactImporter
from sqp_orchestrator.pipeline.orchestrator import ReportLifecycleOrchestrator
from sqp_orchestrator.pipeline.output import JSONArtifactWriter
from sqp_orchestrator.scheduling.periods import PeriodCalculator
from sqp_orchestrator.storage.memory import InMemoryReportStore

# Wednesday; WEEK, MONTH and QUARTER are all past their unlock thresholds
DEFAULT_START = datetime(2026, 10, 28, 12, 0, tzinfo=timezone.utc)

ASINS = ["B000000001", "B000000002", "B000000003"]


class FakeClock:
    """Deterministic clock: monotonic seconds plus a matching UTC datetime."""

    def __init__(self, start: datetime = DEFAULT_START):
        self.start = start
        self.current_time = 0.0
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current_time

    def utcnow(self) -> datetime:
        return self.start + timedelta(seconds=self.current_time)

    def advance(self, seconds: float) -> None:
        self.current_time += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeReportsApi:
    """
    Scripted stand-in for ReportsApiClient.

    Each script entry is either a value to return or an exception to raise;
    the last entry repeats once the script runs out.
    """

    def __init__(
        self,
        statuses: Optional[List[Any]] = None,
        rows: Optional[List[Dict[str, Any]]] = None,
        create_results: Optional[List[Any]] = None,
        download_results: Optional[List[Any]] = None,
    ):
        self.statuses = list(statuses or ["DONE"])
        self.create_results = list(create_results or [])
        self.download_results = list(download_results or [])
        self.rows = rows if rows is not None else [{"asin": "B000000001", "searchQuery": "shoes"}]
        self.created: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.download_calls: List[str] = []
        self.tokens: List[str] = []

    @staticmethod
    def _next(script: List[Any], default: Any) -> Any:
        if not script:
            return default
        value = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(value, Exception):
            raise value
        return value

    async def create_report(self, seller_id, payload, auth):
        self.tokens.append(auth.access_token)
        self.created.append(payload)
        default = f"R{len(self.created)}"
        return self._next(self.create_results, default) if self.create_results else default

    async def get_report_status(self, seller_id, report_id, auth):
        self.tokens.append(auth.access_token)
        self.status_calls.append(report_id)
        status = self._next(self.statuses, "DONE")
        document_id = f"D-{report_id}" if status == "DONE" else None
        return ReportStatusResponse(processing_status=status, report_document_id=document_id,
                                    report_id=report_id)

    async def download_report_document(self, seller_id, document_id, auth):
        self.tokens.append(auth.access_token)
        self.download_calls.append(document_id)
        if self.download_results:
            return self._next(self.download_results, self.rows)
        return list(self.rows)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Configuration with production thresholds and a single report type."""
    return OrchestratorConfig(
        environment="test",
        report_types=["WEEK"],
        initial_delay_seconds=30,
        request_delay_seconds=0,
    )


@pytest.fixture
def store(clock):
    return InMemoryReportStore(now=clock.utcnow)


@pytest.fixture
def seller(store):
    """Seller with three ASINs, never pulled."""
    seller = Seller(id=1, user_id=10, amazon_seller_id="A1SELLER", marketplace_id="ATVPDKIKX0DER",
                    name="Test Seller")
    store.add_seller(seller)
    store.add_asins(seller.id, ASINS)
    return seller


@pytest.fixture
def api():
    return FakeReportsApi()


@pytest.fixture
def email_sender():
    return AsyncMock()


@pytest.fixture
def make_orchestrator(config, store, clock, tmp_path, email_sender):
    """Factory building an orchestrator around the shared fakes."""

    def _make(api: FakeReportsApi, config: OrchestratorConfig = config, token_fetcher=None, **overrides):
        delay_service = DelayService(
            BackoffPolicy(config.retry_base_delay, config.retry_step_seconds, config.retry_max_delay),
            sleeper=clock.sleep,
        )
        if token_fetcher is None:
            counter = {"n": 0}

            async def token_fetcher(seller_id):
                counter["n"] += 1
                return f"token-{counter['n']}", 3600.0

        writer = JSONArtifactWriter(tmp_path / "downloads")
        components = dict(
            config=config,
            store=store,
            api_client=api,
            token_provider=CachedTokenProvider(token_fetcher, ttl_seconds=config.token_ttl_seconds,
                                               clock=clock),
            retry_handler=RetryHandler(store, delay_service, max_attempts=config.retry_max_attempts,
                                       clock=clock),
            circuit_breaker=CircuitBreaker(config.circuit_breaker_threshold,
                                           config.circuit_breaker_timeout, clock=clock),
            rate_limiter=RateLimiter(config.rate_limit_points, config.rate_limit_duration,
                                     now=clock.now, sleeper=clock.sleep),
            delay_service=delay_service,
            period_calculator=PeriodCalculator(clock=clock.utcnow),
            importer=JsonArtifactImporter(store, writer),
            artifact_writer=writer,
            notifier=FailureNotifier(store, email_sender, to=["ops@example.com"]),
            clock=clock.utcnow,
        )
        components.update(overrides)
        return ReportLifecycleOrchestrator(**components)

    return _make
