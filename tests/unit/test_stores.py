"""Behavioural tests shared by the in-memory and SQLite stores."""

from datetime import date, timedelta

import pytest

from sqp_orchestrator.models.data_models import (
    ActivityLogEntry,
    ActivityStatus,
    AsinPullStatus,
    CronRunningStatus,
    DateRange,
    DownloadRecord,
    DownloadStatus,
    PhaseStatus,
    PullStatus,
    ReportType,
    ReportTypeState,
    Seller,
    WorkUnit,
)
from sqp_orchestrator.models.errors import NotFoundError
from sqp_orchestrator.storage.memory import InMemoryReportStore
from sqp_orchestrator.storage.sqlite_store import SqliteReportStore

WEEK_RANGE = DateRange(date(2026, 10, 18), date(2026, 10, 24))
MONTH_RANGE = DateRange(date(2026, 9, 1), date(2026, 9, 30))
SELLER = Seller(id=1, user_id=10, amazon_seller_id="A1SELLER", marketplace_id="ATVPDKIKX0DER",
                timezone="America/Los_Angeles")


@pytest.fixture(params=["memory", "sqlite"])
def report_store(request, tmp_path, clock):
    if request.param == "memory":
        store = InMemoryReportStore(now=clock.utcnow)
        store.add_seller(SELLER)
    else:
        store = SqliteReportStore(tmp_path / "db" / "sqp.db", now=clock.utcnow)
        store.init_schema()
        store.upsert_seller(SELLER)
    store.add_asins(SELLER.id, ["B000000001", "B000000002"])
    return store


def _unit(**types):
    return WorkUnit(
        seller_id=1,
        amazon_seller_id="A1SELLER",
        marketplace_id="ATVPDKIKX0DER",
        asin_list="B000000001 B000000002",
        user_id=10,
        run_id="run-1",
        types=types or {ReportType.WEEK: ReportTypeState(date_range=WEEK_RANGE)},
    )


class TestSellers:

    @pytest.mark.asyncio
    async def test_list_and_get(self, report_store):
        assert await report_store.list_user_ids() == [10]
        assert [s.id for s in await report_store.list_sellers(user_id=10)] == [1]
        assert await report_store.list_sellers(user_id=99) == []
        seller = await report_store.get_seller(1)
        assert seller.timezone == "America/Los_Angeles"
        assert await report_store.get_seller(2) is None

    @pytest.mark.asyncio
    async def test_update_asin_status(self, report_store, clock):
        started = clock.utcnow()

        updated = await report_store.update_asin_status(
            1, ["B000000001", "UNKNOWN"], ReportType.WEEK, AsinPullStatus.IN_PROGRESS, started_at=started
        )

        assert updated == 1
        asins = {a.asin: a for a in await report_store.list_seller_asins(1)}
        assert asins["B000000001"].statuses[ReportType.WEEK] == AsinPullStatus.IN_PROGRESS
        assert asins["B000000001"].last_pull_started[ReportType.WEEK] == started
        assert ReportType.WEEK not in asins["B000000002"].statuses

    @pytest.mark.asyncio
    async def test_watermarks(self, report_store):
        assert await report_store.get_watermark(1, ReportType.WEEK) is None

        await report_store.set_watermark(1, ReportType.WEEK, date(2026, 10, 17))
        await report_store.set_watermark(1, ReportType.WEEK, date(2026, 10, 24))

        assert await report_store.get_watermark(1, ReportType.WEEK) == date(2026, 10, 24)
        assert await report_store.get_watermark(1, ReportType.MONTH) is None


class TestWorkUnits:

    @pytest.mark.asyncio
    async def test_create_and_round_trip_types(self, report_store, clock):
        unit = await report_store.create_work_unit(_unit())

        loaded = await report_store.get_work_unit(unit.id)

        assert loaded.id == unit.id
        assert loaded.report_types == [ReportType.WEEK]
        assert loaded.state(ReportType.WEEK).date_range == WEEK_RANGE
        assert loaded.created_at == clock.utcnow()

    @pytest.mark.asyncio
    async def test_save_stamps_updated_at(self, report_store, clock):
        unit = await report_store.create_work_unit(_unit())
        unit.types[ReportType.MONTH] = ReportTypeState(
            date_range=MONTH_RANGE, pull_status=PullStatus.NEEDS_RETRY,
            phase_status=PhaseStatus.CHECKING_STATUS, retry_count=2, started_at=clock.utcnow(),
        )
        unit.cron_running_status = CronRunningStatus.NEEDS_RETRY
        clock.advance(90)

        saved = await report_store.save_work_unit(unit)

        assert saved.updated_at == clock.utcnow()
        month = (await report_store.get_work_unit(unit.id)).state(ReportType.MONTH)
        assert month.pull_status == PullStatus.NEEDS_RETRY
        assert month.phase_status == PhaseStatus.CHECKING_STATUS
        assert month.retry_count == 2
        assert saved.cron_running_status == CronRunningStatus.NEEDS_RETRY

    @pytest.mark.asyncio
    async def test_save_unknown_unit(self, report_store):
        unit = _unit()
        unit.id = 404

        with pytest.raises(NotFoundError):
            await report_store.save_work_unit(unit)

    @pytest.mark.asyncio
    async def test_find_active_work_unit(self, report_store):
        unit = await report_store.create_work_unit(_unit())
        asin_list = unit.asin_list

        assert await report_store.find_active_work_unit(1, asin_list, ReportType.WEEK, WEEK_RANGE) is None

        unit.types[ReportType.WEEK].phase_status = PhaseStatus.REQUESTING
        await report_store.save_work_unit(unit)
        found = await report_store.find_active_work_unit(1, asin_list, ReportType.WEEK, WEEK_RANGE)
        assert found.id == unit.id

        other_range = DateRange(date(2026, 10, 11), date(2026, 10, 17))
        assert await report_store.find_active_work_unit(1, asin_list, ReportType.WEEK, other_range) is None

        unit.types[ReportType.WEEK].pull_status = PullStatus.COMPLETED
        await report_store.save_work_unit(unit)
        assert await report_store.find_active_work_unit(1, asin_list, ReportType.WEEK, WEEK_RANGE) is None

    @pytest.mark.asyncio
    async def test_list_by_run(self, report_store):
        await report_store.create_work_unit(_unit())
        other = _unit()
        other.run_id = "run-2"
        await report_store.create_work_unit(other)

        assert len(await report_store.list_work_units(run_id="run-1")) == 1
        assert len(await report_store.list_work_units(seller_id=1)) == 2

    @pytest.mark.asyncio
    async def test_find_stuck_work_units(self, report_store, clock):
        unit = await report_store.create_work_unit(_unit())
        unit.types[ReportType.WEEK].phase_status = PhaseStatus.CHECKING_STATUS
        await report_store.save_work_unit(unit)
        await report_store.create_work_unit(_unit())
        cutoff = clock.utcnow()
        clock.advance(10)
        fresh = await report_store.create_work_unit(_unit())
        fresh.types[ReportType.WEEK].phase_status = PhaseStatus.DOWNLOADING
        await report_store.save_work_unit(fresh)

        stuck = await report_store.find_stuck_work_units(cutoff)

        # Only the unit with an active phase updated at or before the cutoff
        assert [u.id for u in stuck] == [unit.id]

    @pytest.mark.asyncio
    async def test_completed_units_are_never_stuck(self, report_store, clock):
        unit = await report_store.create_work_unit(_unit())
        unit.types[ReportType.WEEK].phase_status = PhaseStatus.IMPORTING
        unit.cron_running_status = CronRunningStatus.COMPLETED
        await report_store.save_work_unit(unit)

        assert await report_store.find_stuck_work_units(clock.utcnow() + timedelta(hours=2)) == []

    @pytest.mark.asyncio
    async def test_retry_count(self, report_store):
        unit = await report_store.create_work_unit(_unit())

        assert await report_store.increment_retry_count(unit.id, ReportType.WEEK) == 1
        assert await report_store.increment_retry_count(unit.id, ReportType.WEEK) == 2
        assert await report_store.get_retry_count(unit.id, ReportType.WEEK) == 2
        assert await report_store.get_retry_count(unit.id, ReportType.MONTH) == 0
        with pytest.raises(NotFoundError):
            await report_store.increment_retry_count(unit.id, ReportType.MONTH)


class TestActivityLog:

    def _entry(self, unit_id, **kwargs):
        values = dict(work_unit_id=unit_id, amazon_seller_id="A1SELLER", report_type=ReportType.WEEK,
                      action="Request Report", status=ActivityStatus.SUCCEEDED)
        values.update(kwargs)
        return ActivityLogEntry(**values)

    @pytest.mark.asyncio
    async def test_append_and_list(self, report_store):
        unit = await report_store.create_work_unit(_unit())
        first = await report_store.log_activity(self._entry(unit.id, status=ActivityStatus.STARTED))
        await report_store.log_activity(self._entry(unit.id, report_type=ReportType.MONTH))

        assert first.id is not None
        assert first.created_at is not None
        assert len(await report_store.list_activity(unit.id)) == 2
        assert len(await report_store.list_activity(unit.id, ReportType.WEEK)) == 1

    @pytest.mark.asyncio
    async def test_latest_report_and_document_ids(self, report_store):
        unit = await report_store.create_work_unit(_unit())
        await report_store.log_activity(self._entry(unit.id, report_id="R1", date_range=WEEK_RANGE))
        await report_store.log_activity(self._entry(unit.id, action="Check Status", report_id="R1",
                                                    document_id="D1"))
        await report_store.log_activity(self._entry(unit.id, report_id="R2", date_range=WEEK_RANGE))
        await report_store.log_activity(self._entry(unit.id, action="Check Status", message="no ids"))

        assert await report_store.get_latest_report_id(unit.id, ReportType.WEEK) == "R2"
        assert await report_store.get_latest_report_id(unit.id, ReportType.WEEK, MONTH_RANGE) is None
        assert await report_store.get_latest_document_id(unit.id, ReportType.WEEK) == "D1"
        assert await report_store.get_latest_document_id(unit.id, ReportType.WEEK, "R2") is None
        assert await report_store.get_latest_report_id(unit.id, ReportType.MONTH) is None


class TestDownloads:

    @pytest.mark.asyncio
    async def test_save_update_and_get_latest(self, report_store, clock):
        unit = await report_store.create_work_unit(_unit())
        record = await report_store.save_download_record(DownloadRecord(
            work_unit_id=unit.id, report_type=ReportType.WEEK, report_id="R1", document_id="D1",
            date_range=WEEK_RANGE,
        ))
        record.begin_attempt()
        record.complete("/tmp/r1.json", 42, clock.utcnow())
        await report_store.save_download_record(record)
        await report_store.save_download_record(DownloadRecord(
            work_unit_id=unit.id, report_type=ReportType.WEEK, report_id="R2",
        ))

        latest = await report_store.get_download_record(unit.id, ReportType.WEEK)
        first = await report_store.get_download_record(unit.id, ReportType.WEEK, "R1")

        assert latest.report_id == "R2"
        assert first.id == record.id
        assert first.status == DownloadStatus.COMPLETED
        assert first.attempts == 1
        assert first.file_size == 42
        assert first.date_range == WEEK_RANGE
        assert await report_store.get_download_record(unit.id, ReportType.MONTH) is None

    @pytest.mark.asyncio
    async def test_import_rows(self, report_store):
        unit = await report_store.create_work_unit(_unit())
        record = await report_store.save_download_record(DownloadRecord(
            work_unit_id=unit.id, report_type=ReportType.WEEK, report_id="R1",
        ))

        assert await report_store.import_rows(record, [{"asin": "A"}, {"asin": "B"}]) == 2


class TestSqliteSpecifics:

    @pytest.mark.asyncio
    async def test_reimport_replaces_rows(self, tmp_path):
        store = SqliteReportStore(tmp_path / "sqp.db")
        store.init_schema()
        record = await store.save_download_record(DownloadRecord(
            work_unit_id=1, report_type=ReportType.WEEK, report_id="R1",
        ))

        await store.import_rows(record, [{"asin": "A"}, {"asin": "B"}])
        await store.import_rows(record, [{"asin": "A"}, {"asin": "B"}])

        assert await store.count_imported_rows(record.id) == 2

    @pytest.mark.asyncio
    async def test_state_survives_new_store_instance(self, tmp_path):
        path = tmp_path / "sqp.db"
        first = SqliteReportStore(path)
        first.init_schema()
        first.upsert_seller(SELLER)
        await first.set_watermark(1, ReportType.QUARTER, date(2026, 9, 30))

        second = SqliteReportStore(path)
        second.init_schema()

        assert await second.get_watermark(1, ReportType.QUARTER) == date(2026, 9, 30)
        assert (await second.get_seller(1)).amazon_seller_id == "A1SELLER"
