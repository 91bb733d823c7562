"""In-memory ReportStore used for tests and dry runs."""

import copy
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqp_orchestrator.models.data_models import (
    ACTIVE_PHASES,
    ActivityLogEntry,
    AsinPullStatus,
    CronRunningStatus,
    DateRange,
    DownloadRecord,
    PullStatus,
    ReportType,
    Seller,
    SellerAsin,
    WorkUnit,
    utc_now,
)
from sqp_orchestrator.models.errors import NotFoundError

RECOVERABLE_CRON_STATUSES = (
    CronRunningStatus.RUNNING,
    CronRunningStatus.NEEDS_RETRY,
    CronRunningStatus.RETRY_RUNNING,
)


class InMemoryReportStore:
    """Dict-backed store. Returns copies so callers never share state with it."""

    def __init__(self, now: Callable[[], datetime] = utc_now):
        self._now = now
        self.sellers: Dict[int, Seller] = {}
        self.asins: Dict[Tuple[int, str], SellerAsin] = {}
        self.watermarks: Dict[Tuple[int, ReportType], date] = {}
        self.work_units: Dict[int, WorkUnit] = {}
        self.activity: List[ActivityLogEntry] = []
        self.downloads: Dict[int, DownloadRecord] = {}
        self.imported_rows: Dict[int, List[Dict[str, Any]]] = {}
        self._ids = {"work_unit": 0, "activity": 0, "download": 0}

    def _next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    # Seeding helpers

    def add_seller(self, seller: Seller) -> Seller:
        self.sellers[seller.id] = copy.deepcopy(seller)
        return seller

    def add_asins(self, seller_id: int, asins: Iterable[str]) -> None:
        for asin in asins:
            self.asins[(seller_id, asin)] = SellerAsin(seller_id=seller_id, asin=asin)

    # Sellers and ASINs

    async def list_user_ids(self) -> List[int]:
        return sorted({s.user_id for s in self.sellers.values() if s.is_active})

    async def list_sellers(
        self, user_id: Optional[int] = None, seller_id: Optional[int] = None
    ) -> List[Seller]:
        sellers = [
            s for s in self.sellers.values()
            if s.is_active
            and (user_id is None or s.user_id == user_id)
            and (seller_id is None or s.id == seller_id)
        ]
        return copy.deepcopy(sorted(sellers, key=lambda s: s.id))

    async def get_seller(self, seller_id: int) -> Optional[Seller]:
        return copy.deepcopy(self.sellers.get(seller_id))

    async def list_seller_asins(self, seller_id: int) -> List[SellerAsin]:
        return copy.deepcopy([a for (sid, _), a in self.asins.items() if sid == seller_id])

    async def update_asin_status(
        self,
        seller_id: int,
        asins: Iterable[str],
        report_type: ReportType,
        status: AsinPullStatus,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> int:
        updated = 0
        for asin in asins:
            record = self.asins.get((seller_id, asin))
            if record is None:
                continue
            record.statuses[report_type] = status
            if started_at is not None:
                record.last_pull_started[report_type] = started_at
            if ended_at is not None:
                record.last_pull_ended[report_type] = ended_at
            updated += 1
        return updated

    # Watermarks

    async def get_watermark(self, seller_id: int, report_type: ReportType) -> Optional[date]:
        return self.watermarks.get((seller_id, report_type))

    async def set_watermark(self, seller_id: int, report_type: ReportType, value: date) -> None:
        self.watermarks[(seller_id, report_type)] = value

    # Work units

    async def create_work_unit(self, unit: WorkUnit) -> WorkUnit:
        stored = copy.deepcopy(unit)
        stored.id = self._next_id("work_unit")
        stored.created_at = stored.updated_at = self._now()
        self.work_units[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_work_unit(self, work_unit_id: int) -> Optional[WorkUnit]:
        return copy.deepcopy(self.work_units.get(work_unit_id))

    async def save_work_unit(self, unit: WorkUnit) -> WorkUnit:
        if unit.id not in self.work_units:
            raise NotFoundError(f"Work unit {unit.id} not found")
        stored = copy.deepcopy(unit)
        stored.updated_at = self._now()
        self.work_units[stored.id] = stored
        return copy.deepcopy(stored)

    async def find_active_work_unit(
        self,
        seller_id: int,
        asin_list: str,
        report_type: ReportType,
        date_range: DateRange,
    ) -> Optional[WorkUnit]:
        for unit in self.work_units.values():
            state = unit.types.get(report_type)
            if (
                unit.seller_id == seller_id
                and unit.asin_list == asin_list
                and state is not None
                and state.date_range == date_range
                and state.is_active
            ):
                return copy.deepcopy(unit)
        return None

    async def list_work_units(
        self, run_id: Optional[str] = None, seller_id: Optional[int] = None
    ) -> List[WorkUnit]:
        units = [
            u for u in self.work_units.values()
            if (run_id is None or u.run_id == run_id)
            and (seller_id is None or u.seller_id == seller_id)
        ]
        return copy.deepcopy(sorted(units, key=lambda u: u.id))

    async def find_stuck_work_units(self, cutoff: datetime) -> List[WorkUnit]:
        stuck = []
        for unit in self.work_units.values():
            if unit.cron_running_status not in RECOVERABLE_CRON_STATUSES:
                continue
            if unit.updated_at is None or unit.updated_at > cutoff:
                continue
            if any(
                s.phase_status in ACTIVE_PHASES
                and s.pull_status in (PullStatus.PENDING, PullStatus.NEEDS_RETRY)
                for s in unit.types.values()
            ):
                stuck.append(unit)
        return copy.deepcopy(sorted(stuck, key=lambda u: u.id))

    async def get_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        unit = self.work_units.get(work_unit_id)
        if unit is None or report_type not in unit.types:
            return 0
        return unit.types[report_type].retry_count

    async def increment_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        unit = self.work_units.get(work_unit_id)
        if unit is None or report_type not in unit.types:
            raise NotFoundError(f"Work unit {work_unit_id} has no {report_type.value} state")
        unit.types[report_type].retry_count += 1
        return unit.types[report_type].retry_count

    # Activity log

    async def log_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        stored = copy.deepcopy(entry)
        stored.id = self._next_id("activity")
        stored.created_at = self._now()
        self.activity.append(stored)
        return copy.deepcopy(stored)

    async def list_activity(
        self, work_unit_id: int, report_type: Optional[ReportType] = None
    ) -> List[ActivityLogEntry]:
        return copy.deepcopy([
            e for e in self.activity
            if e.work_unit_id == work_unit_id
            and (report_type is None or e.report_type == report_type)
        ])

    async def get_latest_report_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        date_range: Optional[DateRange] = None,
    ) -> Optional[str]:
        for entry in reversed(self.activity):
            if (
                entry.work_unit_id == work_unit_id
                and entry.report_type == report_type
                and entry.report_id
                and (date_range is None or entry.date_range == date_range)
            ):
                return entry.report_id
        return None

    async def get_latest_document_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[str]:
        for entry in reversed(self.activity):
            if (
                entry.work_unit_id == work_unit_id
                and entry.report_type == report_type
                and entry.document_id
                and (report_id is None or entry.report_id == report_id)
            ):
                return entry.document_id
        return None

    # Downloads and imports

    async def save_download_record(self, record: DownloadRecord) -> DownloadRecord:
        stored = copy.deepcopy(record)
        if stored.id is None:
            stored.id = self._next_id("download")
        self.downloads[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_download_record(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[DownloadRecord]:
        matches = [
            r for r in self.downloads.values()
            if r.work_unit_id == work_unit_id
            and r.report_type == report_type
            and (report_id is None or r.report_id == report_id)
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda r: r.id))

    async def import_rows(self, record: DownloadRecord, rows: List[Dict[str, Any]]) -> int:
        self.imported_rows[record.id] = copy.deepcopy(rows)
        return len(rows)

