"""Persistence contract used by the orchestrator."""

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqp_orchestrator.models.data_models import (
    ActivityLogEntry,
    AsinPullStatus,
    DateRange,
    DownloadRecord,
    ReportType,
    Seller,
    SellerAsin,
    WorkUnit,
)


class ReportStore(Protocol):
    """Durable state shared across runs.

    Every orchestrator phase re-reads what it needs from here; nothing
    carried in memory across a suspension is trusted.
    """

    # Sellers and ASINs

    async def list_user_ids(self) -> List[int]:
        ...

    async def list_sellers(
        self, user_id: Optional[int] = None, seller_id: Optional[int] = None
    ) -> List[Seller]:
        """Active sellers, optionally filtered by owning user or seller id."""
        ...

    async def get_seller(self, seller_id: int) -> Optional[Seller]:
        ...

    async def list_seller_asins(self, seller_id: int) -> List[SellerAsin]:
        ...

    async def update_asin_status(
        self,
        seller_id: int,
        asins: Iterable[str],
        report_type: ReportType,
        status: AsinPullStatus,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> int:
        """Set the per-type pull status of ASINs; returns the number updated."""
        ...

    # Watermarks

    async def get_watermark(self, seller_id: int, report_type: ReportType) -> Optional[date]:
        """End date of the last window fully pulled for the seller and type."""
        ...

    async def set_watermark(self, seller_id: int, report_type: ReportType, value: date) -> None:
        ...

    # Work units

    async def create_work_unit(self, unit: WorkUnit) -> WorkUnit:
        ...

    async def get_work_unit(self, work_unit_id: int) -> Optional[WorkUnit]:
        ...

    async def save_work_unit(self, unit: WorkUnit) -> WorkUnit:
        """Persist the unit and stamp updated_at."""
        ...

    async def find_active_work_unit(
        self,
        seller_id: int,
        asin_list: str,
        report_type: ReportType,
        date_range: DateRange,
    ) -> Optional[WorkUnit]:
        """Unit with an active phase for the same seller, batch, type and range."""
        ...

    async def list_work_units(
        self, run_id: Optional[str] = None, seller_id: Optional[int] = None
    ) -> List[WorkUnit]:
        ...

    async def find_stuck_work_units(self, cutoff: datetime) -> List[WorkUnit]:
        """Units with an active, non-terminal type last updated at or before cutoff."""
        ...

    async def get_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        ...

    async def increment_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        ...

    # Activity log

    async def log_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        """Append an entry; entries are never updated or deleted individually."""
        ...

    async def list_activity(
        self, work_unit_id: int, report_type: Optional[ReportType] = None
    ) -> List[ActivityLogEntry]:
        ...

    async def get_latest_report_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        date_range: Optional[DateRange] = None,
    ) -> Optional[str]:
        ...

    async def get_latest_document_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[str]:
        ...

    # Downloads and imports

    async def save_download_record(self, record: DownloadRecord) -> DownloadRecord:
        ...

    async def get_download_record(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[DownloadRecord]:
        """Latest download record for the unit and type (and report id if given)."""
        ...

    async def import_rows(self, record: DownloadRecord, rows: List[Dict[str, Any]]) -> int:
        ...

