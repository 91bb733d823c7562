"""SQLite-backed ReportStore.

Per-type WorkUnit state lives in prefixed columns (``weekly_pull_status``,
``monthly_phase_status`` ...). Connections are opened per operation with WAL
enabled; writes are serialized behind a lock and every call runs in a worker
thread so the event loop never blocks on disk.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from sqp_orchestrator.models.data_models import (
    ACTIVE_PHASES,
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
    SellerAsin,
    WorkUnit,
    utc_now,
)
from sqp_orchestrator.models.errors import NotFoundError
from sqp_orchestrator.storage.memory import RECOVERABLE_CRON_STATUSES

logger = logging.getLogger(__name__)

DB_TIMEOUT = 10  # seconds

TYPE_COLUMNS = ("range", "pull_status", "phase_status", "retry_count",
                "recovery_attempts", "started_at", "ended_at")
ASIN_COLUMNS = ("pull_status", "pull_started_at", "pull_ended_at")


def _type_column_defs() -> str:
    defs = []
    for report_type in ReportType:
        p = report_type.field_prefix
        defs.extend([
            f"{p}_range TEXT",
            f"{p}_pull_status INTEGER NOT NULL DEFAULT 0",
            f"{p}_phase_status INTEGER NOT NULL DEFAULT 0",
            f"{p}_retry_count INTEGER NOT NULL DEFAULT 0",
            f"{p}_recovery_attempts INTEGER NOT NULL DEFAULT 0",
            f"{p}_started_at TEXT",
            f"{p}_ended_at TEXT",
        ])
    return ",\n        ".join(defs)


def _asin_column_defs() -> str:
    defs = []
    for report_type in ReportType:
        p = report_type.field_prefix
        defs.extend([f"{p}_pull_status INTEGER", f"{p}_pull_started_at TEXT", f"{p}_pull_ended_at TEXT"])
    return ",\n        ".join(defs)


SCHEMA = f"""
CREATE TABLE IF NOT EXISTS sellers (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL,
    amazon_seller_id TEXT NOT NULL,
    marketplace_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    timezone TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS seller_asins (
    seller_id INTEGER NOT NULL,
    asin TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    {_asin_column_defs()},
    PRIMARY KEY (seller_id, asin)
);
CREATE TABLE IF NOT EXISTS watermarks (
    seller_id INTEGER NOT NULL,
    report_type TEXT NOT NULL,
    last_pull_date TEXT NOT NULL,
    PRIMARY KEY (seller_id, report_type)
);
CREATE TABLE IF NOT EXISTS work_units (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id INTEGER NOT NULL,
    amazon_seller_id TEXT NOT NULL,
    marketplace_id TEXT NOT NULL,
    asin_list TEXT NOT NULL,
    user_id INTEGER,
    run_id TEXT NOT NULL DEFAULT '',
    cron_running_status INTEGER NOT NULL DEFAULT 1,
    {_type_column_defs()},
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_work_units_run ON work_units (run_id);
CREATE INDEX IF NOT EXISTS idx_work_units_batch ON work_units (seller_id, asin_list);
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_unit_id INTEGER NOT NULL,
    amazon_seller_id TEXT NOT NULL,
    report_type TEXT NOT NULL,
    action TEXT NOT NULL,
    status INTEGER NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    report_id TEXT,
    document_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    execution_time REAL NOT NULL DEFAULT 0,
    date_range TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_activity_unit ON activity_log (work_unit_id, report_type);
CREATE TABLE IF NOT EXISTS download_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_unit_id INTEGER NOT NULL,
    report_type TEXT NOT NULL,
    report_id TEXT NOT NULL,
    document_id TEXT,
    date_range TEXT,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    file_path TEXT,
    file_size INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    imported INTEGER NOT NULL DEFAULT 0,
    import_error TEXT,
    completed_at TEXT
);
CREATE TABLE IF NOT EXISTS report_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    download_id INTEGER NOT NULL,
    work_unit_id INTEGER NOT NULL,
    report_type TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_report_rows_download ON report_rows (download_id);
"""


def _iso(value: Optional[Union[date, datetime]]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _range_text(value: Optional[DateRange]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_range(value: Optional[str]) -> Optional[DateRange]:
    return DateRange.parse(value) if value else None


class SqliteReportStore:
    """ReportStore on a single SQLite file."""

    def __init__(self, path: Union[str, Path] = "data/sqp.db", now: Callable[[], datetime] = utc_now):
        self.path = Path(path)
        self._now = now
        self._write_lock = Lock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = sqlite3.connect(self.path, timeout=DB_TIMEOUT)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.DatabaseError as e:
            logger.error(f"[DB] Database error on {self.path}: {e}")
            raise
        finally:
            if conn:
                conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            with self._connect() as conn:
                yield conn
                conn.commit()

    def init_schema(self) -> None:
        """Create tables if they do not exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._write() as conn:
            conn.executescript(SCHEMA)

    # Seeding helpers

    def upsert_seller(self, seller: Seller) -> Seller:
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO sellers (id, user_id, amazon_seller_id, marketplace_id, name, timezone, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    amazon_seller_id = excluded.amazon_seller_id,
                    marketplace_id = excluded.marketplace_id,
                    name = excluded.name,
                    timezone = excluded.timezone,
                    is_active = excluded.is_active
                """,
                (seller.id, seller.user_id, seller.amazon_seller_id, seller.marketplace_id,
                 seller.name, seller.timezone, int(seller.is_active)),
            )
        return seller

    def add_asins(self, seller_id: int, asins: Iterable[str]) -> None:
        with self._write() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO seller_asins (seller_id, asin) VALUES (?, ?)",
                [(seller_id, asin) for asin in asins],
            )

    # Row mapping

    @staticmethod
    def _seller(row: sqlite3.Row) -> Seller:
        return Seller(
            id=row["id"],
            user_id=row["user_id"],
            amazon_seller_id=row["amazon_seller_id"],
            marketplace_id=row["marketplace_id"],
            name=row["name"],
            timezone=row["timezone"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _seller_asin(row: sqlite3.Row) -> SellerAsin:
        record = SellerAsin(seller_id=row["seller_id"], asin=row["asin"], is_active=bool(row["is_active"]))
        for report_type in ReportType:
            p = report_type.field_prefix
            if row[f"{p}_pull_status"] is not None:
                record.statuses[report_type] = AsinPullStatus(row[f"{p}_pull_status"])
            started = _parse_dt(row[f"{p}_pull_started_at"])
            if started is not None:
                record.last_pull_started[report_type] = started
            ended = _parse_dt(row[f"{p}_pull_ended_at"])
            if ended is not None:
                record.last_pull_ended[report_type] = ended
        return record

    @staticmethod
    def _work_unit(row: sqlite3.Row) -> WorkUnit:
        types: Dict[ReportType, ReportTypeState] = {}
        for report_type in ReportType:
            p = report_type.field_prefix
            if row[f"{p}_range"] is None:
                continue
            types[report_type] = ReportTypeState(
                date_range=_parse_range(row[f"{p}_range"]),
                pull_status=PullStatus(row[f"{p}_pull_status"]),
                phase_status=PhaseStatus(row[f"{p}_phase_status"]),
                retry_count=row[f"{p}_retry_count"],
                recovery_attempts=row[f"{p}_recovery_attempts"],
                started_at=_parse_dt(row[f"{p}_started_at"]),
                ended_at=_parse_dt(row[f"{p}_ended_at"]),
            )
        return WorkUnit(
            id=row["id"],
            seller_id=row["seller_id"],
            amazon_seller_id=row["amazon_seller_id"],
            marketplace_id=row["marketplace_id"],
            asin_list=row["asin_list"],
            user_id=row["user_id"],
            run_id=row["run_id"],
            cron_running_status=CronRunningStatus(row["cron_running_status"]),
            types=types,
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _type_values(unit: WorkUnit) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for report_type in ReportType:
            p = report_type.field_prefix
            state = unit.types.get(report_type)
            if state is None:
                values.update({f"{p}_{c}": None for c in TYPE_COLUMNS})
                values.update({
                    f"{p}_pull_status": int(PullStatus.PENDING),
                    f"{p}_phase_status": int(PhaseStatus.NOT_STARTED),
                    f"{p}_retry_count": 0,
                    f"{p}_recovery_attempts": 0,
                })
                continue
            values.update({
                f"{p}_range": _range_text(state.date_range),
                f"{p}_pull_status": int(state.pull_status),
                f"{p}_phase_status": int(state.phase_status),
                f"{p}_retry_count": state.retry_count,
                f"{p}_recovery_attempts": state.recovery_attempts,
                f"{p}_started_at": _iso(state.started_at),
                f"{p}_ended_at": _iso(state.ended_at),
            })
        return values

    @staticmethod
    def _activity(row: sqlite3.Row) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=row["id"],
            work_unit_id=row["work_unit_id"],
            amazon_seller_id=row["amazon_seller_id"],
            report_type=ReportType(row["report_type"]),
            action=row["action"],
            status=ActivityStatus(row["status"]),
            message=row["message"],
            report_id=row["report_id"],
            document_id=row["document_id"],
            retry_count=row["retry_count"],
            execution_time=row["execution_time"],
            date_range=_parse_range(row["date_range"]),
            created_at=_parse_dt(row["created_at"]),
        )

    @staticmethod
    def _download(row: sqlite3.Row) -> DownloadRecord:
        return DownloadRecord(
            id=row["id"],
            work_unit_id=row["work_unit_id"],
            report_type=ReportType(row["report_type"]),
            report_id=row["report_id"],
            document_id=row["document_id"],
            date_range=_parse_range(row["date_range"]),
            status=DownloadStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            file_path=row["file_path"],
            file_size=row["file_size"],
            error=row["error"],
            imported=bool(row["imported"]),
            import_error=row["import_error"],
            completed_at=_parse_dt(row["completed_at"]),
        )

    # Sellers and ASINs

    async def list_user_ids(self) -> List[int]:
        def query() -> List[int]:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT DISTINCT user_id FROM sellers WHERE is_active = 1 ORDER BY user_id"
                ).fetchall()
            return [row["user_id"] for row in rows]
        return await asyncio.to_thread(query)

    async def list_sellers(
        self, user_id: Optional[int] = None, seller_id: Optional[int] = None
    ) -> List[Seller]:
        def query() -> List[Seller]:
            sql = "SELECT * FROM sellers WHERE is_active = 1"
            params: List[Any] = []
            if user_id is not None:
                sql += " AND user_id = ?"
                params.append(user_id)
            if seller_id is not None:
                sql += " AND id = ?"
                params.append(seller_id)
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY id", params).fetchall()
            return [self._seller(row) for row in rows]
        return await asyncio.to_thread(query)

    async def get_seller(self, seller_id: int) -> Optional[Seller]:
        def query() -> Optional[Seller]:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sellers WHERE id = ?", (seller_id,)).fetchone()
            return self._seller(row) if row else None
        return await asyncio.to_thread(query)

    async def list_seller_asins(self, seller_id: int) -> List[SellerAsin]:
        def query() -> List[SellerAsin]:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM seller_asins WHERE seller_id = ? ORDER BY asin", (seller_id,)
                ).fetchall()
            return [self._seller_asin(row) for row in rows]
        return await asyncio.to_thread(query)

    async def update_asin_status(
        self,
        seller_id: int,
        asins: Iterable[str],
        report_type: ReportType,
        status: AsinPullStatus,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> int:
        p = report_type.field_prefix
        assignments = [f"{p}_pull_status = ?"]
        values: List[Any] = [int(status)]
        if started_at is not None:
            assignments.append(f"{p}_pull_started_at = ?")
            values.append(_iso(started_at))
        if ended_at is not None:
            assignments.append(f"{p}_pull_ended_at = ?")
            values.append(_iso(ended_at))
        sql = f"UPDATE seller_asins SET {', '.join(assignments)} WHERE seller_id = ? AND asin = ?"
        asin_list = list(asins)

        def write() -> int:
            updated = 0
            with self._write() as conn:
                for asin in asin_list:
                    updated += conn.execute(sql, (*values, seller_id, asin)).rowcount
            return updated
        return await asyncio.to_thread(write)

    # Watermarks

    async def get_watermark(self, seller_id: int, report_type: ReportType) -> Optional[date]:
        def query() -> Optional[date]:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT last_pull_date FROM watermarks WHERE seller_id = ? AND report_type = ?",
                    (seller_id, report_type.value),
                ).fetchone()
            return date.fromisoformat(row["last_pull_date"]) if row else None
        return await asyncio.to_thread(query)

    async def set_watermark(self, seller_id: int, report_type: ReportType, value: date) -> None:
        def write() -> None:
            with self._write() as conn:
                conn.execute(
                    """
                    INSERT INTO watermarks (seller_id, report_type, last_pull_date) VALUES (?, ?, ?)
                    ON CONFLICT(seller_id, report_type) DO UPDATE SET last_pull_date = excluded.last_pull_date
                    """,
                    (seller_id, report_type.value, value.isoformat()),
                )
        await asyncio.to_thread(write)

    # Work units

    async def create_work_unit(self, unit: WorkUnit) -> WorkUnit:
        def write() -> int:
            now = _iso(self._now())
            values = {
                "seller_id": unit.seller_id,
                "amazon_seller_id": unit.amazon_seller_id,
                "marketplace_id": unit.marketplace_id,
                "asin_list": unit.asin_list,
                "user_id": unit.user_id,
                "run_id": unit.run_id,
                "cron_running_status": int(unit.cron_running_status),
                **self._type_values(unit),
                "created_at": now,
                "updated_at": now,
            }
            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            with self._write() as conn:
                cursor = conn.execute(
                    f"INSERT INTO work_units ({columns}) VALUES ({placeholders})", list(values.values())
                )
                return cursor.lastrowid
        unit_id = await asyncio.to_thread(write)
        return await self.get_work_unit(unit_id)

    async def get_work_unit(self, work_unit_id: int) -> Optional[WorkUnit]:
        def query() -> Optional[WorkUnit]:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM work_units WHERE id = ?", (work_unit_id,)).fetchone()
            return self._work_unit(row) if row else None
        return await asyncio.to_thread(query)

    async def save_work_unit(self, unit: WorkUnit) -> WorkUnit:
        def write() -> int:
            values = {
                "cron_running_status": int(unit.cron_running_status),
                **self._type_values(unit),
                "updated_at": _iso(self._now()),
            }
            assignments = ", ".join(f"{column} = ?" for column in values)
            with self._write() as conn:
                return conn.execute(
                    f"UPDATE work_units SET {assignments} WHERE id = ?", [*values.values(), unit.id]
                ).rowcount
        if not await asyncio.to_thread(write):
            raise NotFoundError(f"Work unit {unit.id} not found")
        return await self.get_work_unit(unit.id)

    async def find_active_work_unit(
        self,
        seller_id: int,
        asin_list: str,
        report_type: ReportType,
        date_range: DateRange,
    ) -> Optional[WorkUnit]:
        p = report_type.field_prefix

        def query() -> Optional[WorkUnit]:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM work_units
                    WHERE seller_id = ? AND asin_list = ? AND {p}_range = ?
                    ORDER BY id
                    """,
                    (seller_id, asin_list, str(date_range)),
                ).fetchall()
            for row in rows:
                unit = self._work_unit(row)
                if unit.types[report_type].is_active:
                    return unit
            return None
        return await asyncio.to_thread(query)

    async def list_work_units(
        self, run_id: Optional[str] = None, seller_id: Optional[int] = None
    ) -> List[WorkUnit]:
        def query() -> List[WorkUnit]:
            sql = "SELECT * FROM work_units WHERE 1 = 1"
            params: List[Any] = []
            if run_id is not None:
                sql += " AND run_id = ?"
                params.append(run_id)
            if seller_id is not None:
                sql += " AND seller_id = ?"
                params.append(seller_id)
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY id", params).fetchall()
            return [self._work_unit(row) for row in rows]
        return await asyncio.to_thread(query)

    async def find_stuck_work_units(self, cutoff: datetime) -> List[WorkUnit]:
        statuses = [int(s) for s in RECOVERABLE_CRON_STATUSES]

        def query() -> List[WorkUnit]:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM work_units
                    WHERE cron_running_status IN ({', '.join('?' for _ in statuses)})
                    ORDER BY id
                    """,
                    statuses,
                ).fetchall()
            stuck = []
            for row in rows:
                unit = self._work_unit(row)
                if unit.updated_at is None or unit.updated_at > cutoff:
                    continue
                if any(
                    s.phase_status in ACTIVE_PHASES
                    and s.pull_status in (PullStatus.PENDING, PullStatus.NEEDS_RETRY)
                    for s in unit.types.values()
                ):
                    stuck.append(unit)
            return stuck
        return await asyncio.to_thread(query)

    async def get_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        p = report_type.field_prefix

        def query() -> int:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {p}_retry_count AS retry_count FROM work_units "
                    f"WHERE id = ? AND {p}_range IS NOT NULL",
                    (work_unit_id,),
                ).fetchone()
            return row["retry_count"] if row else 0
        return await asyncio.to_thread(query)

    async def increment_retry_count(self, work_unit_id: int, report_type: ReportType) -> int:
        p = report_type.field_prefix

        def write() -> Optional[int]:
            with self._write() as conn:
                updated = conn.execute(
                    f"UPDATE work_units SET {p}_retry_count = {p}_retry_count + 1 "
                    f"WHERE id = ? AND {p}_range IS NOT NULL",
                    (work_unit_id,),
                ).rowcount
                if not updated:
                    return None
                row = conn.execute(
                    f"SELECT {p}_retry_count AS retry_count FROM work_units WHERE id = ?",
                    (work_unit_id,),
                ).fetchone()
                return row["retry_count"]
        count = await asyncio.to_thread(write)
        if count is None:
            raise NotFoundError(f"Work unit {work_unit_id} has no {report_type.value} state")
        return count

    # Activity log

    async def log_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        def write() -> ActivityLogEntry:
            created_at = self._now()
            with self._write() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO activity_log (work_unit_id, amazon_seller_id, report_type, action, status,
                        message, report_id, document_id, retry_count, execution_time, date_range, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entry.work_unit_id, entry.amazon_seller_id, entry.report_type.value, entry.action,
                     int(entry.status), entry.message, entry.report_id, entry.document_id,
                     entry.retry_count, entry.execution_time, _range_text(entry.date_range),
                     _iso(created_at)),
                )
            stored = ActivityLogEntry(**{**entry.__dict__, "id": cursor.lastrowid, "created_at": created_at})
            return stored
        return await asyncio.to_thread(write)

    async def list_activity(
        self, work_unit_id: int, report_type: Optional[ReportType] = None
    ) -> List[ActivityLogEntry]:
        def query() -> List[ActivityLogEntry]:
            sql = "SELECT * FROM activity_log WHERE work_unit_id = ?"
            params: List[Any] = [work_unit_id]
            if report_type is not None:
                sql += " AND report_type = ?"
                params.append(report_type.value)
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY id", params).fetchall()
            return [self._activity(row) for row in rows]
        return await asyncio.to_thread(query)

    async def get_latest_report_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        date_range: Optional[DateRange] = None,
    ) -> Optional[str]:
        def query() -> Optional[str]:
            sql = ("SELECT report_id FROM activity_log "
                   "WHERE work_unit_id = ? AND report_type = ? AND report_id IS NOT NULL")
            params: List[Any] = [work_unit_id, report_type.value]
            if date_range is not None:
                sql += " AND date_range = ?"
                params.append(str(date_range))
            with self._connect() as conn:
                row = conn.execute(sql + " ORDER BY id DESC LIMIT 1", params).fetchone()
            return row["report_id"] if row else None
        return await asyncio.to_thread(query)

    async def get_latest_document_id(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[str]:
        def query() -> Optional[str]:
            sql = ("SELECT document_id FROM activity_log "
                   "WHERE work_unit_id = ? AND report_type = ? AND document_id IS NOT NULL")
            params: List[Any] = [work_unit_id, report_type.value]
            if report_id is not None:
                sql += " AND report_id = ?"
                params.append(report_id)
            with self._connect() as conn:
                row = conn.execute(sql + " ORDER BY id DESC LIMIT 1", params).fetchone()
            return row["document_id"] if row else None
        return await asyncio.to_thread(query)

    # Downloads and imports

    async def save_download_record(self, record: DownloadRecord) -> DownloadRecord:
        values = {
            "work_unit_id": record.work_unit_id,
            "report_type": record.report_type.value,
            "report_id": record.report_id,
            "document_id": record.document_id,
            "date_range": _range_text(record.date_range),
            "status": record.status.value,
            "attempts": record.attempts,
            "max_attempts": record.max_attempts,
            "file_path": record.file_path,
            "file_size": record.file_size,
            "error": record.error,
            "imported": int(record.imported),
            "import_error": record.import_error,
            "completed_at": _iso(record.completed_at),
        }

        def write() -> int:
            with self._write() as conn:
                if record.id is None:
                    cursor = conn.execute(
                        f"INSERT INTO download_records ({', '.join(values)}) "
                        f"VALUES ({', '.join('?' for _ in values)})",
                        list(values.values()),
                    )
                    return cursor.lastrowid
                conn.execute(
                    f"UPDATE download_records SET {', '.join(f'{c} = ?' for c in values)} WHERE id = ?",
                    [*values.values(), record.id],
                )
                return record.id
        record_id = await asyncio.to_thread(write)
        return DownloadRecord(**{**record.__dict__, "id": record_id})

    async def get_download_record(
        self,
        work_unit_id: int,
        report_type: ReportType,
        report_id: Optional[str] = None,
    ) -> Optional[DownloadRecord]:
        def query() -> Optional[DownloadRecord]:
            sql = "SELECT * FROM download_records WHERE work_unit_id = ? AND report_type = ?"
            params: List[Any] = [work_unit_id, report_type.value]
            if report_id is not None:
                sql += " AND report_id = ?"
                params.append(report_id)
            with self._connect() as conn:
                row = conn.execute(sql + " ORDER BY id DESC LIMIT 1", params).fetchone()
            return self._download(row) if row else None
        return await asyncio.to_thread(query)

    async def import_rows(self, record: DownloadRecord, rows: List[Dict[str, Any]]) -> int:
        """Replace the rows imported for this download; re-imports never duplicate."""
        def write() -> int:
            with self._write() as conn:
                conn.execute("DELETE FROM report_rows WHERE download_id = ?", (record.id,))
                conn.executemany(
                    "INSERT INTO report_rows (download_id, work_unit_id, report_type, payload) "
                    "VALUES (?, ?, ?, ?)",
                    [(record.id, record.work_unit_id, record.report_type.value,
                      json.dumps(row, default=str)) for row in rows],
                )
            return len(rows)
        return await asyncio.to_thread(write)

    async def count_imported_rows(self, download_id: int) -> int:
        def query() -> int:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM report_rows WHERE download_id = ?", (download_id,)
                ).fetchone()
            return row["n"]
        return await asyncio.to_thread(query)
