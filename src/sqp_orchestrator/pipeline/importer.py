"""Import trigger invoked once a download record is COMPLETED."""

from typing import Optional, Protocol

from sqp_orchestrator.models.data_models import DownloadRecord, DownloadStatus, ImportResult
from sqp_orchestrator.models.errors import InvalidTransitionError
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.pipeline.output import JSONArtifactWriter
from sqp_orchestrator.storage.base import ReportStore


class ArtifactImporter(Protocol):
    async def import_downloaded_artifact(self, record: DownloadRecord, has_data: bool = True) -> ImportResult:
        ...


class JsonArtifactImporter:
    """Loads a saved JSON artifact and hands its rows to the store."""

    def __init__(
        self,
        store: ReportStore,
        writer: JSONArtifactWriter,
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.writer = writer
        self.logger = logger

    async def import_downloaded_artifact(self, record: DownloadRecord, has_data: bool = True) -> ImportResult:
        """
        Import a completed download.

        Args:
            record: COMPLETED download record
            has_data: False when the report had no rows; nothing is read

        Returns:
            ImportResult with the number of imported rows

        Raises:
            InvalidTransitionError: If the download is not COMPLETED
        """
        if record.status is not DownloadStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Cannot import download in status {record.status.value}",
                details={"report_id": record.report_id},
            )
        if not has_data or not record.file_path:
            if self.logger:
                self.logger.log("import_skipped", report_id=record.report_id, reason="no data")
            return ImportResult(imported_rows=0)

        rows = self.writer.load(record.file_path)
        imported = await self.store.import_rows(record, rows)
        if self.logger:
            self.logger.log("import_complete", report_id=record.report_id, rows=imported)
        return ImportResult(imported_rows=imported)
