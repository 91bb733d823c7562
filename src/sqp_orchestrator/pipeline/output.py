"""JSON artifact writer for downloaded report documents.

Artifacts land under ``<download_directory>/<seller>/<type>/`` and are named
after the report range and report id so a re-download of the same report
overwrites its own file rather than creating a sibling.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Union

from sqp_orchestrator.models.data_models import DownloadRecord


@dataclass
class SavedArtifact:
    path: str
    size: int
    rows: int


class JSONArtifactWriter:
    """Saves report rows as JSON files and reads them back for import."""

    def __init__(self, base_directory: Union[str, Path] = "downloads"):
        self.base_directory = Path(base_directory)

    def artifact_path(self, amazon_seller_id: str, record: DownloadRecord) -> Path:
        """Deterministic file location for a download record."""
        range_part = (
            f"{record.date_range.start.isoformat()}_{record.date_range.end.isoformat()}"
            if record.date_range else "unknown-range"
        )
        filename = f"{range_part}_{record.report_id}.json"
        return self.base_directory / amazon_seller_id / record.report_type.field_prefix / filename

    def save(
        self,
        amazon_seller_id: str,
        record: DownloadRecord,
        rows: List[Dict[str, Any]],
    ) -> SavedArtifact:
        """
        Save rows to the record's artifact path.

        Creates parent directories if they don't exist. Uses 2-space
        indentation for readability.

        Args:
            amazon_seller_id: Seller the report belongs to
            record: Download record the rows came from
            rows: Parsed report rows

        Returns:
            SavedArtifact with path, size in bytes and row count
        """
        output_path = self.artifact_path(amazon_seller_id, record)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(rows, f, indent=2, ensure_ascii=False)

        return SavedArtifact(path=str(output_path), size=output_path.stat().st_size, rows=len(rows))

    def load(self, path: Union[str, Path]) -> List[Dict[str, Any]]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"Artifact {path} does not contain a list of rows")
        return data
