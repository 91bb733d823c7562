"""Structured logging for orchestrator monitoring."""

import json
import logging
from typing import Any, Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "sqp_orchestrator", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        """
        Log structured event.

        Standard keys: event, seller, work_unit_id, report_type, report_id,
                      attempt, retry_count, status, seconds, cb_state, error
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.WARNING, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.ERROR, **kwargs)

    def phase_attempt(self, action: str, work_unit_id: int, report_type: str, attempt: int) -> None:
        self.log("phase_attempt", action=action, work_unit_id=work_unit_id,
                 report_type=report_type, attempt=attempt)

    def phase_retry(self, action: str, work_unit_id: int, report_type: str,
                    attempt: int, retry_count: int, error: str) -> None:
        self.log("phase_retry", action=action, work_unit_id=work_unit_id,
                 report_type=report_type, attempt=attempt, retry_count=retry_count, error=error)

    def backoff_wait(self, seconds: float, reason: str, **kwargs: Any) -> None:
        self.log("backoff_wait", seconds=seconds, reason=reason, **kwargs)

    def circuit_breaker_state(self, key: str, state: str) -> None:
        self.log("circuit_breaker", key=key, cb_state=state)

    def rate_limited(self, key: str, wait_seconds: float) -> None:
        self.log("rate_limited", key=key, seconds=wait_seconds)

    def report_status(self, work_unit_id: int, report_type: str, report_id: str,
                      status: str, attempt: int) -> None:
        self.log("report_status", work_unit_id=work_unit_id, report_type=report_type,
                 report_id=report_id, status=status, attempt=attempt)

    def download_complete(self, work_unit_id: int, report_type: str, rows: int,
                          file_path: Optional[str]) -> None:
        self.log("download_complete", work_unit_id=work_unit_id, report_type=report_type,
                 rows=rows, file_path=file_path)

    def stuck_unit(self, work_unit_id: int, report_type: str, phase: str, idle_seconds: float) -> None:
        self.log("stuck_unit", work_unit_id=work_unit_id, report_type=report_type,
                 phase=phase, idle_seconds=round(idle_seconds, 1))

    def run_complete(self, seller: Optional[str], work_units: int, elapsed_ms: float) -> None:
        self.log("run_complete", seller=seller, work_units=work_units, elapsed_ms=elapsed_ms)

    def import_failed(self, work_unit_id: int, report_type: str, report_id: str, error: str) -> None:
        self.error("import_failed", work_unit_id=work_unit_id, report_type=report_type,
                   report_id=report_id, error=error)

    def notification_sent(self, work_unit_id: int, report_type: str, is_fatal: bool,
                          retry_count: int) -> None:
        self.log("notification_sent", work_unit_id=work_unit_id, report_type=report_type,
                 is_fatal=is_fatal, retry_count=retry_count)

    def notification_failed(self, work_unit_id: int, report_type: str, error: str) -> None:
        self.error("notification_failed", work_unit_id=work_unit_id, report_type=report_type,
                   error=error)
