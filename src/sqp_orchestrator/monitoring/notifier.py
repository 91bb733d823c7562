"""Failure notifications over email.

Notification delivery is fire-and-forget: every failure inside this module
is logged and swallowed so it can never change the outcome of a phase.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Protocol, Sequence

from sqp_orchestrator.models.data_models import ActivityLogEntry, ActivityStatus, ReportType
from sqp_orchestrator.monitoring.logger import StructuredLogger
from sqp_orchestrator.storage.base import ReportStore


class EmailSender(Protocol):
    async def send(
        self,
        subject: str,
        body: str,
        to: Sequence[str],
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
    ) -> None:
        ...


class SmtpEmailSender:
    """Sends plain-text mail with smtplib; port 465 uses implicit SSL, others STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    async def send(
        self,
        subject: str,
        body: str,
        to: Sequence[str],
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
    ) -> None:
        await asyncio.to_thread(self._send_sync, subject, body, list(to), list(cc), list(bcc))

    def _send_sync(self, subject: str, body: str, to: List[str], cc: List[str], bcc: List[str]) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = ", ".join(to)
        if cc:
            message["Cc"] = ", ".join(cc)
        message.set_content(body)

        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.port != 465 and self.username:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message, to_addrs=to + cc + bcc)


def build_subject(report_type: ReportType, retry_count: int, is_fatal: bool) -> str:
    if is_fatal:
        return f"SQP Cron FATAL Error [{report_type.value}] - No retries"
    return f"SQP Cron Failed after {retry_count} attempts [{report_type.value}]"


class FailureNotifier:
    """Records and emails failure notifications for a (WorkUnit, type)."""

    def __init__(
        self,
        store: ReportStore,
        sender: Optional[EmailSender] = None,
        to: Sequence[str] = (),
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.sender = sender
        self.to = list(to)
        self.cc = list(cc)
        self.bcc = list(bcc)
        self.logger = logger or StructuredLogger("sqp_orchestrator.notifier")

    async def send_failure_notification(
        self,
        work_unit_id: int,
        amazon_seller_id: str,
        report_type: ReportType,
        message: str,
        retry_count: int,
        report_id: Optional[str] = None,
        is_fatal: bool = False,
    ) -> bool:
        """
        Notify about a failed report type.

        Args:
            work_unit_id: WorkUnit the failure belongs to
            amazon_seller_id: Seller the report was requested for
            report_type: Failed report type
            message: Failure description
            retry_count: Accumulated retries (0 for fatal statuses)
            report_id: Provider report id when known
            is_fatal: True for FATAL/CANCELLED/unknown statuses

        Returns:
            True when an email was delivered
        """
        subject = build_subject(report_type, retry_count, is_fatal)
        body = "\n".join([
            f"Work unit: {work_unit_id}",
            f"Seller: {amazon_seller_id}",
            f"Report type: {report_type.value}",
            f"Report id: {report_id or '-'}",
            f"Retry count: {retry_count}",
            f"Fatal: {'yes' if is_fatal else 'no'}",
            "",
            message,
        ])

        delivered = False
        try:
            if self.sender is None or not self.to:
                self.logger.warning("notification_skipped", reason="email not configured",
                                    work_unit_id=work_unit_id, report_type=report_type.value)
            else:
                await self.sender.send(subject, body, self.to, self.cc, self.bcc)
                delivered = True
                self.logger.notification_sent(work_unit_id, report_type.value, is_fatal, retry_count)
        except Exception as e:
            self.logger.notification_failed(work_unit_id, report_type.value, str(e))

        try:
            await self.store.log_activity(ActivityLogEntry(
                work_unit_id=work_unit_id,
                amazon_seller_id=amazon_seller_id,
                report_type=report_type,
                action="Failure Notification",
                status=ActivityStatus.SUCCEEDED if delivered else ActivityStatus.FAILED,
                message=subject,
                report_id=report_id,
                retry_count=retry_count,
            ))
        except Exception as e:
            self.logger.error("notification_log_failed", work_unit_id=work_unit_id, error=str(e))
        return delivered
