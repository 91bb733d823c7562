"""Unit tests for failure notifications."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sqp_orchestrator.models.data_models import ActivityStatus, ReportType
from sqp_orchestrator.monitoring.notifier import FailureNotifier, SmtpEmailSender, build_subject


class TestBuildSubject:

    def test_retry_exhaustion_subject(self):
        assert build_subject(ReportType.WEEK, 5, is_fatal=False) == "SQP Cron Failed after 5 attempts [WEEK]"

    def test_fatal_subject(self):
        assert build_subject(ReportType.QUARTER, 0, is_fatal=True) == "SQP Cron FATAL Error [QUARTER] - No retries"


class TestFailureNotifier:

    @pytest.mark.asyncio
    async def test_sends_email_and_logs_delivery(self, store):
        sender = AsyncMock()
        notifier = FailureNotifier(store, sender, to=["ops@example.com"], cc=["lead@example.com"])

        delivered = await notifier.send_failure_notification(
            7, "A1SELLER", ReportType.MONTH, "Status check exhausted", retry_count=5, report_id="R1",
        )

        assert delivered is True
        subject, body, to, cc, bcc = sender.send.await_args.args
        assert subject == "SQP Cron Failed after 5 attempts [MONTH]"
        assert "Report id: R1" in body
        assert "Status check exhausted" in body
        assert to == ["ops@example.com"]
        assert cc == ["lead@example.com"]
        entries = await store.list_activity(7)
        assert entries[0].action == "Failure Notification"
        assert entries[0].status == ActivityStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_missing_sender_is_logged_not_raised(self, store):
        notifier = FailureNotifier(store, sender=None)

        delivered = await notifier.send_failure_notification(
            7, "A1SELLER", ReportType.WEEK, "FATAL", retry_count=0, is_fatal=True,
        )

        assert delivered is False
        entries = await store.list_activity(7)
        assert entries[0].status == ActivityStatus.FAILED
        assert entries[0].message == "SQP Cron FATAL Error [WEEK] - No retries"

    @pytest.mark.asyncio
    async def test_sender_error_is_swallowed(self, store):
        sender = AsyncMock()
        sender.send.side_effect = ConnectionRefusedError("smtp down")
        notifier = FailureNotifier(store, sender, to=["ops@example.com"])

        delivered = await notifier.send_failure_notification(
            7, "A1SELLER", ReportType.WEEK, "boom", retry_count=3,
        )

        assert delivered is False
        assert (await store.list_activity(7))[0].status == ActivityStatus.FAILED

    @pytest.mark.asyncio
    async def test_delivery_outcomes_are_logged(self, store):
        logger = MagicMock()
        sender = AsyncMock()
        notifier = FailureNotifier(store, sender, to=["ops@example.com"], logger=logger)

        await notifier.send_failure_notification(7, "A1SELLER", ReportType.WEEK, "FATAL", retry_count=0, is_fatal=True)
        sender.send.side_effect = ConnectionRefusedError("smtp down")
        await notifier.send_failure_notification(8, "A1SELLER", ReportType.MONTH, "boom", retry_count=3)

        logger.notification_sent.assert_called_once_with(7, "WEEK", True, 0)
        logger.notification_failed.assert_called_once_with(8, "MONTH", "smtp down")

    @pytest.mark.asyncio
    async def test_store_error_is_swallowed(self):
        store = MagicMock()
        store.log_activity = AsyncMock(side_effect=RuntimeError("db locked"))
        notifier = FailureNotifier(store, AsyncMock(), to=["ops@example.com"])

        assert await notifier.send_failure_notification(
            7, "A1SELLER", ReportType.WEEK, "boom", retry_count=3,
        ) is True


class TestSmtpEmailSender:

    @pytest.mark.asyncio
    async def test_starttls_login_and_send(self):
        with patch("sqp_orchestrator.monitoring.notifier.smtplib.SMTP") as smtp_cls:
            smtp = smtp_cls.return_value
            sender = SmtpEmailSender("smtp.example.com", 587, "bot@example.com", "secret")

            await sender.send("subject", "body", ["ops@example.com"], bcc=["audit@example.com"])

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("bot@example.com", "secret")
        message = smtp.send_message.call_args.args[0]
        assert message["From"] == "bot@example.com"
        assert message["Subject"] == "subject"
        assert smtp.send_message.call_args.kwargs["to_addrs"] == ["ops@example.com", "audit@example.com"]

    @pytest.mark.asyncio
    async def test_port_465_uses_ssl(self):
        with patch("sqp_orchestrator.monitoring.notifier.smtplib.SMTP_SSL") as ssl_cls:
            smtp = ssl_cls.return_value
            sender = SmtpEmailSender("smtp.example.com", 465, "bot@example.com", "secret")

            await sender.send("subject", "body", ["ops@example.com"])

        smtp.starttls.assert_not_called()
        smtp.login.assert_called_once()
