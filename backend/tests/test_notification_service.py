"""Tests for backup-ready notifications."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from socialvault.services.notification_service import BackupNotifier, is_valid_email


def test_is_valid_email():
    assert is_valid_email("a@b.co") is True
    assert is_valid_email(" a@b.co ") is True
    assert is_valid_email("nope") is False
    assert is_valid_email(None) is False


@pytest.mark.asyncio
async def test_log_mode_reports_sent_with_link():
    notifier = BackupNotifier(app_base_url="https://app.example.test/", delivery_mode="log")

    result = await notifier.send_backup_ready(email="Owner@Example.com", backup_id="b1")

    assert result.status == "sent"
    assert result.link == "https://app.example.test/dashboard/backups/b1"


@pytest.mark.asyncio
async def test_invalid_email_is_skipped():
    notifier = BackupNotifier(app_base_url="https://app.example.test")
    result = await notifier.send_backup_ready(email="", backup_id="b1")
    assert result.status == "skipped"


@pytest.mark.asyncio
async def test_missing_base_url_fails():
    notifier = BackupNotifier(app_base_url=None)
    result = await notifier.send_backup_ready(email="a@b.co", backup_id="b1")
    assert result.status == "failed"
    assert "APP_BASE_URL" in result.error


@pytest.mark.asyncio
async def test_deliver_mode_requires_smtp_host():
    notifier = BackupNotifier(app_base_url="https://app.example.test", delivery_mode="deliver")
    result = await notifier.send_backup_ready(email="a@b.co", backup_id="b1")
    assert result.status == "failed"
    assert "SMTP_HOST" in result.error


@pytest.mark.asyncio
async def test_deliver_mode_sends_over_smtp():
    notifier = BackupNotifier(
        app_base_url="https://app.example.test",
        delivery_mode="deliver",
        smtp_host="smtp.example.test",
        smtp_port=2525,
        smtp_username="user",
        smtp_password="pass",
    )
    server = MagicMock()
    with patch("socialvault.services.notification_service.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        result = await notifier.send_backup_ready(email="a@b.co", backup_id="b1")

    assert result.status == "sent"
    smtp.assert_called_once_with("smtp.example.test", 2525)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("user", "pass")
    message = server.send_message.call_args.args[0]
    assert message["To"] == "a@b.co"
    assert "https://app.example.test/dashboard/backups/b1" in message.get_payload()


@pytest.mark.asyncio
async def test_smtp_errors_become_failed_results():
    notifier = BackupNotifier(app_base_url="https://app.example.test", delivery_mode="deliver", smtp_host="smtp")
    with patch("socialvault.services.notification_service.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
        result = await notifier.send_backup_ready(email="a@b.co", backup_id="b1")
    assert result.status == "failed"
