"""Backup-ready notifications.

Delivery mode "log" only records what would be sent; "deliver" sends mail
over SMTP. Sending is fire-and-forget for callers: ``send_backup_ready``
returns a result instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import re
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Optional


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class NotificationResult:
    status: str  # sent | failed | skipped
    error: Optional[str] = None
    link: Optional[str] = None


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_PATTERN.match(value.strip()))


class BackupNotifier:
    def __init__(
        self,
        *,
        app_base_url: str | None,
        delivery_mode: str = "log",
        smtp_host: str | None = None,
        smtp_port: int | None = None,
        smtp_username: str | None = None,
        smtp_password: str | None = None,
        smtp_use_tls: bool = True,
        from_address: str = "no-reply@socialvault.local",
    ):
        self.app_base_url = (app_base_url or "").strip().rstrip("/")
        self.delivery_mode = (delivery_mode or "log").strip().lower()
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_address = from_address

    @classmethod
    def from_settings(cls, settings) -> "BackupNotifier":
        return cls(
            app_base_url=settings.APP_BASE_URL,
            delivery_mode=settings.NOTIFICATION_DELIVERY_MODE,
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_username=settings.SMTP_USERNAME,
            smtp_password=settings.SMTP_PASSWORD,
            smtp_use_tls=settings.SMTP_USE_TLS,
            from_address=settings.SMTP_FROM_ADDRESS,
        )

    def backup_link(self, backup_id: str) -> str:
        return f"{self.app_base_url}/dashboard/backups/{backup_id}"

    def _send_mail(self, to_address: str, subject: str, body: str) -> None:
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to_address

        with smtplib.SMTP(self.smtp_host, int(self.smtp_port or 587)) as server:
            if self.smtp_use_tls:
                server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)

    async def send_backup_ready(self, *, email: str, backup_id: str) -> NotificationResult:
        email = (email or "").strip().lower()
        if not is_valid_email(email):
            return NotificationResult(status="skipped", error="No valid email address")
        if not re.match(r"^https?://", self.app_base_url, re.IGNORECASE):
            return NotificationResult(status="failed", error="APP_BASE_URL is required for backup notifications")

        link = self.backup_link(backup_id)
        subject = "Your backup is ready"
        body = f"Your backup has finished processing.\n\nView it here: {link}\n"

        if self.delivery_mode != "deliver":
            logger.info("[Notify] (log mode) backup-ready email to %s: %s", email, link)
            return NotificationResult(status="sent", link=link)

        if not self.smtp_host:
            return NotificationResult(status="failed", error="SMTP_HOST is not configured")

        try:
            await asyncio.to_thread(self._send_mail, email, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("[Notify] Failed to send backup-ready email for %s: %s", backup_id, e)
            return NotificationResult(status="failed", error=str(e))
        return NotificationResult(status="sent", link=link)
