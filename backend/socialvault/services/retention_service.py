"""Guest retention and ownership transfer.

Backups created without an account carry a ``retention`` marker
``{"mode": "guest_30d", "expires_at": ...}`` and are purged once expired.
Claiming them into an account removes the marker.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.backup_job import BackupJob
from socialvault.models.media_file import MediaFile
from socialvault.services.backup_cleanup_service import BackupCleanupService
from socialvault.services.object_store import ObjectStore


logger = logging.getLogger(__name__)

GUEST_RETENTION_MODE = "guest_30d"
ACCOUNT_RETENTION_MODE = "account"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_retention_marker(*, is_guest: bool, now: datetime | None = None, days: int = 30) -> dict[str, Any]:
    if not is_guest:
        return {"mode": ACCOUNT_RETENTION_MODE}
    expires_at = (now or _utcnow()) + timedelta(days=days)
    return {"mode": GUEST_RETENTION_MODE, "expires_at": expires_at.isoformat()}


def guest_retention_expiry(data: Any) -> Optional[datetime]:
    retention = (data or {}).get("retention") if isinstance(data, dict) else None
    if not isinstance(retention, dict) or retention.get("mode") != GUEST_RETENTION_MODE:
        return None
    return _parse_iso(retention.get("expires_at"))


def is_guest_backup_expired(data: Any, now: datetime | None = None) -> bool:
    expires_at = guest_retention_expiry(data)
    if expires_at is None:
        return False
    return expires_at <= (now or _utcnow())


def guest_backup_days_left(data: Any, now: datetime | None = None) -> Optional[int]:
    expires_at = guest_retention_expiry(data)
    if expires_at is None:
        return None
    remaining = (expires_at - (now or _utcnow())).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 86400)


def clear_guest_retention(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    return {k: v for k, v in data.items() if k != "retention"}


@dataclass(frozen=True)
class ClaimResult:
    moved: bool
    backups_claimed: int = 0
    media_rows_moved: int = 0
    jobs_moved: int = 0


@dataclass(frozen=True)
class GuestCleanupResult:
    checked: int = 0
    expired: int = 0
    deleted: int = 0
    failed: int = 0
    storage_files_deleted: int = 0
    storage_files_delete_failed: int = 0


class BackupRetentionService:
    def __init__(self, session: AsyncSession, object_store: ObjectStore):
        self.session = session
        self.object_store = object_store

    async def claim_guest_backups(self, *, guest_user_id: str, user_id: str) -> ClaimResult:
        """Move a guest session's backups, media rows and jobs to an account."""
        if not guest_user_id or guest_user_id == user_id:
            return ClaimResult(moved=False)

        res = await self.session.execute(select(Backup).where(Backup.user_id == guest_user_id))
        backups = list(res.scalars().all())
        for backup in backups:
            backup.user_id = user_id
            backup.data = clear_guest_retention(backup.data or {})

        media_res = await self.session.execute(
            update(MediaFile).where(MediaFile.user_id == guest_user_id).values(user_id=user_id)
        )
        jobs_res = await self.session.execute(
            update(BackupJob).where(BackupJob.user_id == guest_user_id).values(user_id=user_id)
        )
        if self.session.info.get("auto_commit", True):
            await self.session.commit()
        else:
            await self.session.flush()

        logger.info("[Retention] Claimed %s backups from guest %s into %s", len(backups), guest_user_id, user_id)
        return ClaimResult(
            moved=True,
            backups_claimed=len(backups),
            media_rows_moved=media_res.rowcount or 0,
            jobs_moved=jobs_res.rowcount or 0,
        )

    async def cleanup_expired_guest_backups(
        self,
        *,
        now: datetime | None = None,
        limit: int = 500,
    ) -> GuestCleanupResult:
        now = now or _utcnow()
        limit = max(1, min(1000, int(limit)))
        res = await self.session.execute(
            select(Backup.id, Backup.user_id, Backup.data)
            .where(Backup.data["retention"]["mode"].as_string() == GUEST_RETENTION_MODE)
            .order_by(Backup.created_at.asc())
            .limit(limit)
        )
        rows = res.all()
        expired = [(backup_id, owner) for backup_id, owner, data in rows if is_guest_backup_expired(data, now)]

        cleanup = BackupCleanupService(self.session, self.object_store)
        deleted = failed = files_deleted = files_failed = 0
        for backup_id, owner in expired:
            try:
                result = await cleanup.delete_backup(backup_id, expected_user_id=owner)
            except Exception:
                logger.exception("[Retention] Failed deleting expired guest backup %s", backup_id)
                await self.session.rollback()
                failed += 1
                continue
            if result.backup_deleted:
                deleted += 1
            files_deleted += result.storage_files_deleted
            files_failed += result.storage_files_delete_failed

        return GuestCleanupResult(
            checked=len(rows),
            expired=len(expired),
            deleted=deleted,
            failed=failed,
            storage_files_deleted=files_deleted,
            storage_files_delete_failed=files_failed,
        )
