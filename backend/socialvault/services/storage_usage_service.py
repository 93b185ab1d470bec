"""Storage usage accounting.

Byte totals per backup and per user. A backup's payload is measured with
its own accounting fields stripped, so recalculation is idempotent. At the
user level every storage path is billed once, however many backups
reference it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.media_file import MediaFile


logger = logging.getLogger(__name__)

ARCHIVE_PATH_PATTERN = re.compile(r"/archives/")

# Stats fields written by apply_storage_breakdown.
STORAGE_STAT_KEYS = (
    "media_files",
    "storage_payload_bytes",
    "storage_media_bytes",
    "storage_archive_bytes",
    "storage_total_bytes",
)

PathKind = Literal["archive", "media"]


@dataclass(frozen=True)
class BackupStorageBreakdown:
    payload_bytes: int
    media_bytes: int
    archive_bytes: int
    total_bytes: int
    media_files: int


@dataclass(frozen=True)
class UserStorageSummary:
    total_bytes: int
    payload_bytes: int
    media_bytes: int
    archive_bytes: int
    unique_file_count: int
    backups_count: int


@dataclass
class _PathUsage:
    size: int
    kind: PathKind


def _to_record(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_number(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number or number <= 0 or number == float("inf"):
        return 0
    return int(number)


def is_archive_path(path: str) -> bool:
    return bool(ARCHIVE_PATH_PATTERN.search(path or ""))


def archive_path_from_data(data: dict[str, Any]) -> Optional[str]:
    value = data.get("archive_file_path")
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def prune_storage_metadata(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of the payload without the fields the accountant itself writes."""
    pruned = dict(data)
    pruned.pop("storage", None)
    pruned.pop("file_size", None)

    stats = _to_record(pruned.get("stats"))
    if stats:
        stats = {k: v for k, v in stats.items() if k not in STORAGE_STAT_KEYS}
        pruned["stats"] = stats
    return pruned


def json_bytes(value: Any) -> int:
    try:
        encoded = json.dumps(value if value is not None else {}, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return 0
    return len(encoded.encode("utf-8"))


def _row_field(row: Any, name: str) -> Any:
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)


def backup_breakdown(backup_data: Any, media_rows: Iterable[Any]) -> BackupStorageBreakdown:
    """Byte breakdown for one backup from its payload and media rows."""
    data = _to_record(backup_data)
    payload_bytes = json_bytes(prune_storage_metadata(data))
    archive_path = archive_path_from_data(data)

    media_bytes = 0
    media_files = 0
    archive_bytes_from_rows = 0
    for row in media_rows or []:
        file_path = _row_field(row, "file_path")
        file_path = file_path if isinstance(file_path, str) else ""
        size = _positive_number(_row_field(row, "file_size"))

        if (archive_path and file_path == archive_path) or is_archive_path(file_path):
            archive_bytes_from_rows += size
            continue
        media_bytes += size
        media_files += 1

    archive_bytes = _positive_number(data.get("uploaded_file_size")) or archive_bytes_from_rows
    return BackupStorageBreakdown(
        payload_bytes=payload_bytes,
        media_bytes=media_bytes,
        archive_bytes=archive_bytes,
        total_bytes=payload_bytes + media_bytes + archive_bytes,
        media_files=media_files,
    )


def apply_storage_breakdown(
    data: dict[str, Any],
    breakdown: BackupStorageBreakdown,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """New payload with ``file_size``, ``storage`` and stats storage fields set."""
    storage = _to_record(data.get("storage"))
    stats = _to_record(data.get("stats"))
    now = now or datetime.now(timezone.utc)
    return {
        **data,
        "file_size": breakdown.total_bytes,
        "storage": {
            **storage,
            "payload_bytes": breakdown.payload_bytes,
            "media_bytes": breakdown.media_bytes,
            "archive_bytes": breakdown.archive_bytes,
            "total_bytes": breakdown.total_bytes,
            "media_files": breakdown.media_files,
            "updated_at": now.isoformat(),
        },
        "stats": {
            **stats,
            "media_files": breakdown.media_files,
            "storage_payload_bytes": breakdown.payload_bytes,
            "storage_media_bytes": breakdown.media_bytes,
            "storage_archive_bytes": breakdown.archive_bytes,
            "storage_total_bytes": breakdown.total_bytes,
        },
    }


def _apply_path_usage(usage: dict[str, _PathUsage], path: str, size: int, kind: PathKind) -> None:
    existing = usage.get(path)
    if existing is None:
        usage[path] = _PathUsage(size=size, kind=kind)
        return
    if size > existing.size:
        existing.size = size
    if kind == "archive":
        existing.kind = "archive"


def summarize_user_storage(backup_payloads: Iterable[Any], media_rows: Iterable[Any]) -> UserStorageSummary:
    payloads = [_to_record(p) for p in backup_payloads]
    usage: dict[str, _PathUsage] = {}

    for row in media_rows:
        path = _row_field(row, "file_path")
        if not isinstance(path, str) or not path:
            continue
        kind: PathKind = "archive" if is_archive_path(path) else "media"
        _apply_path_usage(usage, path, _positive_number(_row_field(row, "file_size")), kind)

    for data in payloads:
        archive_path = archive_path_from_data(data)
        if archive_path:
            _apply_path_usage(usage, archive_path, _positive_number(data.get("uploaded_file_size")), "archive")

    archive_bytes = sum(u.size for u in usage.values() if u.kind == "archive")
    media_bytes = sum(u.size for u in usage.values() if u.kind == "media")
    payload_bytes = sum(json_bytes(prune_storage_metadata(data)) for data in payloads)

    return UserStorageSummary(
        total_bytes=payload_bytes + archive_bytes + media_bytes,
        payload_bytes=payload_bytes,
        media_bytes=media_bytes,
        archive_bytes=archive_bytes,
        unique_file_count=len(usage),
        backups_count=len(payloads),
    )


class StorageUsageService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _persist(self) -> None:
        if self.session.info.get("auto_commit", True):
            await self.session.commit()
        else:
            await self.session.flush()

    async def recalculate_backup(self, backup_id: str) -> Optional[BackupStorageBreakdown]:
        """Recompute and store a backup's storage breakdown.

        Returns None when the backup no longer exists.
        """
        backup = await self.session.get(Backup, backup_id, populate_existing=True)
        if backup is None:
            logger.warning("[Storage] Backup %s not found for recalculation", backup_id)
            return None

        res = await self.session.execute(
            select(MediaFile.file_path, MediaFile.file_size).where(MediaFile.backup_id == backup_id)
        )
        rows = [{"file_path": path, "file_size": size} for path, size in res.all()]

        data = _to_record(backup.data)
        breakdown = backup_breakdown(data, rows)
        backup.data = apply_storage_breakdown(data, breakdown)
        await self._persist()

        logger.info(
            "[Storage] Backup %s: payload=%s media=%s archive=%s total=%s",
            backup_id,
            breakdown.payload_bytes,
            breakdown.media_bytes,
            breakdown.archive_bytes,
            breakdown.total_bytes,
        )
        return breakdown

    async def user_summary(self, user_id: str) -> UserStorageSummary:
        backups_res = await self.session.execute(select(Backup.data).where(Backup.user_id == user_id))
        media_res = await self.session.execute(
            select(MediaFile.file_path, MediaFile.file_size).where(MediaFile.user_id == user_id)
        )
        payloads = [data for (data,) in backups_res.all()]
        rows = [{"file_path": path, "file_size": size} for path, size in media_res.all()]
        return summarize_user_storage(payloads, rows)
