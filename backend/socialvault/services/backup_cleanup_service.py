"""Backup deletion.

Deletes a backup row and the stored objects only it references. Paths that
another backup's media rows still point at are left in place. The row
delete is authoritative; object removal is best-effort and reported through
``BackupDeleteResult`` counts rather than exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.media_file import MediaFile
from socialvault.services.object_store import ObjectStore
from socialvault.services.storage_usage_service import archive_path_from_data


logger = logging.getLogger(__name__)

STORAGE_REMOVE_BATCH_SIZE = 100


class BackupOwnershipError(PermissionError):
    pass


@dataclass(frozen=True)
class BackupDeleteResult:
    media_files_checked: int = 0
    candidate_paths_checked: int = 0
    storage_files_deleted: int = 0
    storage_files_delete_failed: int = 0
    backup_deleted: bool = False


def _chunks(items: list[str], size: int) -> list[list[str]]:
    if size <= 0:
        return [items]
    return [items[i:i + size] for i in range(0, len(items), size)]


class BackupCleanupService:
    def __init__(self, session: AsyncSession, object_store: ObjectStore):
        self.session = session
        self.object_store = object_store

    async def delete_backup(
        self,
        backup_id: str,
        *,
        expected_user_id: Optional[str] = None,
    ) -> BackupDeleteResult:
        """
        Delete a backup and its exclusively-owned objects.

        Args:
            backup_id: Backup to delete
            expected_user_id: When given, the backup must belong to this user

        Returns:
            BackupDeleteResult with per-step counts; ``backup_deleted`` is
            False when the backup did not exist.

        Raises:
            BackupOwnershipError: backup belongs to someone else
        """
        backup = await self.session.get(Backup, backup_id, populate_existing=True)
        if backup is None:
            return BackupDeleteResult()

        if expected_user_id and backup.user_id != expected_user_id:
            raise BackupOwnershipError("Forbidden - backup ownership mismatch")

        res = await self.session.execute(select(MediaFile.file_path).where(MediaFile.backup_id == backup_id))
        media_paths = [path for (path,) in res.all()]

        candidates: list[str] = []
        for path in media_paths + [archive_path_from_data(backup.data or {}), backup.archive_file_path]:
            if isinstance(path, str) and path and path not in candidates:
                candidates.append(path)

        shared: set[str] = set()
        if candidates:
            refs = await self.session.execute(
                select(MediaFile.file_path)
                .where(MediaFile.file_path.in_(candidates), MediaFile.backup_id != backup_id)
                .distinct()
            )
            shared = {path for (path,) in refs.all() if path}

        to_delete = [path for path in candidates if path not in shared]

        # Row first: readers must never see a backup whose objects are going away.
        await self.session.execute(delete(MediaFile).where(MediaFile.backup_id == backup_id))
        await self.session.delete(backup)
        if self.session.info.get("auto_commit", True):
            await self.session.commit()
        else:
            await self.session.flush()

        deleted = 0
        failed = 0
        for chunk in _chunks(to_delete, STORAGE_REMOVE_BATCH_SIZE):
            try:
                failed_keys = await self.object_store.delete_objects(chunk)
            except Exception as e:
                logger.warning("[Cleanup] Storage batch delete failed for backup %s: %s", backup_id, e)
                failed += len(chunk)
                continue
            failed += len(failed_keys)
            deleted += len(chunk) - len(failed_keys)

        result = BackupDeleteResult(
            media_files_checked=len(media_paths),
            candidate_paths_checked=len(candidates),
            storage_files_deleted=deleted,
            storage_files_delete_failed=failed,
            backup_deleted=True,
        )
        logger.info(
            "[Cleanup] Deleted backup %s (objects deleted=%s failed=%s shared=%s)",
            backup_id,
            deleted,
            failed,
            len(shared),
        )
        return result
