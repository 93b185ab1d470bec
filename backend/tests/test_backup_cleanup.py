"""Tests for backup deletion and shared object handling."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.media_file import MediaFile
from socialvault.services.backup_cleanup_service import BackupCleanupService, BackupOwnershipError


async def _backup_with_media(db_session: AsyncSession, user_id: str, paths: list[str], **data) -> Backup:
    backup = Backup(user_id=user_id, data=data)
    db_session.add(backup)
    await db_session.commit()
    for path in paths:
        db_session.add(
            MediaFile(
                user_id=user_id,
                backup_id=backup.id,
                file_path=path,
                file_name=path.rsplit("/", 1)[-1],
                file_size=3,
                media_type="scraped_media",
            )
        )
    await db_session.commit()
    return backup


@pytest.mark.asyncio
async def test_delete_removes_exclusive_objects_and_keeps_shared(db_session: AsyncSession, object_store, user_id):
    shared = f"{user_id}/scraped_media/shared.jpg"
    own = f"{user_id}/scraped_media/own.jpg"
    for path in (shared, own):
        await object_store.put_object(path, b"abc")

    first = await _backup_with_media(db_session, user_id, [shared, own])
    second = await _backup_with_media(db_session, user_id, [shared])

    result = await BackupCleanupService(db_session, object_store).delete_backup(first.id, expected_user_id=user_id)

    assert result.backup_deleted is True
    assert result.media_files_checked == 2
    assert result.candidate_paths_checked == 2
    assert result.storage_files_deleted == 1
    assert result.storage_files_delete_failed == 0

    assert await object_store.head_object(own) is None
    assert await object_store.head_object(shared) is not None
    assert await db_session.get(Backup, first.id) is None
    assert await db_session.get(Backup, second.id) is not None
    remaining = await db_session.scalar(select(func.count()).select_from(MediaFile))
    assert remaining == 1


@pytest.mark.asyncio
async def test_delete_includes_archive_object(db_session: AsyncSession, object_store, user_id):
    archive = f"{user_id}/archives/full.zip"
    await object_store.put_object(archive, b"PK")
    backup = await _backup_with_media(db_session, user_id, [], archive_file_path=archive)

    result = await BackupCleanupService(db_session, object_store).delete_backup(backup.id)

    assert result.candidate_paths_checked == 1
    assert result.storage_files_deleted == 1
    assert await object_store.head_object(archive) is None


@pytest.mark.asyncio
async def test_delete_removes_both_recorded_archive_paths(db_session: AsyncSession, object_store, user_id):
    from_payload = f"{user_id}/archives/payload.zip"
    from_column = f"{user_id}/archives/column.zip"
    for path in (from_payload, from_column):
        await object_store.put_object(path, b"PK")
    backup = await _backup_with_media(db_session, user_id, [], archive_file_path=from_payload)
    backup.archive_file_path = from_column
    await db_session.commit()

    result = await BackupCleanupService(db_session, object_store).delete_backup(backup.id)

    assert result.candidate_paths_checked == 2
    assert result.storage_files_deleted == 2
    assert await object_store.head_object(from_payload) is None
    assert await object_store.head_object(from_column) is None


@pytest.mark.asyncio
async def test_delete_rejects_other_owner(db_session: AsyncSession, object_store, user_id):
    backup = await _backup_with_media(db_session, user_id, [])

    with pytest.raises(BackupOwnershipError):
        await BackupCleanupService(db_session, object_store).delete_backup(backup.id, expected_user_id="intruder")

    assert await db_session.get(Backup, backup.id) is not None


@pytest.mark.asyncio
async def test_delete_missing_backup_is_a_noop(db_session: AsyncSession, object_store):
    result = await BackupCleanupService(db_session, object_store).delete_backup(
        "00000000-0000-0000-0000-000000000000"
    )
    assert result.backup_deleted is False
    assert result.storage_files_deleted == 0


class _FailingStore:
    async def delete_objects(self, keys):
        raise RuntimeError("storage offline")


@pytest.mark.asyncio
async def test_storage_failures_are_counted_not_raised(db_session: AsyncSession, user_id):
    backup = await _backup_with_media(db_session, user_id, [f"{user_id}/scraped_media/a.jpg"])

    result = await BackupCleanupService(db_session, _FailingStore()).delete_backup(backup.id)

    assert result.backup_deleted is True
    assert result.storage_files_deleted == 0
    assert result.storage_files_delete_failed == 1
