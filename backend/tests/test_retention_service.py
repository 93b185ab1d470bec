"""Tests for guest retention and claiming."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.backup_job import JOB_KIND_SNAPSHOT_SCRAPE
from socialvault.models.media_file import MediaFile
from socialvault.services.backup_job_service import BackupJobService
from socialvault.services.retention_service import (
    BackupRetentionService,
    build_retention_marker,
    clear_guest_retention,
    guest_backup_days_left,
    is_guest_backup_expired,
)


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_retention_marker_for_guest_and_account():
    assert build_retention_marker(is_guest=False) == {"mode": "account"}
    marker = build_retention_marker(is_guest=True, now=NOW, days=30)
    assert marker == {"mode": "guest_30d", "expires_at": (NOW + timedelta(days=30)).isoformat()}


def test_expiry_and_days_left():
    data = {"retention": build_retention_marker(is_guest=True, now=NOW, days=30)}

    assert is_guest_backup_expired(data, NOW) is False
    assert is_guest_backup_expired(data, NOW + timedelta(days=30)) is True
    assert guest_backup_days_left(data, NOW + timedelta(days=29, hours=1)) == 1
    assert guest_backup_days_left(data, NOW + timedelta(days=31)) == 0

    assert is_guest_backup_expired({"retention": {"mode": "account"}}, NOW) is False
    assert guest_backup_days_left({}, NOW) is None
    assert is_guest_backup_expired({"retention": {"mode": "guest_30d", "expires_at": "bogus"}}, NOW) is False


def test_clear_guest_retention_keeps_other_fields():
    assert clear_guest_retention({"retention": {"mode": "guest_30d"}, "tweets": []}) == {"tweets": []}
    assert clear_guest_retention(None) is None


@pytest.mark.asyncio
async def test_cleanup_deletes_only_expired_guest_backups(db_session: AsyncSession, object_store):
    expired = Backup(user_id="guest-1", data={"retention": build_retention_marker(is_guest=True, now=NOW - timedelta(days=31))})
    fresh = Backup(user_id="guest-2", data={"retention": build_retention_marker(is_guest=True, now=NOW)})
    account = Backup(user_id="user-1", data={"retention": {"mode": "account"}})
    db_session.add_all([expired, fresh, account])
    await db_session.commit()

    path = "guest-1/scraped_media/a.jpg"
    await object_store.put_object(path, b"img")
    db_session.add(
        MediaFile(user_id="guest-1", backup_id=expired.id, file_path=path, file_name="a.jpg", file_size=3, media_type="scraped_media")
    )
    await db_session.commit()

    result = await BackupRetentionService(db_session, object_store).cleanup_expired_guest_backups(now=NOW)

    assert result.checked == 2
    assert result.expired == 1
    assert result.deleted == 1
    assert result.storage_files_deleted == 1
    assert await object_store.head_object(path) is None
    remaining = (await db_session.execute(select(Backup.user_id))).scalars().all()
    assert sorted(remaining) == ["guest-2", "user-1"]


@pytest.mark.asyncio
async def test_claim_moves_backups_media_and_jobs(db_session: AsyncSession, object_store):
    backup = Backup(user_id="guest-1", data={"retention": build_retention_marker(is_guest=True), "tweets": []})
    db_session.add(backup)
    await db_session.commit()
    db_session.add(
        MediaFile(user_id="guest-1", backup_id=backup.id, file_path="guest-1/x.jpg", file_name="x.jpg", file_size=1, media_type="scraped_media")
    )
    await db_session.commit()
    await BackupJobService(db_session).create_job(user_id="guest-1", job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    service = BackupRetentionService(db_session, object_store)
    result = await service.claim_guest_backups(guest_user_id="guest-1", user_id="user-9")

    assert result.moved is True
    assert result.backups_claimed == 1
    assert result.media_rows_moved == 1
    assert result.jobs_moved == 1

    claimed = await db_session.get(Backup, backup.id, populate_existing=True)
    assert claimed.user_id == "user-9"
    assert "retention" not in claimed.data
    assert await BackupJobService(db_session).find_active_job(user_id="user-9") is not None

    assert (await service.claim_guest_backups(guest_user_id="user-9", user_id="user-9")).moved is False
