"""Tests for the backup job ledger."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.backup import Backup
from socialvault.models.backup_job import JOB_KIND_ARCHIVE_UPLOAD, JOB_KIND_SNAPSHOT_SCRAPE
from socialvault.schemas.backup_jobs import JobPayload
from socialvault.services.backup_job_service import (
    CANCELLED_ERROR,
    BackupJobNotFoundError,
    BackupJobService,
    normalize_progress,
    queue_timeout_messages,
)


def _later(minutes: int):
    moment = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return lambda: moment


async def _backup(db_session: AsyncSession, user_id: str) -> Backup:
    backup = Backup(user_id=user_id, data={})
    db_session.add(backup)
    await db_session.commit()
    return backup


def test_normalize_progress_clamps_and_rounds():
    assert normalize_progress(-5) == 0
    assert normalize_progress(150) == 100
    assert normalize_progress(42.6) == 43
    assert normalize_progress("oops") == 0
    assert normalize_progress(float("nan")) == 0


def test_queue_timeout_messages_use_minutes():
    message, error = queue_timeout_messages(600)
    assert message == "Backup job did not start within 10 minutes. Please retry."
    assert error.startswith("Queue timeout:")
    assert "1 minute." in queue_timeout_messages(30)[0]


@pytest.mark.asyncio
async def test_create_job_starts_queued(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=600)

    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE, payload={"foo": 1})

    assert job.status == "queued"
    assert job.progress == 0
    assert job.payload["lifecycle_state"] == "queued"
    assert job.payload["schema_version"] == 1
    assert job.payload["foo"] == 1


@pytest.mark.asyncio
async def test_create_job_rejects_unknown_kind(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    with pytest.raises(ValueError, match="Unknown backup job type"):
        await service.create_job(user_id=user_id, job_type="nope")


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_ARCHIVE_UPLOAD)

    await service.mark_processing(job.id, progress=40, message="Working")
    job = await service.update_job(job.id, progress=20, message="Still working")

    assert job.progress == 40
    assert job.message == "Still working"
    assert job.started_at is not None


@pytest.mark.asyncio
async def test_payload_updates_are_merged(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE, payload={"a": 1})

    await service.merge_payload(job.id, {"b": 2})
    job = await service.merge_payload(job.id, {"a": 3})

    assert job.payload["a"] == 3
    assert job.payload["b"] == 2
    assert job.payload["lifecycle_state"] == "queued"


@pytest.mark.asyncio
async def test_terminal_jobs_are_never_mutated(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    backup = await _backup(db_session, user_id)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
    await service.mark_processing(job.id, progress=10, message="Working")
    job = await service.mark_completed(job.id, backup_id=backup.id, message="Done")

    assert job.status == "completed"
    assert job.progress == 100
    assert job.result_backup_id == backup.id
    completed_at = job.completed_at

    job = await service.mark_failed(job.id, error_message="late failure")
    assert job.status == "completed"
    assert job.error_message is None
    assert job.completed_at == completed_at

    job = await service.request_cancellation(job.id)
    assert job.status == "completed"
    assert JobPayload.from_raw(job.payload).cancel_requested is False


@pytest.mark.asyncio
async def test_mark_failed_truncates_and_defaults_error(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    job = await service.mark_failed(job.id, error_message="x" * 5000)

    assert job.status == "failed"
    assert job.message == "Failed"
    assert len(job.error_message) == 2000


@pytest.mark.asyncio
async def test_cancelled_failure_uses_cancelled_message(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    job = await service.mark_failed(
        job.id,
        error_message=CANCELLED_ERROR,
        payload={"lifecycle_state": "cancelled"},
    )

    assert job.message == "Cancelled"
    assert job.was_cancelled is True


@pytest.mark.asyncio
async def test_request_cancellation_sets_flag(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    job = await service.request_cancellation(job.id, reason="user_requested")

    assert job.status == "processing"
    assert job.progress >= 1
    assert job.message == "Cancellation requested. Cleaning up..."
    payload = JobPayload.from_raw(job.payload)
    assert payload.cancel_requested is True
    assert payload.cancel_reason == "user_requested"
    assert payload.lifecycle_state == "cancelling"
    assert await service.is_cancellation_requested(job.id) is True


@pytest.mark.asyncio
async def test_cancellation_nobody_acts_on_does_not_block_new_jobs(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=300)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
    await service.request_cancellation(job.id)

    late = BackupJobService(db_session, queue_timeout_seconds=300, clock=_later(3 * 24 * 60))
    assert await late.find_active_job(user_id=user_id) is None

    job = await late.get_job(job.id)
    assert job.status == "failed"
    assert job.error_message == CANCELLED_ERROR
    assert job.was_cancelled is True


@pytest.mark.asyncio
async def test_recent_cancellation_keeps_job_active(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=300)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
    await service.mark_processing(job.id, progress=40, message="Scraping")
    await service.request_cancellation(job.id)

    soon = BackupJobService(db_session, queue_timeout_seconds=300, clock=_later(2))
    active = await soon.find_active_job(user_id=user_id)

    assert active is not None
    assert active.id == job.id


@pytest.mark.asyncio
async def test_cancel_queued_job_finishes_it(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_ARCHIVE_UPLOAD)

    assert await service.cancel_queued_job(job.id) is True

    job = await service.get_job(job.id)
    assert job.status == "failed"
    assert job.message == "Cancelled"
    assert job.was_cancelled is True
    assert job.completed_at is not None
    assert await service.find_active_job(user_id=user_id) is None


@pytest.mark.asyncio
async def test_cancel_queued_job_leaves_picked_up_job_alone(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_ARCHIVE_UPLOAD)
    await service.mark_processing(job.id, progress=5, message="Working")

    assert await service.cancel_queued_job(job.id) is False
    assert (await service.get_job(job.id)).status == "processing"


@pytest.mark.asyncio
async def test_require_job_raises_for_unknown_id(db_session: AsyncSession):
    service = BackupJobService(db_session)
    with pytest.raises(BackupJobNotFoundError):
        await service.require_job("00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
async def test_find_active_job_returns_queued_job(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=600)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    active = await service.find_active_job(user_id=user_id)

    assert active is not None
    assert active.id == job.id
    assert await service.find_active_job(user_id="someone-else") is None


@pytest.mark.asyncio
async def test_find_active_job_fails_stale_queued_job(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=600)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)

    late = BackupJobService(db_session, queue_timeout_seconds=600, clock=_later(11))
    assert await late.find_active_job(user_id=user_id) is None

    job = await late.get_job(job.id)
    assert job.status == "failed"
    assert job.message == "Backup job did not start within 10 minutes. Please retry."
    payload = JobPayload.from_raw(job.payload)
    assert payload.queue_timeout is True
    assert payload.lifecycle_state == "failed"


@pytest.mark.asyncio
async def test_processing_job_is_not_timed_out(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=600)
    job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
    await service.mark_processing(job.id, progress=8, message="In progress")

    late = BackupJobService(db_session, queue_timeout_seconds=600, clock=_later(60))
    active = await late.find_active_job(user_id=user_id)

    assert active is not None
    assert active.status == "processing"


@pytest.mark.asyncio
async def test_sweep_fails_only_stale_queued_jobs(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session, queue_timeout_seconds=600)
    stale = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
    running = await service.create_job(user_id="other-user", job_type=JOB_KIND_ARCHIVE_UPLOAD)
    await service.mark_processing(running.id, progress=5, message="Working")

    late = BackupJobService(db_session, queue_timeout_seconds=600, clock=_later(15))
    assert await late.fail_stale_queued_jobs() == 1

    assert (await late.get_job(stale.id)).status == "failed"
    assert (await late.get_job(running.id)).status == "processing"


@pytest.mark.asyncio
async def test_list_jobs_newest_first_and_bounded(db_session: AsyncSession, user_id):
    service = BackupJobService(db_session)
    ids = []
    for _ in range(3):
        job = await service.create_job(user_id=user_id, job_type=JOB_KIND_SNAPSHOT_SCRAPE)
        await service.mark_failed(job.id, error_message="boom")
        ids.append(job.id)

    jobs = await service.list_jobs(user_id=user_id, limit=2)

    assert len(jobs) == 2
    assert {j.id for j in jobs} <= set(ids)
    assert jobs[0].created_at >= jobs[1].created_at
    assert await service.get_job_for_user(job_id=ids[0], user_id="intruder") is None
