"""Tests for job creation, single-flight and cancellation requests."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.core.config import settings
from socialvault.models.backup import Backup
from socialvault.models.media_file import MediaFile
from socialvault.schemas.backup_jobs import ArchiveUploadRequest, JobPayload, ScrapeTargets, SnapshotScrapeRequest
from socialvault.services.backup_job_requests import (
    JOB_TASK_NAMES,
    ActiveJobExistsError,
    BackupJobRequestService,
    celery_enqueue,
)
from socialvault.services.backup_job_service import BackupJobNotFoundError, BackupJobService
from socialvault.services.media_pipeline import build_internal_media_url
from socialvault.services.object_store import verify_signed_token
from socialvault.services.retention_service import build_retention_marker
from socialvault.services.scrape_planning import BudgetExceededError, ScrapeLimits, ScrapeRequestError


class RecordingEnqueue:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def __call__(self, job_type, job_id):
        self.calls.append((job_type, job_id))
        if self.error is not None:
            raise self.error


class FakeProvider:
    name = "fake"

    def __init__(self):
        self.aborted = []

    async def abort_runs(self, run_ids):
        self.aborted.extend(run_ids)
        return len(run_ids)


@pytest.mark.asyncio
async def test_create_snapshot_job_enqueues_with_budget(db_session: AsyncSession, user_id):
    enqueue = RecordingEnqueue()
    service = BackupJobRequestService(db_session, enqueue=enqueue)

    job = await service.create_snapshot_job(
        user_id=user_id,
        request=SnapshotScrapeRequest(username="jack", timeline_items=5000),
        is_guest=True,
        reminder_email=" Owner@Example.com ",
    )

    assert job.status == "queued"
    assert job.message == "Queued snapshot backup"
    assert enqueue.calls == [("snapshot_scrape", job.id)]
    payload = JobPayload.from_raw(job.payload)
    assert payload.api_budget.timeline_items == 1000
    assert payload.api_budget.estimated_timeline_cost_usd == 0.40
    assert payload.reminder_email == "owner@example.com"
    assert payload.snapshot_request.retention.mode == "guest_30d"
    assert payload.snapshot_request.retention.expires_at is not None


@pytest.mark.asyncio
async def test_single_flight_per_user(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    first = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))

    with pytest.raises(ActiveJobExistsError) as exc:
        await service.create_archive_upload_job(user_id=user_id, request=ArchiveUploadRequest(staged_path="u/a.zip"))

    assert exc.value.job.id == first.id
    assert (await service.find_active_job(user_id=user_id)).id == first.id


@pytest.mark.asyncio
async def test_invalid_requests_create_no_job(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    nothing = ScrapeTargets(profile=False, tweets=False, replies=False)

    with pytest.raises(ScrapeRequestError):
        await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack", targets=nothing))
    with pytest.raises(ValueError, match="too large"):
        await service.create_archive_upload_job(
            user_id=user_id,
            request=ArchiveUploadRequest(staged_path="u/a.zip", file_size=settings.ARCHIVE_MAX_BYTES + 1),
        )

    assert await service.list_jobs(user_id=user_id) == []


@pytest.mark.asyncio
async def test_budget_error_surfaces_at_creation(db_session: AsyncSession, user_id):
    exhausted = replace(ScrapeLimits.from_settings(settings), monthly_limit_usd=0.0)
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue(), limits=exhausted)

    with pytest.raises(BudgetExceededError):
        await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))


@pytest.mark.asyncio
async def test_enqueue_failure_fails_the_job(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue(RuntimeError("broker down")))

    job = await service.create_archive_upload_job(user_id=user_id, request=ArchiveUploadRequest(staged_path="u/a.zip"))

    assert job.status == "failed"
    assert job.error_message == "Failed to start backup job: broker down"
    assert await service.find_active_job(user_id=user_id) is None


@pytest.mark.asyncio
async def test_request_cancellation_aborts_provider_runs(db_session: AsyncSession, user_id):
    provider = FakeProvider()
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue(), provider=provider)
    job = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))
    await BackupJobService(db_session).merge_payload(
        job.id, {"provider_runs": {"provider": "fake", "timeline_run_id": "run-1"}}
    )

    job = await service.request_cancellation(job_id=job.id, user_id=user_id)

    assert JobPayload.from_raw(job.payload).cancel_requested is True
    assert provider.aborted == ["run-1"]


@pytest.mark.asyncio
async def test_cancelling_a_queued_job_finishes_it_immediately(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    job = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))

    job = await service.request_cancellation(job_id=job.id, user_id=user_id)

    assert job.status == "failed"
    assert job.message == "Cancelled"
    assert job.was_cancelled is True
    assert await service.find_active_job(user_id=user_id) is None
    await service.create_archive_upload_job(user_id=user_id, request=ArchiveUploadRequest(staged_path="u/a.zip"))


@pytest.mark.asyncio
async def test_cancelling_a_running_job_raises_the_flag(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    job = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))
    await BackupJobService(db_session).mark_processing(job.id, progress=30, message="Scraping")

    job = await service.request_cancellation(job_id=job.id, user_id=user_id)

    assert job.status == "processing"
    assert job.lifecycle_state == "cancelling"
    assert await BackupJobService(db_session).is_cancellation_requested(job.id) is True


@pytest.mark.asyncio
async def test_request_cancellation_checks_ownership(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    job = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))

    with pytest.raises(BackupJobNotFoundError):
        await service.request_cancellation(job_id=job.id, user_id="intruder")


@pytest.mark.asyncio
async def test_set_reminder_email(db_session: AsyncSession, user_id):
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())
    job = await service.create_snapshot_job(user_id=user_id, request=SnapshotScrapeRequest(username="jack"))

    with pytest.raises(ValueError, match="Invalid email"):
        await service.set_reminder_email(job_id=job.id, user_id=user_id, email="nope")

    job = await service.set_reminder_email(job_id=job.id, user_id=user_id, email="Me@Example.com")
    assert job.payload["reminder_email"] == "me@example.com"
    assert "reminder_requested_at" in job.payload


def test_celery_enqueue_without_broker_is_a_noop():
    assert celery_enqueue("snapshot_scrape", "job-1") is None
    assert set(JOB_TASK_NAMES) == {"snapshot_scrape", "archive_upload"}


@pytest.mark.asyncio
async def test_backup_retention_reports_days_left(db_session: AsyncSession, user_id):
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    guest = Backup(user_id=user_id, data={"retention": build_retention_marker(is_guest=True, now=now, days=30)})
    kept = Backup(user_id=user_id, data={})
    db_session.add_all([guest, kept])
    await db_session.commit()
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue())

    retention = await service.get_backup_retention(
        backup_id=guest.id, user_id=user_id, now=now + timedelta(days=10, hours=1)
    )
    assert retention.mode == "guest_30d"
    assert retention.expires_at == now + timedelta(days=30)
    assert retention.days_left == 20

    retention = await service.get_backup_retention(backup_id=kept.id, user_id=user_id)
    assert retention.mode == "account"
    assert retention.days_left is None

    assert await service.get_backup_retention(backup_id=guest.id, user_id="intruder") is None


@pytest.mark.asyncio
async def test_sign_media_url_only_for_owned_media(db_session: AsyncSession, object_store, user_id):
    backup = Backup(user_id=user_id, data={})
    db_session.add(backup)
    await db_session.commit()
    path = f"{user_id}/scraped_media/pic0.jpg"
    db_session.add(
        MediaFile(user_id=user_id, backup_id=backup.id, file_path=path, file_name="pic0.jpg", media_type="scraped_media")
    )
    await db_session.commit()
    service = BackupJobRequestService(db_session, enqueue=RecordingEnqueue(), object_store=object_store)
    url = build_internal_media_url(path, settings.MEDIA_URL_PREFIX)

    signed = await service.sign_media_url(user_id=user_id, url=url)

    token = parse_qs(urlparse(signed).query)["token"][0]
    assert verify_signed_token(token, secret_key="dev-test-secret").key == path
    assert await service.sign_media_url(user_id="intruder", url=url) is None
    assert await service.sign_media_url(user_id=user_id, url="https://pbs.example/pic0.jpg") is None
