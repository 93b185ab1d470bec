"""Job request façade.

The small surface the HTTP layer talks to: create a job (single-flight),
look up the active job, request cancellation, read a user's jobs and
backups, and sign media links.
Authentication and response shaping stay with the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.core.celery_app import broker_enabled, celery_app
from socialvault.core.config import settings as default_settings
from socialvault.models.backup import Backup
from socialvault.models.backup_job import JOB_KIND_ARCHIVE_UPLOAD, JOB_KIND_SNAPSHOT_SCRAPE, STATUS_QUEUED, BackupJob
from socialvault.models.media_file import MediaFile
from socialvault.schemas.backup_jobs import (
    ArchiveUploadRequest,
    JobPayload,
    RetentionMarker,
    SnapshotScrapeRequest,
    dump_payload_part,
)
from socialvault.services.api_usage_service import ApiUsageService
from socialvault.services.backup_job_service import DEFAULT_LIST_LIMIT, BackupJobNotFoundError, BackupJobService
from socialvault.services.media_pipeline import media_path_from_internal_url, signed_media_url
from socialvault.services.notification_service import is_valid_email
from socialvault.services.object_store import ObjectStore, build_object_store
from socialvault.services.pricing import PricingModel
from socialvault.services.retention_service import (
    ACCOUNT_RETENTION_MODE,
    build_retention_marker,
    guest_backup_days_left,
    guest_retention_expiry,
)
from socialvault.services.scrape_planning import ScrapeLimits, plan_snapshot_scrape
from socialvault.services.scrape_providers.base import ScrapeProvider


logger = logging.getLogger(__name__)

JOB_TASK_NAMES = {
    JOB_KIND_SNAPSHOT_SCRAPE: "socialvault.tasks.backup_jobs.run_snapshot_scrape_job_task",
    JOB_KIND_ARCHIVE_UPLOAD: "socialvault.tasks.backup_jobs.run_archive_upload_job_task",
}

Enqueue = Callable[[str, str], Any]


class ActiveJobExistsError(RuntimeError):
    def __init__(self, job: BackupJob):
        self.job = job
        super().__init__(f"A backup job is already in progress ({job.id})")


@dataclass(frozen=True)
class BackupRetentionStatus:
    mode: str
    expires_at: Optional[datetime] = None
    days_left: Optional[int] = None


def celery_enqueue(job_type: str, job_id: str) -> Any:
    if not broker_enabled():
        logger.warning("[BackupJob] No broker configured; job %s stays queued", job_id)
        return None
    return celery_app.send_task(JOB_TASK_NAMES[job_type], kwargs={"job_id": job_id})


class BackupJobRequestService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        enqueue: Enqueue | None = None,
        provider: ScrapeProvider | None = None,
        settings=None,
        limits: ScrapeLimits | None = None,
        pricing: PricingModel | None = None,
        object_store: ObjectStore | None = None,
    ):
        self.session = session
        self.settings = settings or default_settings
        self.jobs = BackupJobService(
            session,
            queue_timeout_seconds=self.settings.BACKUP_JOB_QUEUE_TIMEOUT_SECONDS,
        )
        self.enqueue = enqueue or celery_enqueue
        self.provider = provider
        self.limits = limits or ScrapeLimits.from_settings(self.settings)
        self.pricing = pricing or PricingModel.from_settings(self.settings)
        self.object_store = object_store or build_object_store(self.settings)

    def _retention(self, is_guest: bool) -> RetentionMarker:
        marker = build_retention_marker(is_guest=is_guest, days=self.settings.GUEST_RETENTION_DAYS)
        return RetentionMarker.model_validate(marker)

    async def _ensure_no_active_job(self, user_id: str) -> None:
        active = await self.jobs.find_active_job(user_id=user_id)
        if active is not None:
            raise ActiveJobExistsError(active)

    async def _dispatch(self, job: BackupJob) -> BackupJob:
        try:
            self.enqueue(job.job_type, job.id)
        except Exception as e:
            logger.exception("[BackupJob] Failed to enqueue %s", job.id)
            return await self.jobs.mark_failed(job.id, error_message=f"Failed to start backup job: {e}")
        return job

    async def create_snapshot_job(
        self,
        *,
        user_id: str,
        request: SnapshotScrapeRequest,
        is_guest: bool = False,
        reminder_email: Optional[str] = None,
    ) -> BackupJob:
        """
        Create and enqueue a snapshot scrape job.

        Raises:
            ActiveJobExistsError: the user already has a queued/processing job
            ScrapeRequestError: nothing selected or social graph below the floor
            BudgetExceededError: the smallest viable request exceeds the budget
        """
        await self._ensure_no_active_job(user_id)

        spent = await ApiUsageService(self.session).monthly_spent(user_id)
        plan = plan_snapshot_scrape(request, monthly_spent_usd=spent, limits=self.limits, pricing=self.pricing)

        request = request.model_copy(update={"retention": self._retention(is_guest)})
        email = reminder_email.strip().lower() if is_valid_email(reminder_email) else None
        job = await self.jobs.create_job(
            user_id=user_id,
            job_type=JOB_KIND_SNAPSHOT_SCRAPE,
            payload={
                "request": dump_payload_part(request),
                "api_budget": dump_payload_part(plan.to_api_budget()),
                "reminder_email": email,
            },
            message="Queued snapshot backup",
        )
        return await self._dispatch(job)

    async def create_archive_upload_job(
        self,
        *,
        user_id: str,
        request: ArchiveUploadRequest,
        is_guest: bool = False,
    ) -> BackupJob:
        await self._ensure_no_active_job(user_id)
        if request.file_size > self.settings.ARCHIVE_MAX_BYTES:
            raise ValueError(
                f"Archive is too large ({request.file_size} bytes). Limit is {self.settings.ARCHIVE_MAX_BYTES} bytes."
            )

        request = request.model_copy(update={"retention": self._retention(is_guest)})
        job = await self.jobs.create_job(
            user_id=user_id,
            job_type=JOB_KIND_ARCHIVE_UPLOAD,
            payload={"request": dump_payload_part(request)},
            message="Queued archive upload",
        )
        return await self._dispatch(job)

    async def find_active_job(self, *, user_id: str) -> Optional[BackupJob]:
        return await self.jobs.find_active_job(user_id=user_id)

    async def get_job_for_user(self, *, job_id: str, user_id: str) -> Optional[BackupJob]:
        return await self.jobs.get_job_for_user(job_id=job_id, user_id=user_id)

    async def list_jobs(self, *, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[BackupJob]:
        return await self.jobs.list_jobs(user_id=user_id, limit=limit)

    async def request_cancellation(
        self,
        *,
        job_id: str,
        user_id: str,
        reason: str = "user_requested",
    ) -> BackupJob:
        """Cancel a job and abort its provider runs best-effort.

        A job no worker has picked up is finished as cancelled right away;
        a running job gets the flag and stops at its next checkpoint.

        Raises:
            BackupJobNotFoundError: no such job for this user
        """
        job = await self.jobs.get_job_for_user(job_id=job_id, user_id=user_id)
        if job is None:
            raise BackupJobNotFoundError(job_id)
        if job.is_terminal:
            return job

        if job.status == STATUS_QUEUED and await self.jobs.cancel_queued_job(job_id, reason=reason):
            job = await self.jobs.require_job(job_id)
        else:
            job = await self.jobs.request_cancellation(job_id, reason=reason)

        run_ids = JobPayload.from_raw(job.payload).provider_runs.run_ids()
        if run_ids and self.provider is not None:
            try:
                aborted = await self.provider.abort_runs(run_ids)
                logger.info("[BackupJob] %s: aborted %s/%s provider runs", job_id, aborted, len(run_ids))
            except Exception as e:
                logger.warning("[BackupJob] %s: provider abort failed: %s", job_id, e)
        return job

    async def set_reminder_email(self, *, job_id: str, user_id: str, email: str) -> BackupJob:
        """Ask to be notified when a running job finishes."""
        if not is_valid_email(email):
            raise ValueError("Invalid email address")
        job = await self.jobs.get_job_for_user(job_id=job_id, user_id=user_id)
        if job is None:
            raise BackupJobNotFoundError(job_id)
        return await self.jobs.merge_payload(
            job_id,
            {
                "reminder_email": email.strip().lower(),
                "reminder_requested_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def get_backup_retention(
        self,
        *,
        backup_id: str,
        user_id: str,
        now: datetime | None = None,
    ) -> Optional[BackupRetentionStatus]:
        """Retention of one of the user's backups; None when it is not theirs."""
        backup = await self.session.get(Backup, backup_id)
        if backup is None or backup.user_id != user_id:
            return None
        data = backup.data or {}
        expires_at = guest_retention_expiry(data)
        if expires_at is None:
            return BackupRetentionStatus(mode=ACCOUNT_RETENTION_MODE)
        return BackupRetentionStatus(
            mode=data["retention"]["mode"],
            expires_at=expires_at,
            days_left=guest_backup_days_left(data, now),
        )

    async def sign_media_url(self, *, user_id: str, url: str) -> Optional[str]:
        """Short-lived direct link for an internal media URL the user owns."""
        prefix = self.settings.MEDIA_URL_PREFIX
        path = media_path_from_internal_url(url, prefix)
        if path is None:
            return None
        owned = await self.session.scalar(
            select(MediaFile.id).where(MediaFile.file_path == path, MediaFile.user_id == user_id).limit(1)
        )
        if owned is None:
            return None
        return await signed_media_url(
            self.object_store,
            url,
            expires_in=self.settings.SIGNED_URL_TTL_SECONDS,
            prefix=prefix,
        )
