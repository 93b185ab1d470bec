"""
Backup Job Ledger
=================

Persistent state machine for backup jobs:

    queued -> processing -> completed | failed

Cancellation exits through ``failed`` with message "Cancelled" and payload
``lifecycle_state="cancelled"``. Terminal jobs are never mutated again.

Every write commits immediately (unless the session carries
``info["auto_commit"] = False``) so pollers see progress as it happens.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.core.config import settings
from socialvault.core.logging_config import get_job_event_logger
from socialvault.models.backup_job import (
    ACTIVE_STATUSES,
    JOB_KINDS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    BackupJob,
)
from socialvault.models.base import as_utc
from socialvault.schemas.backup_jobs import PAYLOAD_SCHEMA_VERSION, JobPayload


logger = logging.getLogger(__name__)
job_events = get_job_event_logger()

CANCELLED_ERROR = "Cancelled by user"
CANCELLED_MESSAGE = "Cancelled"
CANCELLATION_REQUESTED_MESSAGE = "Cancellation requested. Cleaning up..."

MAX_ERROR_LENGTH = 2000
DEFAULT_LIST_LIMIT = 15
MAX_LIST_LIMIT = 50


class BackupJobNotFoundError(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_progress(value: Any) -> int:
    """Clamp to [0, 100] and round to an integer."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return int(round(max(0.0, min(100.0, number))))


def queue_timeout_messages(timeout_seconds: int) -> tuple[str, str]:
    minutes = max(1, round(timeout_seconds / 60))
    unit = "minute" if minutes == 1 else "minutes"
    return (
        f"Backup job did not start within {minutes} {unit}. Please retry.",
        f"Queue timeout: worker did not pick up this job within {minutes} {unit}. Please retry.",
    )


class BackupJobService:
    """Job ledger bound to one database session."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        queue_timeout_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.queue_timeout = timedelta(
            seconds=int(queue_timeout_seconds or settings.BACKUP_JOB_QUEUE_TIMEOUT_SECONDS)
        )
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _persist(self) -> None:
        if self.session.info.get("auto_commit", True):
            await self.session.commit()
        else:
            await self.session.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        # Other sessions (workers, cancel requests) write to the same row.
        return await self.session.get(BackupJob, job_id, populate_existing=True)

    async def require_job(self, job_id: str) -> BackupJob:
        job = await self.get_job(job_id)
        if job is None:
            raise BackupJobNotFoundError(f"Backup job not found: {job_id}")
        return job

    async def get_job_for_user(self, *, job_id: str, user_id: str) -> Optional[BackupJob]:
        stmt = (
            select(BackupJob)
            .where(BackupJob.id == job_id, BackupJob.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def list_jobs(self, *, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[BackupJob]:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = DEFAULT_LIST_LIMIT
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        stmt = (
            select(BackupJob)
            .where(BackupJob.user_id == user_id)
            .order_by(BackupJob.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(stmt)
        return list(res.scalars().all())

    async def is_cancellation_requested(self, job_id: str) -> bool:
        res = await self.session.execute(select(BackupJob.payload).where(BackupJob.id == job_id))
        raw = res.scalar_one_or_none()
        return JobPayload.from_raw(raw).cancel_requested

    # ------------------------------------------------------------------
    # Creation & single-flight lookup
    # ------------------------------------------------------------------

    async def create_job(
        self,
        *,
        user_id: str,
        job_type: str,
        payload: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> BackupJob:
        """Insert a queued job. Callers check ``find_active_job`` first."""
        if job_type not in JOB_KINDS:
            raise ValueError(f"Unknown backup job type: {job_type}")

        job = BackupJob(
            user_id=user_id,
            job_type=job_type,
            status=STATUS_QUEUED,
            progress=0,
            message=message or "Queued",
            payload={
                "schema_version": PAYLOAD_SCHEMA_VERSION,
                "lifecycle_state": "queued",
                **(payload or {}),
            },
        )
        self.session.add(job)
        await self._persist()

        job_events.info("backup_job_created", job_id=job.id, user_id=user_id, job_type=job_type)
        return job

    def _is_stale_queued(self, job: BackupJob, now: datetime) -> bool:
        if job.status != STATUS_QUEUED:
            return False
        reference = as_utc(job.started_at) or as_utc(job.created_at)
        if reference is None:
            return False
        return now - reference > self.queue_timeout

    def _is_abandoned_cancellation(self, job: BackupJob, now: datetime) -> bool:
        """A cancel request no worker acted on within the queue timeout."""
        if job.status != STATUS_PROCESSING:
            return False
        payload = JobPayload.from_raw(job.payload)
        requested_at = as_utc(payload.cancel_requested_at)
        if not payload.cancel_requested or requested_at is None:
            return False
        return now - requested_at > self.queue_timeout

    def _is_stale(self, job: BackupJob, now: datetime) -> bool:
        return self._is_stale_queued(job, now) or self._is_abandoned_cancellation(job, now)

    async def _latest_active(self, user_id: str) -> Optional[BackupJob]:
        stmt = (
            select(BackupJob)
            .where(BackupJob.user_id == user_id, BackupJob.status.in_(ACTIVE_STATUSES))
            .order_by(BackupJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def _fail_if_status(
        self,
        job: BackupJob,
        expected_status: str,
        now: datetime,
        *,
        message: str,
        error_message: str,
        payload: dict[str, Any],
    ) -> bool:
        """Fail ``job`` only while it still has ``expected_status``; False when someone else moved it."""
        stmt = (
            update(BackupJob)
            .where(BackupJob.id == job.id, BackupJob.status == expected_status)
            .values(
                status=STATUS_FAILED,
                progress=100,
                message=message,
                error_message=error_message,
                completed_at=now,
                payload={**(job.payload or {}), **payload},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        await self._persist()
        return bool(res.rowcount)

    async def _fail_queue_timeout(self, job: BackupJob, now: datetime) -> bool:
        """Conditionally fail a queued job; a worker that picked it up first wins."""
        message, error_message = queue_timeout_messages(int(self.queue_timeout.total_seconds()))
        failed = await self._fail_if_status(
            job,
            STATUS_QUEUED,
            now,
            message=message,
            error_message=error_message,
            payload={
                "lifecycle_state": "failed",
                "queue_timeout": True,
                "queue_timed_out_at": now.isoformat(),
            },
        )
        if failed:
            logger.warning("[BackupJob] %s failed: not picked up within queue timeout", job.id)
            job_events.info("backup_job_queue_timeout", job_id=job.id, user_id=job.user_id)
        return failed

    async def _fail_abandoned_cancellation(self, job: BackupJob, now: datetime) -> bool:
        failed = await self._fail_if_status(
            job,
            STATUS_PROCESSING,
            now,
            message=CANCELLED_MESSAGE,
            error_message=CANCELLED_ERROR,
            payload={"lifecycle_state": "cancelled"},
        )
        if failed:
            logger.warning("[BackupJob] %s cancelled: no worker finished the cancellation", job.id)
            job_events.info("backup_job_cancel_timeout", job_id=job.id, user_id=job.user_id)
        return failed

    async def _fail_stale(self, job: BackupJob, now: datetime) -> bool:
        if self._is_stale_queued(job, now):
            return await self._fail_queue_timeout(job, now)
        return await self._fail_abandoned_cancellation(job, now)

    async def find_active_job(self, *, user_id: str) -> Optional[BackupJob]:
        """Return the user's queued/processing job, failing abandoned jobs first.

        Abandoned means queued past the queue timeout, or flagged for
        cancellation longer than that without a worker finishing it.
        """
        now = self._now()
        job = await self._latest_active(user_id)
        if job is None or not self._is_stale(job, now):
            return job

        await self._fail_stale(job, now)
        job = await self._latest_active(user_id)
        if job is not None and self._is_stale(job, now):
            # Leftover from a lost single-flight race.
            await self._fail_stale(job, now)
            return None
        return job

    async def fail_stale_queued_jobs(self, *, limit: int = 500) -> int:
        """Sweep abandoned queued jobs across all users."""
        now = self._now()
        cutoff = now - self.queue_timeout
        stmt = (
            select(BackupJob)
            .where(BackupJob.status == STATUS_QUEUED, BackupJob.created_at < cutoff)
            .order_by(BackupJob.created_at.asc())
            .limit(max(1, int(limit)))
        )
        res = await self.session.execute(stmt)
        failed = 0
        for job in list(res.scalars().all()):
            if self._is_stale_queued(job, now) and await self._fail_queue_timeout(job, now):
                failed += 1
        return failed

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_job(
        self,
        job_id: str,
        *,
        status: str | None = None,
        progress: Any = None,
        message: str | None = None,
        error_message: str | None = None,
        result_backup_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> BackupJob:
        """Apply a partial update. ``payload`` is shallow-merged, never replaced."""
        job = await self.require_job(job_id)
        if job.is_terminal:
            logger.info("[BackupJob] %s is %s; ignoring update", job.id, job.status)
            return job

        now = self._now()
        previous_status = job.status

        if payload:
            job.payload = {**(job.payload or {}), **payload}
        if progress is not None:
            job.progress = max(job.progress or 0, normalize_progress(progress))
        if message is not None:
            job.message = message
        if error_message is not None:
            job.error_message = (error_message or "").strip()[:MAX_ERROR_LENGTH] or "failed"
        if result_backup_id is not None:
            job.result_backup_id = result_backup_id

        if status is not None:
            job.status = status
            if status == STATUS_PROCESSING and job.started_at is None:
                job.started_at = now
            if status in (STATUS_COMPLETED, STATUS_FAILED):
                job.completed_at = now

        await self._persist()

        if job.status != previous_status:
            job_events.info(
                "backup_job_transition",
                job_id=job.id,
                user_id=job.user_id,
                from_status=previous_status,
                to_status=job.status,
                progress=job.progress,
            )
        return job

    async def merge_payload(self, job_id: str, partial: dict[str, Any]) -> BackupJob:
        return await self.update_job(job_id, payload=partial)

    async def mark_processing(
        self,
        job_id: str,
        *,
        progress: int,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> BackupJob:
        return await self.update_job(
            job_id,
            status=STATUS_PROCESSING,
            progress=progress,
            message=message,
            payload=payload,
        )

    async def mark_completed(
        self,
        job_id: str,
        *,
        backup_id: str,
        message: str = "Completed",
        payload: dict[str, Any] | None = None,
    ) -> BackupJob:
        return await self.update_job(
            job_id,
            status=STATUS_COMPLETED,
            progress=100,
            message=message,
            result_backup_id=backup_id,
            payload=payload,
        )

    async def mark_failed(
        self,
        job_id: str,
        *,
        error_message: str,
        payload: dict[str, Any] | None = None,
    ) -> BackupJob:
        message = CANCELLED_MESSAGE if error_message == CANCELLED_ERROR else "Failed"
        return await self.update_job(
            job_id,
            status=STATUS_FAILED,
            progress=100,
            message=message,
            error_message=error_message,
            payload=payload,
        )

    async def request_cancellation(self, job_id: str, *, reason: str = "user_requested") -> BackupJob:
        """Raise the cancellation flag; the running worker observes it at its next checkpoint."""
        job = await self.require_job(job_id)
        if job.is_terminal:
            return job

        job = await self.update_job(
            job_id,
            status=STATUS_PROCESSING,
            progress=max(1, job.progress or 0),
            message=CANCELLATION_REQUESTED_MESSAGE,
            payload={
                "cancel_requested": True,
                "cancel_requested_at": self._now().isoformat(),
                "cancel_reason": reason,
                "lifecycle_state": "cancelling",
            },
        )
        logger.info("[BackupJob] %s cancellation requested (%s)", job.id, reason)
        return job

    async def cancel_queued_job(self, job_id: str, *, reason: str = "user_requested") -> bool:
        """Finish a job no worker has picked up as cancelled.

        Returns False when the job is no longer queued; the caller then
        raises the flag for the running worker instead.
        """
        job = await self.require_job(job_id)
        if job.status != STATUS_QUEUED:
            return False
        now = self._now()
        cancelled = await self._fail_if_status(
            job,
            STATUS_QUEUED,
            now,
            message=CANCELLED_MESSAGE,
            error_message=CANCELLED_ERROR,
            payload={
                "cancel_requested": True,
                "cancel_requested_at": now.isoformat(),
                "cancel_reason": reason,
                "lifecycle_state": "cancelled",
            },
        )
        if cancelled:
            logger.info("[BackupJob] %s cancelled before a worker picked it up (%s)", job_id, reason)
            job_events.info(
                "backup_job_transition",
                job_id=job_id,
                user_id=job.user_id,
                from_status=STATUS_QUEUED,
                to_status=STATUS_FAILED,
                progress=100,
            )
        return cancelled
