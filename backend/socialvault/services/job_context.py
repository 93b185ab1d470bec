"""Ledger access for a single running job.

Job runners hold a ``JobContext`` instead of a session: every ledger write
opens its own short-lived session so that progress is committed and
visible to pollers while the media workers write concurrently.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialvault.models.backup import Backup
from socialvault.models.backup_job import BackupJob
from socialvault.schemas.backup_jobs import JobPayload
from socialvault.services.backup_cleanup_service import BackupCleanupService
from socialvault.services.backup_job_service import CANCELLED_ERROR, BackupJobService
from socialvault.services.job_cancellation import JobCancelledError
from socialvault.services.object_store import ObjectStore


logger = logging.getLogger(__name__)

CLEANUP_PROGRESS = 95
CLEANUP_MESSAGE = "Cancellation requested. Cleaning up partial data..."


class JobContext:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: str,
        *,
        queue_timeout_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.job_id = job_id
        self.queue_timeout_seconds = queue_timeout_seconds

    @asynccontextmanager
    async def ledger(self) -> AsyncIterator[BackupJobService]:
        async with self.session_factory() as session:
            yield BackupJobService(session, queue_timeout_seconds=self.queue_timeout_seconds)

    async def load(self) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.require_job(self.job_id)

    async def progress(self, progress: int, message: str, payload: dict[str, Any] | None = None) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.update_job(self.job_id, progress=progress, message=message, payload=payload)

    async def merge(self, partial: dict[str, Any]) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.merge_payload(self.job_id, partial)

    async def mark_processing(self, progress: int, message: str, payload: dict[str, Any] | None = None) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.mark_processing(self.job_id, progress=progress, message=message, payload=payload)

    async def mark_completed(self, backup_id: str, message: str, payload: dict[str, Any] | None = None) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.mark_completed(self.job_id, backup_id=backup_id, message=message, payload=payload)

    async def mark_failed(self, error_message: str, payload: dict[str, Any] | None = None) -> BackupJob:
        async with self.ledger() as jobs:
            return await jobs.mark_failed(self.job_id, error_message=error_message, payload=payload)

    async def save_backup(self, *, user_id: str, backup_type: str, source: str, data: dict[str, Any]) -> str:
        """Insert this job's backup, or reuse the one an earlier delivery already saved.

        The id is recorded as ``partial_backup_id`` right away so that a
        cancellation or a redelivery can find it.
        """
        existing_id = JobPayload.from_raw((await self.load()).payload).partial_backup_id
        async with self.session_factory() as session:
            backup = await session.get(Backup, existing_id) if existing_id else None
            if backup is not None and backup.user_id != user_id:
                backup = None
            if backup is None:
                backup = Backup(user_id=user_id, backup_type=backup_type, source=source, data=data)
                session.add(backup)
            else:
                logger.info("[Job %s] Reusing backup %s from an earlier delivery", self.job_id, backup.id)
                backup.data = data
            await session.commit()
            backup_id = backup.id

        await self.merge({"partial_backup_id": backup_id})
        return backup_id

    async def ensure_active(self) -> None:
        """Cancellation checkpoint."""
        async with self.ledger() as jobs:
            if await jobs.is_cancellation_requested(self.job_id):
                raise JobCancelledError()

    async def finish_cancelled(
        self,
        *,
        object_store: ObjectStore,
        backup_id: Optional[str],
        user_id: str,
        payload: dict[str, Any] | None = None,
    ) -> BackupJob:
        """Undo a cancelled run: delete the partial backup, then fail the job as cancelled."""
        await self.progress(CLEANUP_PROGRESS, CLEANUP_MESSAGE, {"lifecycle_state": "cleanup"})
        if not backup_id:
            # Saved by an earlier delivery of the same job.
            backup_id = JobPayload.from_raw((await self.load()).payload).partial_backup_id

        if backup_id:
            async with self.session_factory() as session:
                try:
                    await BackupCleanupService(session, object_store).delete_backup(
                        backup_id,
                        expected_user_id=user_id,
                    )
                except Exception:
                    logger.exception("[Job %s] Cleanup failed for backup %s", self.job_id, backup_id)

        await self.merge({"lifecycle_state": "cancelled", "partial_backup_id": None, **(payload or {})})
        return await self.mark_failed(CANCELLED_ERROR)

    async def finish_failed(self, error: BaseException, payload: dict[str, Any] | None = None) -> BackupJob:
        await self.merge({"lifecycle_state": "failed", **(payload or {})})
        return await self.mark_failed(str(error) or type(error).__name__)
