"""Maintenance / scheduled tasks.

Purges expired guest backups and fails backup jobs that were never picked
up by a worker.
"""

from __future__ import annotations

from dataclasses import asdict

from celery.utils.log import get_task_logger

from socialvault.core.celery_app import celery_app
from socialvault.core.config import settings
from socialvault.services.backup_job_service import BackupJobService
from socialvault.services.object_store import build_object_store
from socialvault.services.retention_service import BackupRetentionService
from socialvault.tasks.runtime import run_async, task_session_factory


logger = get_task_logger(__name__)


async def _cleanup_expired_guest_backups_async(*, limit: int) -> dict:
    async with task_session_factory() as session_factory:
        async with session_factory() as session:
            svc = BackupRetentionService(session, build_object_store(settings))
            result = await svc.cleanup_expired_guest_backups(limit=limit)
    logger.info(
        "Guest cleanup: checked=%s expired=%s deleted=%s failed=%s",
        result.checked,
        result.expired,
        result.deleted,
        result.failed,
    )
    return asdict(result)


async def _sweep_stale_backup_jobs_async(*, limit: int) -> int:
    async with task_session_factory() as session_factory:
        async with session_factory() as session:
            svc = BackupJobService(session, queue_timeout_seconds=settings.BACKUP_JOB_QUEUE_TIMEOUT_SECONDS)
            failed = await svc.fail_stale_queued_jobs(limit=limit)
    if failed:
        logger.warning("Failed %s backup jobs stuck in queue", failed)
    return failed


@celery_app.task(name="socialvault.tasks.maintenance.cleanup_expired_guest_backups_task")
def cleanup_expired_guest_backups_task(limit: int | None = None) -> dict:
    try:
        return run_async(_cleanup_expired_guest_backups_async(limit=limit or settings.GUEST_CLEANUP_BATCH_LIMIT))
    except Exception:
        logger.exception("Guest backup cleanup failed")
        raise


@celery_app.task(name="socialvault.tasks.maintenance.sweep_stale_backup_jobs_task")
def sweep_stale_backup_jobs_task(limit: int = 500) -> int:
    return run_async(_sweep_stale_backup_jobs_async(limit=limit))
