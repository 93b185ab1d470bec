"""Backup job tasks."""

from __future__ import annotations

import httpx
from celery.utils.log import get_task_logger

from socialvault.core.celery_app import celery_app
from socialvault.core.config import settings
from socialvault.services.archive_import_service import ArchiveImportService
from socialvault.services.notification_service import BackupNotifier
from socialvault.services.object_store import build_object_store
from socialvault.services.scrape_providers import build_scrape_provider
from socialvault.services.snapshot_scrape_service import SnapshotScrapeService
from socialvault.tasks.runtime import run_async, task_session_factory


logger = get_task_logger(__name__)

MEDIA_DOWNLOAD_TIMEOUT_SECONDS = 30.0


@celery_app.task(name="socialvault.tasks.backup_jobs.run_snapshot_scrape_job_task")
def run_snapshot_scrape_job_task(*, job_id: str) -> bool:
    """Run a snapshot scrape job to a terminal state."""

    async def _run() -> bool:
        async with task_session_factory() as session_factory:
            async with httpx.AsyncClient(
                timeout=MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
                follow_redirects=True,
            ) as http_client:
                service = SnapshotScrapeService(
                    session_factory=session_factory,
                    object_store=build_object_store(settings),
                    provider=build_scrape_provider(settings),
                    http_client=http_client,
                    notifier=BackupNotifier.from_settings(settings),
                    settings=settings,
                )
                await service.run(job_id)
        return True

    logger.info("Starting snapshot scrape job %s", job_id)
    return run_async(_run())


@celery_app.task(name="socialvault.tasks.backup_jobs.run_archive_upload_job_task")
def run_archive_upload_job_task(*, job_id: str) -> bool:
    """Import an uploaded archive into a backup."""

    async def _run() -> bool:
        async with task_session_factory() as session_factory:
            service = ArchiveImportService(
                session_factory=session_factory,
                object_store=build_object_store(settings),
                settings=settings,
            )
            await service.run(job_id)
        return True

    logger.info("Starting archive upload job %s", job_id)
    return run_async(_run())
