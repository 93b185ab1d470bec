"""Celery application configuration.

- Backup jobs run on their own queue so long scrapes never starve maintenance
- Explicit routing per task
- Import-safe defaults (memory broker) for unit tests
"""

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from kombu import Queue

from socialvault.core.config import settings
from socialvault.core.logging_config import configure_logging


def _default_broker() -> str:
    # Keep imports safe in dev/tests even without Redis.
    return settings.CELERY_BROKER_URL or "memory://"


def _default_backend() -> str:
    return settings.CELERY_RESULT_BACKEND or "cache+memory://"


celery_app = Celery(
    "socialvault",
    broker=_default_broker(),
    backend=_default_backend(),
    include=[
        "socialvault.tasks.backup_jobs",
        "socialvault.tasks.maintenance",
    ],
)


celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="q.backups",
    task_queues=(
        Queue("q.backups"),
        Queue("q.maintenance"),
    ),
    task_routes={
        "socialvault.tasks.backup_jobs.run_snapshot_scrape_job_task": {"queue": "q.backups"},
        "socialvault.tasks.backup_jobs.run_archive_upload_job_task": {"queue": "q.backups"},
        "socialvault.tasks.maintenance.cleanup_expired_guest_backups_task": {"queue": "q.maintenance"},
        "socialvault.tasks.maintenance.sweep_stale_backup_jobs_task": {"queue": "q.maintenance"},
    },
    beat_schedule={
        # Default schedule: 04:00 UTC daily
        "cleanup-expired-guest-backups": {
            "task": "socialvault.tasks.maintenance.cleanup_expired_guest_backups_task",
            "schedule": crontab(minute=0, hour=4),
            "args": (),
        },
        "sweep-stale-backup-jobs": {
            "task": "socialvault.tasks.maintenance.sweep_stale_backup_jobs_task",
            "schedule": 300.0,
            "args": (),
        },
    },
)


def broker_enabled() -> bool:
    broker = celery_app.conf.broker_url
    return bool(broker) and not str(broker).startswith("memory://")


@worker_process_init.connect
def _init_worker_logging(**_kwargs) -> None:
    configure_logging()
