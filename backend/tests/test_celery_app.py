"""Tests for Celery wiring of backup and maintenance tasks."""

import socialvault.tasks.backup_jobs  # noqa: F401  (register tasks)
import socialvault.tasks.maintenance  # noqa: F401
from socialvault.core.celery_app import broker_enabled, celery_app
from socialvault.tasks.runtime import run_async


def test_tasks_are_registered_and_routed():
    names = {
        "socialvault.tasks.backup_jobs.run_snapshot_scrape_job_task": "q.backups",
        "socialvault.tasks.backup_jobs.run_archive_upload_job_task": "q.backups",
        "socialvault.tasks.maintenance.cleanup_expired_guest_backups_task": "q.maintenance",
        "socialvault.tasks.maintenance.sweep_stale_backup_jobs_task": "q.maintenance",
    }
    for name, queue in names.items():
        assert name in celery_app.tasks
        assert celery_app.conf.task_routes[name] == {"queue": queue}


def test_beat_schedule_covers_maintenance():
    schedule = celery_app.conf.beat_schedule
    assert schedule["sweep-stale-backup-jobs"]["schedule"] == 300.0
    assert schedule["cleanup-expired-guest-backups"]["task"].endswith("cleanup_expired_guest_backups_task")


def test_memory_broker_counts_as_disabled():
    assert broker_enabled() is False


def test_run_async_outside_a_loop():
    async def answer():
        return 42

    assert run_async(answer()) == 42
