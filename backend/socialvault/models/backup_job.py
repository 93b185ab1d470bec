"""Backup job model.

Tracks one requested backup operation (archive upload or snapshot scrape)
from creation to its terminal state. Kind-specific working state (lifecycle
sub-state, live metrics, provider run ids, cancellation flag) lives in the
JSON payload; see socialvault.schemas.backup_jobs.JobPayload.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import String, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from socialvault.models.base import Base, JSONPayload, UUIDMixin, TimestampMixin


JOB_KIND_ARCHIVE_UPLOAD = "archive_upload"
JOB_KIND_SNAPSHOT_SCRAPE = "snapshot_scrape"
JOB_KINDS = (JOB_KIND_ARCHIVE_UPLOAD, JOB_KIND_SNAPSHOT_SCRAPE)

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class BackupJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "backup_jobs"

    # Owning account or guest session id
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    job_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="archive_upload|snapshot_scrape",
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=STATUS_QUEUED,
        doc="queued|processing|completed|failed",
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)

    result_backup_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("backups.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Error handling
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_backup_jobs_user_status", "user_id", "status"),
        Index("ix_backup_jobs_user_created", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def lifecycle_state(self) -> str | None:
        return (self.payload or {}).get("lifecycle_state")

    @property
    def was_cancelled(self) -> bool:
        """Cancellation is a failed status plus the payload lifecycle marker."""
        return self.status == STATUS_FAILED and self.lifecycle_state == "cancelled"
