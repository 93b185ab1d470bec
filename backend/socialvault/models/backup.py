"""Backup model.

The durable artifact of a completed backup job: the scraped or extracted
content plus nested stats, scrape metadata, storage breakdown and
retention marker, all inside the JSON ``data`` column.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import String, Index
from sqlalchemy.orm import Mapped, mapped_column

from socialvault.models.base import Base, JSONPayload, UUIDMixin, TimestampMixin


BACKUP_TYPE_SNAPSHOT = "snapshot"
BACKUP_TYPE_FULL_ARCHIVE = "full_archive"

SOURCE_SCRAPE = "scrape"
SOURCE_ARCHIVE = "archive"


class Backup(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "backups"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    backup_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=BACKUP_TYPE_SNAPSHOT,
        doc="snapshot|full_archive",
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False, default=SOURCE_SCRAPE)

    data: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)

    # Uploaded archive object, when the backup came from a data export
    archive_file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    __table_args__ = (
        Index("ix_backups_user_created", "user_id", "created_at"),
    )
