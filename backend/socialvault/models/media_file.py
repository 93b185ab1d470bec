"""Media file model.

One row per binary object attached to a backup. The same storage path may
appear under several backups (shared object); (backup_id, file_path) is
unique.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from socialvault.models.base import Base, UUIDMixin, utc_now


class MediaFile(Base, UUIDMixin):
    __tablename__ = "media_files"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    backup_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("backups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    file_path: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    media_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="scraped_media|profile_media|archive_file",
    )
    tweet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("backup_id", "file_path", name="uq_media_files_backup_path"),
    )
