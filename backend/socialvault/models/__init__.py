"""
Database Models
===============

SQLAlchemy models for backup jobs, backups and their stored media.
"""

from socialvault.models.base import (
    Base,
    TimestampMixin,
    UUIDMixin,
    generate_uuid,
)
from socialvault.models.backup import Backup
from socialvault.models.backup_job import BackupJob
from socialvault.models.media_file import MediaFile
from socialvault.models.api_usage import ApiUsageLog

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "generate_uuid",
    "Backup",
    "BackupJob",
    "MediaFile",
    "ApiUsageLog",
]
