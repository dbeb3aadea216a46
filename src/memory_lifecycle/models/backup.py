"""Backup bookkeeping models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

BACKUP_FORMAT_VERSION = "1.0.0"


class BackupState(str, Enum):
    """Per-project backup state machine."""

    NO_BACKUP = "no_backup"
    COOLDOWN_ACTIVE = "cooldown_active"
    READY = "ready"


@dataclass
class BackupMetadata:
    """One backup file on disk."""

    project_name: str
    timestamp: str  # sortable, from the file name
    file_path: str
    file_size: int
    is_compressed: bool = False
    version: str = BACKUP_FORMAT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_name": self.project_name,
            "timestamp": self.timestamp,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "is_compressed": self.is_compressed,
            "version": self.version,
        }


@dataclass
class BackupStats:
    """Aggregate statistics over a set of backups."""

    total_backups: int
    total_size: int
    oldest_backup: str | None
    newest_backup: str | None
    average_size: int


@dataclass
class CleanupStats:
    """Counts of backups a cleanup sweep would remove."""

    orphaned_backups: int
    corrupted_backups: int
