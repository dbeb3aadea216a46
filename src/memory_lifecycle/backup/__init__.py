"""Project backups: manual, opportunistic and scheduled."""

from .backup_manager import BackupManager, format_backup_name, parse_backup_name, validate_backup_file
from .scheduler import BackupScheduler

__all__ = ["BackupManager", "BackupScheduler", "format_backup_name", "parse_backup_name", "validate_backup_file"]
