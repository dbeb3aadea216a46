"""Data models for the memory lifecycle engine."""

from .backup import BackupMetadata, BackupState, BackupStats, CleanupStats
from .memory import MemoryEntry, ProjectRecord, migrate_project_record
from .reports import (
    ConsolidationReport,
    ImportanceReport,
    MaintenancePolicy,
    MaintenanceReport,
    PruneReport,
    SearchResult,
)

__all__ = [
    "BackupMetadata",
    "BackupState",
    "BackupStats",
    "CleanupStats",
    "ConsolidationReport",
    "ImportanceReport",
    "MaintenancePolicy",
    "MaintenanceReport",
    "MemoryEntry",
    "ProjectRecord",
    "PruneReport",
    "SearchResult",
    "migrate_project_record",
]
