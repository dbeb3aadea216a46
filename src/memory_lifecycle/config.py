"""
Configuration for the memory lifecycle engine.

Each concern gets its own settings group with an environment prefix, so a
deployment can override e.g. ``MEMORY_BACKUP_COOLDOWN_SECONDS`` without
touching code. ``settings`` is the process default; components accept an
explicit settings object so tests can build isolated instances.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PathSettings(BaseSettings):
    """Filesystem locations for project records and backups."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_", extra="ignore")

    root: Path = Field(default=Path("./memory-banks"), description="Directory holding <project>.json files")
    backup_root: Path | None = Field(default=None, description="Backup directory (default: <root>/backups)")

    @model_validator(mode="after")
    def default_backup_root(self) -> PathSettings:
        if self.backup_root is None:
            self.backup_root = self.root / "backups"
        return self


class CacheSettings(BaseSettings):
    """In-process read-through cache."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_CACHE_", extra="ignore")

    ttl_seconds: float = Field(default=60.0, gt=0)
    max_size: int = Field(default=1000, ge=1)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    namespace: str = Field(default="project", min_length=1)


class StorageSettings(BaseSettings):
    """Durable I/O bounds and retry policy for the record store."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_STORAGE_", extra="ignore")

    io_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_wait: float = Field(default=1.0, ge=0)
    retry_max_wait: float = Field(default=5.0, ge=0)


class BackupSettings(BaseSettings):
    """Cooldown, retention and scheduling of project backups."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_BACKUP_", extra="ignore")

    cooldown_seconds: float = Field(default=120.0, ge=0)
    max_backups: int = Field(default=25, ge=1)
    auto_backup_enabled: bool = True
    interval_seconds: float = Field(default=600.0, gt=0)
    backup_on_write: bool = True


class MaintenanceSettings(BaseSettings):
    """Defaults for consolidation, importance adjustment and pruning."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_MAINTENANCE_", extra="ignore")

    similarity_threshold: float = Field(default=0.85, ge=-1.0, le=1.0)
    min_cluster_size: int = Field(default=2, ge=1)
    consolidation_bonus: float = Field(default=1.2, gt=0)
    importance_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    decay_factor: float = Field(default=0.95, gt=0)
    reinforcement_factor: float = Field(default=1.1, gt=0)
    max_entries: int = Field(default=1000, ge=0)
    min_importance: float = Field(default=0.1, ge=0.0, le=1.0)
    max_age_days: float = Field(default=90.0, gt=0)
    backup_before: bool = True


class Settings(BaseSettings):
    """Top-level settings aggregating every group."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_", extra="ignore")

    paths: PathSettings = Field(default_factory=PathSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


settings = Settings()
