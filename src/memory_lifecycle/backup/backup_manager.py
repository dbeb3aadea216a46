"""
Cooldown-gated, rotating backups of project records.

Backups are plain copies of ``<root>/<project>.json`` stored as
``<backup_root>/<project>/<project>_<YYYY-MM-DD_HH-MM-SS-ffffff>.json``.
The UTC timestamp in the name sorts lexically in chronological order, so
retention and listing never need to stat the files.
"""

import asyncio
import functools
import json
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from ..config import Settings
from ..errors import (
    BackupCorruptedError,
    BackupFailedError,
    BackupNotFoundError,
    CooldownActiveError,
    FileSystemError,
    SourceNotFoundError,
)
from ..models import BackupMetadata, BackupState, BackupStats, CleanupStats
from ..storage import RecordStore
from ..utils.fileio import atomic_copy

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKUP_SUFFIX = ".json"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S-%f"

# <project>_<date>_<time>[-micros]; older files used "T" between date and time.
_BACKUP_NAME = re.compile(
    r"^(?P<project>.+)_(?P<date>\d{4}-\d{2}-\d{2})[_T](?P<time>\d{2}-\d{2}-\d{2})(?:-(?P<micros>\d{6}))?$"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_backup_name(project: str, when: datetime) -> str:
    return f"{project}_{when.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)}{BACKUP_SUFFIX}"


def parse_backup_name(path: Path) -> tuple[str, datetime | None]:
    """
    Split a backup file name into project name and timestamp.

    The trailing timestamp is stripped with a regex, so project names that
    contain underscores survive. Unrecognised names yield ``(stem, None)``.
    """
    stem = path.name[: -len(BACKUP_SUFFIX)] if path.name.endswith(BACKUP_SUFFIX) else path.stem
    match = _BACKUP_NAME.match(stem)
    if not match:
        return stem, None
    when = datetime.strptime(
        f"{match['date']} {match['time']} {match['micros'] or '000000'}",
        "%Y-%m-%d %H-%M-%S %f",
    ).replace(tzinfo=timezone.utc)
    return match["project"], when


def validate_backup_file(path: Path) -> bool:
    """A backup is usable if it parses as JSON and its top level is an object."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return False
    return isinstance(data, dict)


class BackupManager:
    """
    Creates, lists, validates, restores and rotates project backups.

    The cooldown is purely wall-clock: an unforced backup within
    ``cooldown_seconds`` of the previous one is refused whether or not the
    project changed in between.
    """

    def __init__(
        self,
        store: RecordStore,
        backup_root: Path,
        cooldown_seconds: float = 120.0,
        max_backups: int = 25,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            store: Record store owning the project files
            backup_root: Directory holding one subdirectory per project
            cooldown_seconds: Minimum time between unforced backups of a project
            max_backups: Backups kept per project after each new backup
            clock: Returns the current aware UTC datetime, injectable for tests
        """
        self.store = store
        self.backup_root = Path(backup_root)
        self.cooldown_seconds = cooldown_seconds
        self.max_backups = max_backups
        self._clock = clock

        self._last_backup: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, config: Settings, store: RecordStore) -> "BackupManager":
        return cls(
            store=store,
            backup_root=config.paths.backup_root,
            cooldown_seconds=config.backup.cooldown_seconds,
            max_backups=config.backup.max_backups,
        )

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args)),
            timeout=self.store.config.io_timeout_seconds,
        )

    def project_backup_dir(self, project: str) -> Path:
        return self.backup_root / project

    def _project_lock(self, project: str) -> asyncio.Lock:
        lock = self._locks.get(project)
        if lock is None:
            lock = self._locks[project] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Cooldown state
    # ------------------------------------------------------------------

    def last_backup_time(self, project: str) -> datetime | None:
        return self._last_backup.get(project)

    def retry_after(self, project: str) -> float:
        """Seconds until an unforced backup is allowed again (0 if allowed now)."""
        last = self._last_backup.get(project)
        if last is None:
            return 0.0
        elapsed = (self._clock() - last).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)

    def can_backup(self, project: str, force: bool = False) -> bool:
        return force or self.retry_after(project) <= 0.0

    def state(self, project: str) -> BackupState:
        if project not in self._last_backup:
            return BackupState.NO_BACKUP
        if self.retry_after(project) > 0.0:
            return BackupState.COOLDOWN_ACTIVE
        return BackupState.READY

    @property
    def in_progress(self) -> bool:
        return any(lock.locked() for lock in self._locks.values())

    # ------------------------------------------------------------------
    # Create / restore
    # ------------------------------------------------------------------

    async def backup(self, project: str, force: bool = False, custom_path: Path | None = None) -> Path:
        """
        Copy a project's record file into its backup directory.

        Args:
            project: Project to back up
            force: Bypass the cooldown
            custom_path: Directory to write into instead of ``<backup_root>/<project>``

        Returns:
            Path of the new backup file

        Raises:
            CooldownActiveError: If unforced and inside the cooldown window
            SourceNotFoundError: If the project has no record file
            BackupFailedError: If copying fails
        """
        source = self.store.get_project_path(project)

        async with self._project_lock(project):
            if not self.can_backup(project, force):
                last = self._last_backup.get(project)
                raise CooldownActiveError(
                    project,
                    retry_after=self.retry_after(project),
                    cooldown_seconds=self.cooldown_seconds,
                    last_backup_at=last.isoformat() if last else None,
                )

            if not await self._run(source.is_file):
                raise SourceNotFoundError(
                    f"Source file not found for project '{project}': {source}",
                    operation="backup",
                    project=project,
                    context={"source": str(source)},
                )

            now = self._clock()
            directory = Path(custom_path) if custom_path is not None else self.project_backup_dir(project)
            target = directory / format_backup_name(project, now)

            try:
                await self._run(atomic_copy, source, target)
            except (OSError, TimeoutError) as e:
                raise BackupFailedError(
                    f"Failed to create backup for '{project}': {e}",
                    operation="backup",
                    project=project,
                    context={"backup_path": str(target)},
                ) from e

            self._last_backup[project] = now
            logger.info(f"Created backup for project '{project}': {target}")

            try:
                await self.cleanup_old_backups(project, directory=directory)
            except Exception as e:
                logger.warning(f"Backup retention failed for project '{project}' in {directory}: {e}")
            return target

    async def restore(self, backup_path: Path, project: str | None = None) -> str:
        """
        Replace a project's record with a backup.

        The project name defaults to the one encoded in the backup file name.
        The record store's cache entry for the project is invalidated.

        Returns:
            The name of the restored project

        Raises:
            BackupNotFoundError: If the backup file does not exist
            BackupCorruptedError: If the backup fails validation
            BackupFailedError: If copying fails
        """
        backup_path = Path(backup_path)
        if not await self._run(backup_path.is_file):
            raise BackupNotFoundError(
                f"Backup file not found: {backup_path}",
                operation="restore",
                project=project,
                context={"backup_path": str(backup_path)},
            )
        if not await self.validate(backup_path):
            raise BackupCorruptedError(
                f"Backup file is corrupted: {backup_path}",
                operation="restore",
                project=project,
                context={"backup_path": str(backup_path)},
            )

        target_project = project or parse_backup_name(backup_path)[0]
        target = self.store.get_project_path(target_project)

        async with self.store.project_lock(target_project):
            try:
                await self._run(atomic_copy, backup_path, target)
            except (OSError, TimeoutError) as e:
                raise BackupFailedError(
                    f"Failed to restore backup {backup_path}: {e}",
                    operation="restore",
                    project=target_project,
                    context={"backup_path": str(backup_path)},
                ) from e
            self.store.clear_cache(target_project)

        logger.info(f"Restored project '{target_project}' from {backup_path}")
        return target_project

    async def validate(self, backup_path: Path) -> bool:
        return await self._run(validate_backup_file, Path(backup_path))

    # ------------------------------------------------------------------
    # Listing and statistics
    # ------------------------------------------------------------------

    def _metadata(self, path: Path) -> BackupMetadata:
        project, when = parse_backup_name(path)
        stat = path.stat()
        if when is None:
            when = datetime.fromtimestamp(stat.st_mtime, timezone.utc)
        return BackupMetadata(
            project_name=project,
            timestamp=when.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            file_path=str(path),
            file_size=stat.st_size,
            is_compressed=path.name.endswith(".gz"),
        )

    def _scan(self, directory: Path, project: str | None = None) -> list[BackupMetadata]:
        if not directory.is_dir():
            return []
        backups = []
        for path in directory.iterdir():
            if path.suffix != BACKUP_SUFFIX or not path.is_file():
                continue
            if project is not None and parse_backup_name(path)[0] != project:
                continue
            try:
                backups.append(self._metadata(path))
            except FileNotFoundError:
                continue
        return backups

    def _scan_all(self, project: str | None, directory: Path | None) -> list[BackupMetadata]:
        if directory is not None:
            backups = self._scan(directory, project)
        elif project is not None:
            backups = self._scan(self.project_backup_dir(project), project)
        else:
            backups = []
            if self.backup_root.is_dir():
                for sub in self.backup_root.iterdir():
                    if sub.is_dir():
                        backups.extend(self._scan(sub))
        return sorted(backups, key=lambda b: (b.timestamp, b.file_path), reverse=True)

    async def list_backups(self, project: str | None = None, directory: Path | None = None) -> list[BackupMetadata]:
        """Backups of one project (or all projects), newest first."""
        try:
            return await self._run(self._scan_all, project, directory)
        except (OSError, TimeoutError) as e:
            raise FileSystemError(
                f"Failed to list backups: {e}",
                cause=e,
                path=str(directory or self.backup_root),
                operation="list_backups",
                project=project,
            ) from e

    async def get_backup_stats(self, project: str | None = None) -> BackupStats:
        backups = await self.list_backups(project)
        if not backups:
            return BackupStats(total_backups=0, total_size=0, oldest_backup=None, newest_backup=None, average_size=0)
        total_size = sum(b.file_size for b in backups)
        return BackupStats(
            total_backups=len(backups),
            total_size=total_size,
            oldest_backup=backups[-1].timestamp,
            newest_backup=backups[0].timestamp,
            average_size=round(total_size / len(backups)),
        )

    # ------------------------------------------------------------------
    # Deletion and cleanup
    # ------------------------------------------------------------------

    async def delete_backup(self, backup_path: Path) -> None:
        backup_path = Path(backup_path)

        def unlink() -> bool:
            try:
                backup_path.unlink()
                return True
            except FileNotFoundError:
                return False

        if not await self._run(unlink):
            raise BackupNotFoundError(
                f"Backup file not found: {backup_path}",
                operation="delete_backup",
                context={"backup_path": str(backup_path)},
            )
        logger.debug(f"Deleted backup {backup_path}")

    async def _delete_each(self, backups: list[BackupMetadata], reason: str) -> int:
        deleted = 0
        for backup in backups:
            try:
                await self.delete_backup(Path(backup.file_path))
                deleted += 1
            except Exception as e:
                logger.warning(f"Failed to delete {reason} backup {backup.file_path}: {e}")
        return deleted

    async def cleanup_old_backups(
        self, project: str, max_backups: int | None = None, directory: Path | None = None
    ) -> int:
        """
        Keep only the newest ``max_backups`` backups of a project.

        Only files named ``<project>_<timestamp>.json`` count; anything else in
        the directory, including other projects' backups, is left alone.

        Returns:
            Number of backups deleted
        """
        keep = self.max_backups if max_backups is None else max_backups
        backups = [
            b
            for b in await self.list_backups(project, directory=directory)
            if parse_backup_name(Path(b.file_path))[1] is not None
        ]
        if len(backups) <= keep:
            return 0
        deleted = await self._delete_each(backups[keep:], "old")
        logger.info(f"Removed {deleted} old backups of project '{project}'")
        return deleted

    async def _is_orphaned(self, backup: BackupMetadata) -> bool:
        try:
            return not await self.store.exists(backup.project_name)
        except Exception as e:
            logger.warning(f"Could not check project for backup {backup.file_path}: {e}")
            return False

    async def cleanup_orphaned(self) -> int:
        """Delete backups whose project no longer has a record file."""
        orphaned = [b for b in await self.list_backups() if await self._is_orphaned(b)]
        deleted = await self._delete_each(orphaned, "orphaned")
        if deleted:
            logger.info(f"Removed {deleted} orphaned backups")
        return deleted

    async def cleanup_corrupted(self) -> int:
        """Delete backups that fail validation."""
        corrupted = [b for b in await self.list_backups() if not await self.validate(Path(b.file_path))]
        deleted = await self._delete_each(corrupted, "corrupted")
        if deleted:
            logger.info(f"Removed {deleted} corrupted backups")
        return deleted

    async def get_cleanup_stats(self) -> CleanupStats:
        """Count what ``cleanup_orphaned`` and ``cleanup_corrupted`` would remove."""
        orphaned = corrupted = 0
        for backup in await self.list_backups():
            if await self._is_orphaned(backup):
                orphaned += 1
            if not await self.validate(Path(backup.file_path)):
                corrupted += 1
        return CleanupStats(orphaned_backups=orphaned, corrupted_backups=corrupted)
