"""
Durable storage of project records.

One JSON document per project at ``<root>/<project>.json``. Reads go through
the in-process cache; writes are atomic (temp file, fsync, rename) and
serialised per project. Blocking file I/O runs in the default executor,
bounded by a timeout and retried with tenacity when the failure is transient.
"""

import asyncio
import functools
import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..cache import MemoryCache, make_cache_key
from ..config import Settings, StorageSettings
from ..errors import CorruptStoreError, FileSystemError, InvalidRecordError, NotFoundError, is_retryable_error
from ..models import ProjectRecord, migrate_project_record
from ..models.validators import check_project_name
from ..utils.fileio import atomic_write_text, read_text_or_none

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROJECT_FILE_SUFFIX = ".json"


class RecordStore:
    """
    Async persistence layer for project records.

    Writers hold a per-project ``asyncio.Lock``; readers never block on it.
    Every record handed out is a deep copy, so cached state cannot be
    mutated through a returned object.
    """

    def __init__(
        self,
        root: Path,
        cache: MemoryCache | None = None,
        storage_config: StorageSettings | None = None,
        cache_namespace: str = "project",
    ):
        self.root = Path(root)
        self.cache = cache if cache is not None else MemoryCache()
        self.config = storage_config if storage_config is not None else StorageSettings()
        self.cache_namespace = cache_namespace

        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}

    @classmethod
    def from_settings(cls, config: Settings, cache: MemoryCache | None = None) -> "RecordStore":
        return cls(
            root=config.paths.root,
            cache=cache if cache is not None else MemoryCache.from_settings(config.cache),
            storage_config=config.storage,
            cache_namespace=config.cache.namespace,
        )

    # ------------------------------------------------------------------
    # Paths and bookkeeping
    # ------------------------------------------------------------------

    def get_project_path(self, project: str) -> Path:
        """Path of the project's JSON file. Rejects unsafe project names."""
        try:
            check_project_name(project)
        except (TypeError, ValueError) as e:
            raise InvalidRecordError(str(e), operation="get_project_path", project=str(project)) from e
        return self.root / f"{project}{PROJECT_FILE_SUFFIX}"

    def _cache_key(self, project: str) -> str:
        return make_cache_key(self.cache_namespace, project)

    def project_lock(self, project: str) -> asyncio.Lock:
        """The lock serialising writers of one project."""
        lock = self._locks.get(project)
        if lock is None:
            lock = self._locks[project] = asyncio.Lock()
        return lock

    def _bump_generation(self, project: str) -> None:
        self._generations[project] = self._generations.get(project, 0) + 1

    def clear_cache(self, project: str | None = None) -> int:
        """Drop cached records for one project, or for every project."""
        if project is None:
            return self.cache.invalidate_pattern(f"^{self.cache_namespace}:")
        # A reader that started before the invalidation must not repopulate.
        self._bump_generation(project)
        return int(self.cache.delete(self._cache_key(project)))

    # ------------------------------------------------------------------
    # Bounded, retried I/O
    # ------------------------------------------------------------------

    async def _call_io(self, func: Callable[..., T], *args: Any, operation: str, project: str | None, path: Path) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args)),
                timeout=self.config.io_timeout_seconds,
            )
        except TimeoutError as e:
            raise FileSystemError(
                f"{operation} timed out after {self.config.io_timeout_seconds}s",
                cause=e,
                path=str(path),
                operation=operation,
                project=project,
            ) from e
        except OSError as e:
            raise FileSystemError(
                f"{operation} failed for {path}: {e}",
                cause=e,
                path=str(path),
                operation=operation,
                project=project,
            ) from e

    async def _run_io(self, func: Callable[..., T], *args: Any, operation: str, project: str | None, path: Path) -> T:
        """Run blocking I/O with timeout and retry for transient failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=1, min=self.config.retry_min_wait, max=self.config.retry_max_wait),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying {operation} for {path} (attempt {attempt.retry_state.attempt_number})")
                return await self._call_io(func, *args, operation=operation, project=project, path=path)
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def _load(self, project: str) -> tuple[ProjectRecord | None, bool]:
        """
        Load a record from disk without touching the cache.

        Returns:
            (record, repaired); record is None when the file does not exist
        """
        path = self.get_project_path(project)
        try:
            text = await self._run_io(read_text_or_none, path, operation="read_project", project=project, path=path)
        except UnicodeDecodeError as e:
            raise self._corrupt(project, path, f"not valid UTF-8: {e}") from e

        if text is None:
            return None, False

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise self._corrupt(project, path, f"invalid JSON at line {e.lineno} column {e.colno}") from e

        try:
            record, repaired = migrate_project_record(raw, project)
        except CorruptStoreError as e:
            e.context.setdefault("path", str(path))
            raise
        if repaired:
            logger.warning(f"Repaired malformed fields in project '{project}'")
        return record, repaired

    @staticmethod
    def _corrupt(project: str, path: Path, detail: str) -> CorruptStoreError:
        return CorruptStoreError(
            f"Project file for '{project}' is unreadable ({detail}); restore it from a backup",
            operation="read_project",
            project=project,
            context={"path": str(path)},
        )

    async def read(self, project: str) -> ProjectRecord:
        """
        Read a project record.

        A missing project is created with an empty record and persisted.
        Records with repaired fields are written back once.

        Raises:
            CorruptStoreError: If the file exists but cannot be parsed
            FileSystemError: If the underlying I/O fails
        """
        key = self._cache_key(project)
        cached = self.cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)

        generation = self._generations.get(project, 0)
        record, repaired = await self._load(project)

        if record is None or repaired:
            async with self.project_lock(project):
                if self._generations.get(project, 0) != generation:
                    # A writer got there first; its result is authoritative.
                    record, repaired = await self._load(project)
                if record is None:
                    logger.info(f"Creating new project record for '{project}'")
                    record = ProjectRecord.empty(project)
                    return (await self._write_unlocked(record)).model_copy(deep=True)
                if repaired:
                    return (await self._write_unlocked(record)).model_copy(deep=True)

        if self._generations.get(project, 0) == generation:
            self.cache.set(key, record.model_copy(deep=True))
        return record

    async def exists(self, project: str) -> bool:
        path = self.get_project_path(project)
        return await self._run_io(path.is_file, operation="project_exists", project=project, path=path)

    async def ensure_exists(self, project: str) -> ProjectRecord:
        """Read the project, creating an empty record if needed."""
        return await self.read(project)

    async def list_projects(self) -> list[str]:
        """Names of all projects with a record file under the root, sorted."""

        def scan() -> list[str]:
            if not self.root.is_dir():
                return []
            names = []
            for entry in self.root.iterdir():
                if entry.suffix != PROJECT_FILE_SUFFIX or not entry.is_file():
                    continue
                try:
                    names.append(check_project_name(entry.stem))
                except ValueError:
                    continue
            return sorted(names)

        return await self._run_io(scan, operation="list_projects", project=None, path=self.root)

    async def get_project_metadata(self, project: str) -> dict[str, Any]:
        """
        Size, modification time and memory count of a project.

        Raises:
            NotFoundError: If the project file does not exist
        """
        path = self.get_project_path(project)

        def stat() -> os.stat_result | None:
            try:
                return path.stat()
            except FileNotFoundError:
                return None

        st = await self._run_io(stat, operation="get_project_metadata", project=project, path=path)
        if st is None:
            raise NotFoundError.for_project(project, operation="get_project_metadata")
        record = await self.read(project)
        return {
            "size": st.st_size,
            "last_modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
            "memory_count": len(record.memories),
        }

    async def get_storage_stats(self) -> dict[str, Any]:
        """Project count, total bytes on disk and cache counters."""
        projects = await self.list_projects()

        def total_size() -> int:
            size = 0
            for name in projects:
                try:
                    size += (self.root / f"{name}{PROJECT_FILE_SUFFIX}").stat().st_size
                except FileNotFoundError:
                    continue
            return size

        return {
            "total_projects": len(projects),
            "total_size": await self._run_io(total_size, operation="get_storage_stats", project=None, path=self.root),
            "cache": self.cache.stats().to_dict(),
            "cache_hit_ratio": self.cache.hit_ratio(),
        }

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _write_unlocked(self, record: ProjectRecord) -> ProjectRecord:
        """Validate and persist a record. Caller holds the project lock."""
        try:
            validated = ProjectRecord.model_validate(record.model_dump())
        except ValidationError as e:
            raise InvalidRecordError(
                f"Project record for '{record.project_name}' failed validation: {e}",
                operation="write_project",
                project=record.project_name,
            ) from e

        project = validated.project_name
        path = self.get_project_path(project)
        payload = validated.to_json()

        await self._run_io(atomic_write_text, path, payload, operation="write_project", project=project, path=path)

        self._bump_generation(project)
        self.cache.set(self._cache_key(project), validated.model_copy(deep=True))
        logger.debug(f"Wrote project '{project}' ({len(validated.memories)} memories)")
        return validated

    async def write(self, record: ProjectRecord) -> ProjectRecord:
        """
        Persist a full project record atomically, exactly as given.

        Returns:
            A copy of the record as written
        """
        self.get_project_path(record.project_name)
        async with self.project_lock(record.project_name):
            written = await self._write_unlocked(record)
        return written.model_copy(deep=True)

    @asynccontextmanager
    async def edit(self, project: str, touch: bool = True) -> AsyncIterator[ProjectRecord]:
        """
        Read-modify-write a project under its lock.

        Starts from the cached record when there is one. The yielded record is
        written once when the block exits cleanly, with ``lastUpdated``
        refreshed unless ``touch`` is False, and discarded if the block raises.
        """
        async with self.project_lock(project):
            cached = self.cache.get(self._cache_key(project))
            if cached is not None:
                record = cached.model_copy(deep=True)
            else:
                record, _ = await self._load(project)
                if record is None:
                    record = ProjectRecord.empty(project)
            yield record
            if touch:
                record.touch()
            await self._write_unlocked(record)

    async def delete(self, project: str) -> bool:
        """
        Remove a project's record file.

        Returns:
            True if a file was removed
        """
        path = self.get_project_path(project)

        def unlink() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        async with self.project_lock(project):
            removed = await self._run_io(unlink, operation="delete_project", project=project, path=path)
            self._bump_generation(project)
            self.cache.delete(self._cache_key(project))
        if removed:
            logger.info(f"Deleted project '{project}'")
        return removed
