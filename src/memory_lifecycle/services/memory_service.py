"""
Memory Service - entry point for memory lifecycle operations.

Wires the cache, record store, backup manager, backup scheduler and
similarity engine together and exposes the operations callers use:
storing, fetching, updating and deleting memories, similarity search,
manual backup/restore and scheduled maintenance.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from ..backup import BackupManager, BackupScheduler
from ..cache import MemoryCache
from ..config import Settings, settings
from ..errors import InvalidRecordError, MemoryEngineError, NotFoundError
from ..models import MaintenancePolicy, MaintenanceReport, MemoryEntry, ProjectRecord, SearchResult
from ..models.memory import DEFAULT_IMPORTANCE
from ..models.validators import clamp_importance
from ..storage import RecordStore
from ..utils.similarity import as_vector
from .similarity_engine import CancelToken, SimilarityEngine, SimilarityFn

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Sequence[float]]
UpdateMode = Literal["replace", "append", "prepend"]


class MemoryService:
    """
    Facade over the memory lifecycle components.

    Every successful write is followed by an opportunistic backup when the
    project is outside its cooldown. A failed opportunistic backup is logged
    and never hides the completed write.

    Reads (``fetch``, ``search``) never take the project's writer lock. The
    accesses they count are queued and persisted by a per-project background
    flush; ``flush_access_counts()`` waits for it.
    """

    def __init__(
        self,
        storage: RecordStore,
        backups: BackupManager,
        engine: SimilarityEngine | None = None,
        scheduler: BackupScheduler | None = None,
        embed: EmbedFn | None = None,
        config: Settings | None = None,
    ):
        self.config = config if config is not None else settings
        self.storage = storage
        self.backups = backups
        self.engine = engine if engine is not None else SimilarityEngine(
            consolidation_bonus=self.config.maintenance.consolidation_bonus
        )
        self.scheduler = scheduler
        self.embed = embed

        self._pending_access: dict[str, Counter[str]] = {}
        self._access_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        embed: EmbedFn | None = None,
        similarity: SimilarityFn | None = None,
    ) -> "MemoryService":
        """Build a fully wired service from settings."""
        config = config if config is not None else settings
        cache = MemoryCache.from_settings(config.cache)
        storage = RecordStore.from_settings(config, cache=cache)
        backups = BackupManager.from_settings(config, storage)
        engine_kwargs: dict[str, Any] = {"consolidation_bonus": config.maintenance.consolidation_bonus}
        if similarity is not None:
            engine_kwargs["similarity"] = similarity
        scheduler = None
        if config.backup.auto_backup_enabled:
            scheduler = BackupScheduler(backups, interval_seconds=config.backup.interval_seconds)
        return cls(
            storage=storage,
            backups=backups,
            engine=SimilarityEngine(**engine_kwargs),
            scheduler=scheduler,
            embed=embed,
            config=config,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the cache sweeper and, if configured, the backup scheduler."""
        await self.storage.cache.start_sweeper()
        if self.scheduler is not None:
            await self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.flush_access_counts()
        await self.storage.cache.stop_sweeper()

    async def _after_write(self, project: str) -> None:
        if not self.config.backup.backup_on_write or not self.backups.can_backup(project):
            return
        try:
            await self.backups.backup(project)
        except Exception as e:
            logger.warning(f"Opportunistic backup failed for project '{project}': {e}")

    # ------------------------------------------------------------------
    # Access counting
    # ------------------------------------------------------------------

    def _record_access(self, project: str, titles: Iterable[str]) -> None:
        pending = self._pending_access.setdefault(project, Counter())
        pending.update(titles)
        if not pending:
            return
        task = self._access_tasks.get(project)
        if task is None or task.done():
            self._access_tasks[project] = asyncio.create_task(self._flush_project_access(project))

    async def _flush_project_access(self, project: str) -> None:
        try:
            while self._pending_access.get(project):
                async with self.storage.edit(project, touch=False) as record:
                    hits = self._pending_access.pop(project, Counter())
                    for title, count in hits.items():
                        entry = record.memories.get(title)
                        if entry is not None:
                            entry.access_count += count
        except Exception as e:
            logger.warning(f"Failed to persist access counts for project '{project}': {e}")

    async def flush_access_counts(self) -> None:
        """Wait until every queued access count has been written."""
        while True:
            tasks = [t for t in self._access_tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def store(
        self,
        project: str,
        title: str,
        content: str,
        embedding: Sequence[float] | None = None,
        tags: list[str] | None = None,
        importance: float | None = None,
    ) -> MemoryEntry:
        """
        Create or overwrite a memory.

        When no embedding is given and an ``embed`` function is configured,
        the content is embedded with it. Overwriting keeps the entry's access
        count.
        """
        if embedding is None and self.embed is not None:
            embedding = self.embed(content)
        if embedding is not None:
            embedding = as_vector(embedding, "embedding").tolist()

        async with self.storage.edit(project) as record:
            previous = record.memories.get(title)
            try:
                entry = MemoryEntry(
                    title=title,
                    content=content,
                    embedding=embedding,
                    importance=clamp_importance(importance) if importance is not None else DEFAULT_IMPORTANCE,
                    access_count=previous.access_count if previous else 0,
                    tags=tags,
                )
            except ValidationError as e:
                raise InvalidRecordError(
                    f"Invalid memory '{title}': {e}", operation="store", project=project, title=title
                ) from e
            record.memories[title] = entry

        logger.info(f"Stored memory '{title}' in project '{project}'")
        await self._after_write(project)
        return entry.model_copy(deep=True)

    async def fetch(self, project: str, title: str) -> str:
        """
        Return a memory's content and count the access.

        Raises:
            NotFoundError: If the memory does not exist
        """
        record = await self.storage.read(project)
        entry = record.memories.get(title)
        if entry is None:
            raise NotFoundError.for_memory(project, title, operation="fetch")
        self._record_access(project, [title])
        return entry.content

    async def get_entry(self, project: str, title: str) -> MemoryEntry:
        """Return the full entry without counting an access."""
        record = await self.storage.read(project)
        entry = record.memories.get(title)
        if entry is None:
            raise NotFoundError.for_memory(project, title, operation="get_entry")
        return entry

    async def update(
        self,
        project: str,
        title: str,
        content: str,
        mode: UpdateMode = "replace",
        remove_text: str | None = None,
    ) -> MemoryEntry:
        """
        Modify an existing memory.

        ``remove_text`` (first occurrence) is removed from the existing content
        before ``append`` or ``prepend`` joins the new content with a newline.

        Raises:
            NotFoundError: If the memory does not exist
            InvalidRecordError: If the mode is unknown
        """
        if mode not in ("replace", "append", "prepend"):
            raise InvalidRecordError(
                f"Unknown update mode {mode!r}", operation="update", project=project, title=title
            )

        async with self.storage.edit(project) as record:
            entry = record.memories.get(title)
            if entry is None:
                raise NotFoundError.for_memory(project, title, operation="update")

            existing = entry.content
            if remove_text and remove_text in existing:
                existing = existing.replace(remove_text, "", 1)

            if mode == "append":
                entry.content = existing + "\n" + content
            elif mode == "prepend":
                entry.content = content + "\n" + existing
            else:
                entry.content = content
            entry.touch()
            updated = entry.model_copy(deep=True)

        logger.info(f"Updated memory '{title}' in project '{project}' ({mode})")
        await self._after_write(project)
        return updated

    async def delete(self, project: str, title: str) -> None:
        """
        Remove a memory.

        Raises:
            NotFoundError: If the memory does not exist
        """
        async with self.storage.edit(project) as record:
            if title not in record.memories:
                raise NotFoundError.for_memory(project, title, operation="delete")
            del record.memories[title]

        logger.info(f"Deleted memory '{title}' from project '{project}'")
        await self._after_write(project)

    async def list_memories(self, project: str) -> list[str]:
        """Titles of a project's memories in stored order."""
        record = await self.storage.read(project)
        return list(record.memories)

    async def list_projects(self) -> list[str]:
        return await self.storage.list_projects()

    async def get_summary(self, project: str) -> str:
        return (await self.storage.read(project)).summary

    async def update_summary(self, project: str, content: str, mode: Literal["replace", "append"] = "replace") -> str:
        """Set or extend the project summary. Returns the new summary."""
        async with self.storage.edit(project) as record:
            if mode == "append" and record.summary:
                record.summary = record.summary + "\n" + content
            else:
                record.summary = content
            summary = record.summary

        await self._after_write(project)
        return summary

    async def reset_project(self, project: str, backup: bool = True) -> Path | None:
        """
        Clear every memory and the summary of a project.

        When ``backup`` is set and the project exists, a forced backup is
        taken first.

        Returns:
            Path of the pre-reset backup, if one was taken
        """
        backup_path = None
        if backup and await self.storage.exists(project):
            backup_path = await self.backups.backup(project, force=True)

        await self.storage.write(ProjectRecord.empty(project))
        logger.info(f"Reset project '{project}'")
        return backup_path

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        project: str,
        query_vector: Sequence[float],
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SearchResult]:
        """Rank memories by similarity to a vector; returned hits count as accesses."""
        record = await self.storage.read(project)
        results = self.engine.search(record, query_vector, limit=limit, min_similarity=min_similarity)
        self._record_access(project, [r.title for r in results])
        return results

    async def search_text(
        self,
        project: str,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SearchResult]:
        """Embed the query with the configured ``embed`` function, then search."""
        if self.embed is None:
            raise MemoryEngineError(
                "No embedding function configured for text search",
                operation="search_text",
                project=project,
                code="EMBEDDER_NOT_CONFIGURED",
            )
        return await self.search(project, list(self.embed(query)), limit=limit, min_similarity=min_similarity)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def backup_now(self, project: str, force: bool = False) -> Path:
        return await self.backups.backup(project, force=force)

    async def restore(self, backup_path: Path, project: str | None = None) -> str:
        return await self.backups.restore(backup_path, project)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(
        self,
        project: str,
        policy: MaintenancePolicy | None = None,
        cancel: CancelToken | None = None,
    ) -> MaintenanceReport:
        """
        Consolidate, adjust importance and prune one project as a single pass.

        All three steps mutate one in-memory record that is written once at
        the end. If any step is cancelled or fails, nothing is written.
        """
        policy = policy if policy is not None else MaintenancePolicy.from_settings(self.config.maintenance)
        report = MaintenanceReport(project=project)

        if policy.backup_before and await self.storage.exists(project):
            path = await self.backups.backup(project, force=True)
            report.backup_path = str(path)

        async with self.storage.edit(project) as record:
            report.entries_before = len(record.memories)
            if policy.consolidate:
                report.consolidation = self.engine.consolidate(
                    record,
                    similarity_threshold=policy.similarity_threshold,
                    min_cluster_size=policy.min_cluster_size,
                    cancel=cancel,
                )
            if policy.reference_vector is not None:
                report.importance = self.engine.adjust_importance(
                    record,
                    policy.reference_vector,
                    similarity_threshold=policy.importance_threshold,
                    decay_factor=policy.decay_factor,
                    reinforcement_factor=policy.reinforcement_factor,
                    cancel=cancel,
                )
            if policy.prune:
                report.pruning = self.engine.prune(
                    record,
                    max_entries=policy.max_entries,
                    min_importance=policy.min_importance,
                    max_age=policy.max_age,
                    cancel=cancel,
                )
            report.entries_after = len(record.memories)

        logger.info(
            f"Maintenance on '{project}': {report.entries_before} -> {report.entries_after} memories"
        )
        return report

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self, project: str | None = None) -> dict[str, Any]:
        """Storage, cache, backup and scheduler statistics."""
        backup_stats = await self.backups.get_backup_stats(project)
        stats: dict[str, Any] = {
            "storage": await self.storage.get_storage_stats(),
            "cache_summary": self.storage.cache.summary(),
            "backups": {
                "total_backups": backup_stats.total_backups,
                "total_size": backup_stats.total_size,
                "oldest_backup": backup_stats.oldest_backup,
                "newest_backup": backup_stats.newest_backup,
                "average_size": backup_stats.average_size,
            },
            "scheduler": self.scheduler.get_stats() if self.scheduler is not None else None,
        }
        if project is not None:
            stats["project"] = await self.storage.get_project_metadata(project)
            stats["backup_state"] = self.backups.state(project).value
        return stats
