"""
Similarity engine: search, consolidation, importance adjustment and pruning.

Every operation works on a ProjectRecord already in memory and never touches
durable storage; the caller persists the mutated record through the record
store. Long passes check an optional cancellation token between entries and
only mutate the record once all results are computed, so a cancelled pass
leaves the record exactly as it was.
"""

import logging
import math
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Protocol

from ..errors import OperationCancelledError
from ..models import ConsolidationReport, ImportanceReport, MemoryEntry, ProjectRecord, PruneReport, SearchResult
from ..models.validators import clamp_importance
from ..utils.clustering import greedy_clusters
from ..utils.similarity import as_vector, cosine_similarity, mean_vector

logger = logging.getLogger(__name__)

CONSOLIDATION_DELIMITER = "\n\n---\n\n"
DEFAULT_CONSOLIDATION_BONUS = 1.2
SECONDS_PER_DAY = 24 * 60 * 60

SimilarityFn = Callable[[Sequence[float], Sequence[float]], float]


class CancelToken(Protocol):
    """Anything with ``is_set()``: asyncio.Event, threading.Event, ..."""

    def is_set(self) -> bool: ...


def _raise_if_cancelled(cancel: CancelToken | None, operation: str, project: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(
            f"{operation} cancelled for project '{project}'; record left unchanged",
            operation=operation,
            project=project,
        )


def composite_score(entry: MemoryEntry) -> float:
    """Pruning priority: importance weighted by log access frequency."""
    return entry.importance * math.log(entry.access_count + 1)


class SimilarityEngine:
    """Vector-driven maintenance over a single project record."""

    def __init__(
        self,
        similarity: SimilarityFn = cosine_similarity,
        consolidation_bonus: float = DEFAULT_CONSOLIDATION_BONUS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            similarity: Pairwise similarity in [-1, 1]
            consolidation_bonus: Multiplier applied to the mean importance of a merged cluster
            clock: Wall-clock source in epoch seconds, used for ages and merge timestamps
        """
        self.similarity = similarity
        self.consolidation_bonus = consolidation_bonus
        self._clock = clock

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        record: ProjectRecord,
        query_vector: Sequence[float],
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SearchResult]:
        """
        Rank entries with embeddings by similarity to the query.

        Ties are broken by higher importance, then by more recent timestamp.
        Each returned entry has its access count incremented in ``record``.

        Raises:
            VectorShapeError: If the query or a stored embedding is malformed
                or of a different length
        """
        as_vector(query_vector, "query_vector")
        if limit <= 0:
            return []

        scored: list[tuple[float, MemoryEntry]] = []
        for entry in record.memories.values():
            if entry.embedding is None:
                continue
            score = self.similarity(query_vector, entry.embedding)
            if score >= min_similarity:
                scored.append((score, entry))

        scored.sort(key=lambda pair: (-pair[0], -pair[1].importance, -pair[1].timestamp))

        results = []
        for score, entry in scored[:limit]:
            entry.access_count += 1
            results.append(SearchResult(entry=entry.model_copy(deep=True), similarity=score))

        logger.debug(f"Search in '{record.project_name}': {len(results)} of {len(scored)} candidates returned")
        return results

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def _merge(self, members: list[MemoryEntry]) -> MemoryEntry:
        base = max(members, key=lambda e: e.importance)
        mean_importance = sum(e.importance for e in members) / len(members)
        tags = sorted({t for e in members for t in e.tags})
        return MemoryEntry(
            title=base.title,
            content=CONSOLIDATION_DELIMITER.join(e.content for e in members),
            embedding=mean_vector([e.embedding for e in members if e.embedding is not None]),
            importance=clamp_importance(mean_importance * self.consolidation_bonus),
            access_count=sum(e.access_count for e in members),
            timestamp=self._clock(),
            tags=tags,
        )

    def consolidate(
        self,
        record: ProjectRecord,
        similarity_threshold: float = 0.85,
        min_cluster_size: int = 2,
        cancel: CancelToken | None = None,
    ) -> ConsolidationReport:
        """
        Merge clusters of similar entries into single entries.

        Each merged entry is keyed by the title of its most important member
        and replaces every member, so the entry count drops by
        ``cluster size - 1`` per cluster.
        """
        project = record.project_name
        items = [(title, entry.embedding) for title, entry in record.memories.items() if entry.embedding is not None]
        if len(items) < max(min_cluster_size, 2):
            return ConsolidationReport()

        clusters = greedy_clusters(
            items,
            similarity=self.similarity,
            threshold=similarity_threshold,
            min_cluster_size=min_cluster_size,
            tags={title: entry.tags for title, entry in record.memories.items()},
            check_cancelled=lambda: _raise_if_cancelled(cancel, "consolidate", project),
        )

        merges: list[tuple[list[str], MemoryEntry]] = []
        for cluster in clusters:
            _raise_if_cancelled(cancel, "consolidate", project)
            if cluster.size > 1:
                members = [record.memories[title] for title in cluster.member_titles]
                merges.append((cluster.member_titles, self._merge(members)))

        _raise_if_cancelled(cancel, "consolidate", project)

        report = ConsolidationReport(cluster_count=len(clusters))
        for member_titles, merged in merges:
            for title in member_titles:
                del record.memories[title]
            record.memories[merged.title] = merged
            report.merged_count += len(member_titles) - 1
            report.merged_titles.append(merged.title)

        if report.merged_count:
            logger.info(
                f"Consolidated {report.merged_count} memories into {len(merges)} entries in project '{project}'"
            )
        return report

    # ------------------------------------------------------------------
    # Importance decay / reinforcement
    # ------------------------------------------------------------------

    def adjust_importance(
        self,
        record: ProjectRecord,
        reference_vector: Sequence[float],
        similarity_threshold: float = 0.7,
        decay_factor: float = 0.95,
        reinforcement_factor: float = 1.1,
        cancel: CancelToken | None = None,
    ) -> ImportanceReport:
        """
        Reinforce entries similar to the reference vector and decay the rest.

        Entries without an embedding carry no reinforcement signal and decay.
        Results are clamped to [0.01, 1.0].
        """
        project = record.project_name
        as_vector(reference_vector, "reference_vector")

        updates: dict[str, float] = {}
        report = ImportanceReport()
        for title, entry in record.memories.items():
            _raise_if_cancelled(cancel, "adjust_importance", project)
            if entry.embedding is not None and self.similarity(reference_vector, entry.embedding) > similarity_threshold:
                updates[title] = clamp_importance(entry.importance * reinforcement_factor)
                report.reinforced += 1
            else:
                updates[title] = clamp_importance(entry.importance * decay_factor)
                report.decayed += 1

        _raise_if_cancelled(cancel, "adjust_importance", project)
        for title, importance in updates.items():
            record.memories[title].importance = importance

        logger.debug(f"Importance pass on '{project}': {report.reinforced} reinforced, {report.decayed} decayed")
        return report

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    def prune(
        self,
        record: ProjectRecord,
        max_entries: int = 1000,
        min_importance: float = 0.1,
        max_age: timedelta = timedelta(days=90),
        cancel: CancelToken | None = None,
    ) -> PruneReport:
        """
        Drop low-importance and stale entries, then enforce the capacity cap.

        The threshold pass removes exactly the entries failing a threshold.
        The capacity pass keeps the top ``max_entries`` survivors by
        ``importance * log(access_count + 1)`` and removes only the excess.
        """
        project = record.project_name
        now = self._clock()
        max_age_seconds = max_age.total_seconds()

        doomed: list[str] = []
        reasons: list[str] = []
        survivors: list[MemoryEntry] = []
        for title, entry in record.memories.items():
            _raise_if_cancelled(cancel, "prune", project)
            age = now - entry.timestamp
            if entry.importance < min_importance:
                doomed.append(title)
                reasons.append(f"{title}: Low importance: {entry.importance}")
            elif age > max_age_seconds:
                doomed.append(title)
                reasons.append(f"{title}: Too old: {math.floor(age / SECONDS_PER_DAY)} days")
            else:
                survivors.append(entry)

        if len(survivors) > max_entries:
            ranked = sorted(survivors, key=composite_score, reverse=True)
            for entry in ranked[max_entries:]:
                _raise_if_cancelled(cancel, "prune", project)
                doomed.append(entry.title)
                reasons.append(f"{entry.title}: Capacity limit exceeded")

        _raise_if_cancelled(cancel, "prune", project)
        for title in doomed:
            del record.memories[title]

        if doomed:
            logger.info(f"Pruned {len(doomed)} memories from project '{project}', {len(record.memories)} remaining")
        return PruneReport(pruned_count=len(doomed), reasons=reasons, pruned_titles=doomed)
