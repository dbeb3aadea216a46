"""Result types returned by the similarity engine and maintenance passes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .memory import MemoryEntry


@dataclass
class SearchResult:
    """A memory ranked by similarity to a query vector."""

    entry: MemoryEntry
    similarity: float

    @property
    def title(self) -> str:
        return self.entry.title

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.entry.title,
            "content": self.entry.content,
            "similarity": round(self.similarity, 4),
            "importance": self.entry.importance,
            "access_count": self.entry.access_count,
            "tags": list(self.entry.tags),
        }


@dataclass
class ConsolidationReport:
    """Outcome of one consolidation pass."""

    merged_count: int = 0
    cluster_count: int = 0
    merged_titles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged_count": self.merged_count,
            "cluster_count": self.cluster_count,
            "merged_titles": self.merged_titles,
        }


@dataclass
class ImportanceReport:
    """Outcome of one decay/reinforcement pass."""

    reinforced: int = 0
    decayed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"reinforced": self.reinforced, "decayed": self.decayed}


@dataclass
class PruneReport:
    """Outcome of one pruning pass. ``reasons`` has one line per removed entry."""

    pruned_count: int = 0
    reasons: list[str] = field(default_factory=list)
    pruned_titles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pruned_count": self.pruned_count,
            "reasons": self.reasons,
            "pruned_titles": self.pruned_titles,
        }


@dataclass
class MaintenancePolicy:
    """Parameters for a scheduled maintenance pass over one project."""

    similarity_threshold: float = 0.85
    min_cluster_size: int = 2
    reference_vector: list[float] | None = None
    importance_threshold: float = 0.7
    decay_factor: float = 0.95
    reinforcement_factor: float = 1.1
    max_entries: int = 1000
    min_importance: float = 0.1
    max_age: timedelta = timedelta(days=90)
    consolidate: bool = True
    prune: bool = True
    backup_before: bool = True

    @classmethod
    def from_settings(cls, config: Any, reference_vector: list[float] | None = None) -> MaintenancePolicy:
        """Build a policy from a MaintenanceSettings instance."""
        return cls(
            similarity_threshold=config.similarity_threshold,
            min_cluster_size=config.min_cluster_size,
            reference_vector=reference_vector,
            importance_threshold=config.importance_threshold,
            decay_factor=config.decay_factor,
            reinforcement_factor=config.reinforcement_factor,
            max_entries=config.max_entries,
            min_importance=config.min_importance,
            max_age=timedelta(days=config.max_age_days),
            backup_before=config.backup_before,
        )


@dataclass
class MaintenanceReport:
    """Combined result of consolidation, importance adjustment and pruning."""

    project: str
    entries_before: int = 0
    entries_after: int = 0
    backup_path: str | None = None
    consolidation: ConsolidationReport | None = None
    importance: ImportanceReport | None = None
    pruning: PruneReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "entries_before": self.entries_before,
            "entries_after": self.entries_after,
            "backup_path": self.backup_path,
            "consolidation": self.consolidation.to_dict() if self.consolidation else None,
            "importance": self.importance.to_dict() if self.importance else None,
            "pruning": self.pruning.to_dict() if self.pruning else None,
        }
