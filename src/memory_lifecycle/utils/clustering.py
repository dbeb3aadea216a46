"""Greedy single-pass clustering of memory embeddings.

Entries are visited in stored order. Each unassigned entry seeds a new
cluster that absorbs every later unassigned entry whose similarity to the
seed meets the threshold. Clusters smaller than ``min_cluster_size`` are
dropped, and their members stay unmerged.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SimilarityFn = Callable[[Sequence[float], Sequence[float]], float]


@dataclass
class ClusterInfo:
    """A group of memories close enough to be consolidated."""

    cluster_id: int
    seed_title: str
    member_titles: list[str] = field(default_factory=list)
    top_tags: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.member_titles)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "seed_title": self.seed_title,
            "size": self.size,
            "member_titles": self.member_titles,
            "top_tags": self.top_tags,
        }


def greedy_clusters(
    items: Sequence[tuple[str, Sequence[float]]],
    similarity: SimilarityFn,
    threshold: float,
    min_cluster_size: int = 2,
    tags: dict[str, list[str]] | None = None,
    check_cancelled: Callable[[], None] | None = None,
) -> list[ClusterInfo]:
    """Cluster ``(title, embedding)`` pairs against each cluster's seed.

    Args:
        items: Titles with their embeddings, in stored order
        similarity: Pairwise similarity function
        threshold: Minimum similarity to the seed (inclusive)
        min_cluster_size: Clusters with fewer members are discarded
        tags: Optional title -> tags map used to label clusters
        check_cancelled: Called between seeds; raises to abort

    Returns:
        Surviving clusters in seed order.
    """
    assigned: set[int] = set()
    clusters: list[ClusterInfo] = []

    for i, (seed_title, seed_vector) in enumerate(items):
        if check_cancelled is not None:
            check_cancelled()
        if i in assigned:
            continue
        assigned.add(i)
        members = [seed_title]

        for j in range(i + 1, len(items)):
            if j in assigned:
                continue
            title, vector = items[j]
            if similarity(seed_vector, vector) >= threshold:
                members.append(title)
                assigned.add(j)

        if len(members) >= min_cluster_size:
            member_tags = [t for m in members for t in (tags or {}).get(m, [])]
            clusters.append(
                ClusterInfo(
                    cluster_id=len(clusters),
                    seed_title=seed_title,
                    member_titles=members,
                    top_tags=[t for t, _ in Counter(member_tags).most_common(5)],
                )
            )

    logger.debug("Greedy clustering: %d clusters from %d entries", len(clusters), len(items))
    return clusters
