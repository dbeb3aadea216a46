"""
Tests for the similarity engine.

Tests cover:
- Ranked search with thresholds, ties and access counting
- Greedy consolidation and the merged entry's fields
- Importance decay/reinforcement bounds
- Pruning thresholds, capacity ranking and minimality
- Cancellation leaving the record untouched
"""

import math
import threading
from datetime import timedelta

import pytest
from memory_lifecycle.errors import OperationCancelledError, VectorShapeError
from memory_lifecycle.models import MemoryEntry, ProjectRecord
from memory_lifecycle.services.similarity_engine import CONSOLIDATION_DELIMITER, SimilarityEngine, composite_score

NOW = 1_700_000_000.0
DAY = 24 * 60 * 60


def _entry(title, embedding=None, importance=0.5, access_count=0, timestamp=NOW, tags=None, content=None):
    return MemoryEntry(
        title=title,
        content=content if content is not None else f"content {title}",
        embedding=embedding,
        importance=importance,
        access_count=access_count,
        timestamp=timestamp,
        tags=tags,
    )


def _record(*entries):
    return ProjectRecord(project_name="demo", memories={e.title: e for e in entries})


@pytest.fixture
def engine():
    return SimilarityEngine(clock=lambda: NOW)


@pytest.fixture
def cancelled():
    event = threading.Event()
    event.set()
    return event


# =============================================================================
# Search
# =============================================================================


class TestSearch:
    def test_returns_only_candidates_above_threshold(self, engine, embed, similar_vector):
        """Ten candidates, two above 0.5: exactly those two come back, best first."""
        query = embed("query")
        sims = [0.3, 0.9, 0.2, 0.1, 0.7, 0.0, -0.1, 0.4, 0.45, 0.05]
        record = _record(*(_entry(f"m{i}", similar_vector(query, s)) for i, s in enumerate(sims)))

        results = engine.search(record, query, limit=3, min_similarity=0.5)

        assert [r.title for r in results] == ["m1", "m4"]
        assert results[0].similarity == pytest.approx(0.9)
        assert results[1].similarity == pytest.approx(0.7)

    def test_increments_access_count_of_returned_entries_only(self, engine, embed, similar_vector):
        query = embed("q")
        record = _record(_entry("hit", similar_vector(query, 0.9)), _entry("miss", similar_vector(query, 0.1)))

        engine.search(record, query, limit=5, min_similarity=0.5)

        assert record.memories["hit"].access_count == 1
        assert record.memories["miss"].access_count == 0

    def test_ties_broken_by_importance_then_recency(self, engine):
        vec = [1.0, 0.0]
        record = _record(
            _entry("old-low", vec, importance=0.3, timestamp=NOW - 10),
            _entry("old-high", vec, importance=0.8, timestamp=NOW - 10),
            _entry("new-high", vec, importance=0.8, timestamp=NOW),
        )

        results = engine.search(record, vec, limit=3)

        assert [r.title for r in results] == ["new-high", "old-high", "old-low"]

    def test_entries_without_embedding_are_skipped(self, engine):
        record = _record(_entry("plain"), _entry("vec", [1.0, 0.0]))
        results = engine.search(record, [1.0, 0.0], limit=10)
        assert [r.title for r in results] == ["vec"]

    def test_limit_truncates(self, engine):
        record = _record(*(_entry(f"m{i}", [1.0, 0.0]) for i in range(5)))
        assert len(engine.search(record, [1.0, 0.0], limit=2)) == 2

    def test_mismatched_embedding_raises(self, engine):
        record = _record(_entry("m", [1.0, 0.0, 0.0]))
        with pytest.raises(VectorShapeError):
            engine.search(record, [1.0, 0.0], limit=1)

    def test_injected_similarity_is_used(self):
        engine = SimilarityEngine(similarity=lambda a, b: 0.42)
        record = _record(_entry("m", [1.0]))
        assert engine.search(record, [1.0])[0].similarity == 0.42


# =============================================================================
# Consolidation
# =============================================================================


class TestConsolidation:
    def test_two_similar_entries_become_one(self, engine, embed, similar_vector):
        base = embed("topic")
        record = _record(_entry("a", base), _entry("b", similar_vector(base, 0.95)))

        report = engine.consolidate(record, similarity_threshold=0.85, min_cluster_size=2)

        assert report.merged_count == 1
        assert report.cluster_count == 1
        assert len(record.memories) == 1

    def test_merged_entry_fields(self, engine, embed, similar_vector):
        base = embed("topic")
        a = _entry("a", base, importance=0.4, access_count=2, tags=["x"], content="first")
        b = _entry("b", similar_vector(base, 0.95), importance=0.8, access_count=3, tags=["y"], content="second")
        record = _record(a, b)

        engine.consolidate(record, similarity_threshold=0.85)

        merged = record.memories["b"]  # keyed by the most important member
        assert merged.content == f"first{CONSOLIDATION_DELIMITER}second"
        assert merged.importance == pytest.approx(min(1.0, 0.6 * 1.2))
        assert merged.access_count == 5
        assert merged.tags == ["x", "y"]
        assert merged.timestamp == NOW
        assert math.sqrt(sum(x * x for x in merged.embedding)) == pytest.approx(1.0)

    def test_merged_importance_is_capped(self, engine):
        record = _record(_entry("a", [1.0, 0.0], importance=1.0), _entry("b", [1.0, 0.0], importance=0.95))
        engine.consolidate(record, similarity_threshold=0.9)
        assert record.memories["a"].importance == 1.0

    def test_entry_count_drops_by_cluster_size_minus_one(self, engine):
        record = _record(
            _entry("a1", [1.0, 0.0]),
            _entry("b1", [0.0, 1.0]),
            _entry("a2", [1.0, 0.0]),
            _entry("b2", [0.0, 1.0]),
            _entry("a3", [1.0, 0.0]),
            _entry("lonely", [-1.0, 0.0]),
            _entry("plain"),
        )

        report = engine.consolidate(record, similarity_threshold=0.9, min_cluster_size=2)

        assert report.cluster_count == 2
        assert report.merged_count == (3 - 1) + (2 - 1)
        assert len(record.memories) == 7 - report.merged_count
        assert "lonely" in record.memories
        assert "plain" in record.memories

    def test_dissimilar_entries_untouched(self, engine):
        record = _record(_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0]))
        report = engine.consolidate(record, similarity_threshold=0.85)
        assert report.merged_count == 0
        assert set(record.memories) == {"a", "b"}

    def test_cancelled_consolidation_leaves_record_unchanged(self, engine, cancelled):
        record = _record(_entry("a", [1.0, 0.0]), _entry("b", [1.0, 0.0]))
        before = record.model_copy(deep=True)

        with pytest.raises(OperationCancelledError):
            engine.consolidate(record, similarity_threshold=0.9, cancel=cancelled)

        assert record == before


# =============================================================================
# Importance adjustment
# =============================================================================


class TestAdjustImportance:
    def test_reinforce_similar_and_decay_others(self, engine):
        record = _record(
            _entry("near", [1.0, 0.0], importance=0.5),
            _entry("far", [0.0, 1.0], importance=0.5),
            _entry("plain", None, importance=0.5),
        )

        report = engine.adjust_importance(record, [1.0, 0.0], similarity_threshold=0.7)

        assert record.memories["near"].importance == pytest.approx(0.55)
        assert record.memories["far"].importance == pytest.approx(0.475)
        assert record.memories["plain"].importance == pytest.approx(0.475)
        assert (report.reinforced, report.decayed) == (1, 2)

    def test_threshold_is_exclusive(self, engine):
        record = _record(_entry("edge", [1.0, 0.0], importance=0.5))
        engine.adjust_importance(record, [1.0, 0.0], similarity_threshold=1.0)
        assert record.memories["edge"].importance == pytest.approx(0.475)

    def test_bounds_hold_after_repeated_passes(self, engine):
        record = _record(_entry("up", [1.0, 0.0], importance=0.9), _entry("down", [0.0, 1.0], importance=0.02))

        for _ in range(200):
            engine.adjust_importance(record, [1.0, 0.0], similarity_threshold=0.5, decay_factor=0.5, reinforcement_factor=2.0)

        for entry in record.memories.values():
            assert 0.01 <= entry.importance <= 1.0
        assert record.memories["up"].importance == 1.0
        assert record.memories["down"].importance == 0.01

    def test_cancelled_adjustment_leaves_record_unchanged(self, engine, cancelled):
        record = _record(_entry("a", [1.0, 0.0], importance=0.5))
        with pytest.raises(OperationCancelledError):
            engine.adjust_importance(record, [1.0, 0.0], cancel=cancelled)
        assert record.memories["a"].importance == 0.5

    def test_malformed_reference_vector(self, engine):
        with pytest.raises(VectorShapeError):
            engine.adjust_importance(_record(), [])


# =============================================================================
# Pruning
# =============================================================================


class TestPrune:
    def test_threshold_pass_reasons(self, engine):
        record = _record(
            _entry("weak", importance=0.05),
            _entry("stale", importance=0.9, timestamp=NOW - 100 * DAY),
            _entry("fine", importance=0.9),
        )

        report = engine.prune(record, max_entries=10, min_importance=0.1, max_age=timedelta(days=90))

        assert report.pruned_count == 2
        assert "weak: Low importance: 0.05" in report.reasons
        assert "stale: Too old: 100 days" in report.reasons
        assert list(record.memories) == ["fine"]

    def test_capacity_pass_keeps_highest_scores(self, engine):
        record = _record(
            _entry("popular", importance=0.5, access_count=20),
            _entry("important", importance=1.0, access_count=5),
            _entry("ignored", importance=0.9, access_count=0),
            _entry("rare", importance=0.3, access_count=1),
        )

        report = engine.prune(record, max_entries=2, min_importance=0.1)

        assert set(record.memories) == {"popular", "important"}
        assert report.reasons.count("ignored: Capacity limit exceeded") == 1
        assert report.pruned_count == 2

    def test_prune_is_minimal(self, engine):
        """Entries passing both thresholds survive while under capacity."""
        entries = [_entry(f"m{i}", importance=0.2 + i * 0.05, timestamp=NOW - i * DAY) for i in range(10)]
        record = _record(*entries)

        report = engine.prune(record, max_entries=10, min_importance=0.1, max_age=timedelta(days=90))

        assert report.pruned_count == 0
        assert len(record.memories) == 10

    def test_capacity_removes_exactly_the_excess(self, engine):
        record = _record(*(_entry(f"m{i}", importance=0.5, access_count=i) for i in range(8)))

        report = engine.prune(record, max_entries=5)

        assert report.pruned_count == 3
        assert len(record.memories) == 5
        survivors = sorted(record.memories.values(), key=composite_score)
        assert min(composite_score(e) for e in survivors) >= composite_score(_entry("x", access_count=2))

    def test_cancelled_prune_leaves_record_unchanged(self, engine, cancelled):
        record = _record(_entry("weak", importance=0.05))
        with pytest.raises(OperationCancelledError):
            engine.prune(record, min_importance=0.1, cancel=cancelled)
        assert "weak" in record.memories
