import hashlib
import math
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from memory_lifecycle.backup import BackupManager  # noqa: E402
from memory_lifecycle.cache import MemoryCache  # noqa: E402
from memory_lifecycle.config import (  # noqa: E402
    BackupSettings,
    CacheSettings,
    PathSettings,
    Settings,
    StorageSettings,
)
from memory_lifecycle.services import MemoryService, SimilarityEngine  # noqa: E402
from memory_lifecycle.storage import RecordStore  # noqa: E402

EMBED_DIM = 16


def hash_embed(text: str, dim: int = EMBED_DIM) -> list[float]:
    """Deterministic pseudo-embedding for tests: identical text gives identical unit vectors."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    while len(digest) < dim:
        digest += hashlib.sha256(digest).digest()
    raw = [(b / 127.5) - 1.0 for b in digest[:dim]]
    norm = math.sqrt(sum(x * x for x in raw)) or 1.0
    return [x / norm for x in raw]


def vector_with_similarity(base: list[float], similarity: float) -> list[float]:
    """Unit vector whose cosine similarity to the unit vector ``base`` is exactly ``similarity``."""
    # Build a unit vector orthogonal to base via Gram-Schmidt on a basis axis
    axis = [0.0] * len(base)
    axis[0 if abs(base[0]) < 0.9 else 1] = 1.0
    dot = sum(a * b for a, b in zip(axis, base))
    ortho = [a - dot * b for a, b in zip(axis, base)]
    norm = math.sqrt(sum(x * x for x in ortho))
    ortho = [x / norm for x in ortho]
    sin = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return [similarity * b + sin * o for b, o in zip(base, ortho)]


class FakeMonotonic:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUTCClock:
    """Manually advanced UTC wall clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def embed():
    return hash_embed


@pytest.fixture
def similar_vector():
    return vector_with_similarity


@pytest.fixture
def monotonic_clock():
    return FakeMonotonic()


@pytest.fixture
def utc_clock():
    return FakeUTCClock()


@pytest.fixture
def test_settings(tmp_path):
    """Settings rooted in a temp directory with fast retries."""
    return Settings(
        paths=PathSettings(root=tmp_path / "banks"),
        cache=CacheSettings(ttl_seconds=60, max_size=100),
        storage=StorageSettings(io_timeout_seconds=5, retry_attempts=2, retry_min_wait=0, retry_max_wait=0),
        backup=BackupSettings(auto_backup_enabled=False, backup_on_write=False),
    )


@pytest.fixture
def cache(monotonic_clock):
    return MemoryCache(ttl_seconds=60, max_size=100, clock=monotonic_clock)


@pytest.fixture
def record_store(test_settings, cache):
    return RecordStore.from_settings(test_settings, cache=cache)


@pytest.fixture
def backup_manager(test_settings, record_store, utc_clock):
    return BackupManager(
        store=record_store,
        backup_root=test_settings.paths.backup_root,
        cooldown_seconds=120,
        max_backups=25,
        clock=utc_clock,
    )


@pytest.fixture
def service(test_settings, record_store, backup_manager, embed):
    return MemoryService(
        storage=record_store,
        backups=backup_manager,
        engine=SimilarityEngine(),
        embed=embed,
        config=test_settings,
    )
