"""Project record and memory entry models.

Pydantic v2 models with camelCase JSON aliases matching the on-disk
``<project>.json`` format, plus the versioned migration that turns raw
JSON into a validated record.
"""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..errors import CorruptStoreError
from .validators import (
    MIN_IMPORTANCE,
    Importance,
    NonNegativeInt,
    ProjectName,
    Tags,
    Title,
    check_project_name,
    clamp_importance,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
DEFAULT_IMPORTANCE = 0.5

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utc_now_iso() -> str:
    """Current time as ISO string (UTC, Z-suffix)."""
    return _float_to_iso(time.time())


def _float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Safe numeric parsing helpers (for legacy/malformed storage data)
# ---------------------------------------------------------------------------


def _safe_float(v: Any, default: float) -> float:
    """Convert *v* to float, returning *default* on failure or non-finite values."""
    if isinstance(v, bool):
        return default
    try:
        result = float(v)
        return result if math.isfinite(result) else default
    except (TypeError, ValueError):
        return default


def _safe_int(v: Any, default: int = 0) -> int:
    """Convert *v* to a non-negative int, returning *default* on failure."""
    if isinstance(v, bool):
        return default
    try:
        return max(0, int(v))
    except (TypeError, ValueError, OverflowError):
        return default


def _safe_embedding(v: Any) -> list[float] | None:
    if not isinstance(v, list) or not v:
        return None
    out: list[float] = []
    for x in v:
        if isinstance(x, bool) or not isinstance(x, (int, float)) or not math.isfinite(x):
            return None
        out.append(float(x))
    return out


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A titled memory inside a project."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, validate_assignment=True)

    title: Title
    content: str = ""
    embedding: list[float] | None = None
    importance: Importance = DEFAULT_IMPORTANCE
    access_count: NonNegativeInt = 0
    timestamp: float = Field(default_factory=time.time)
    tags: Tags = []

    def touch(self) -> None:
        """Mark the entry as modified now."""
        self.timestamp = time.time()


class ProjectRecord(BaseModel):
    """All memories of one project, persisted as a single JSON document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_name: ProjectName
    memories: dict[str, MemoryEntry] = Field(default_factory=dict)
    summary: str = ""
    last_updated: str = Field(default_factory=utc_now_iso)
    schema_version: int = CURRENT_SCHEMA_VERSION

    @model_validator(mode="after")
    def check_memory_keys(self) -> Self:
        for key, entry in self.memories.items():
            if not key:
                raise ValueError("memory titles must be non-empty")
            if entry.title != key:
                raise ValueError(f"memory key {key!r} does not match entry title {entry.title!r}")
        return self

    @classmethod
    def empty(cls, project_name: str) -> "ProjectRecord":
        return cls(project_name=project_name)

    def touch(self) -> None:
        """Update lastUpdated to the current time."""
        self.last_updated = utc_now_iso()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Versioned migration
# ---------------------------------------------------------------------------


def _migrate_entry(title: str, raw: Any, project_name: str) -> tuple[MemoryEntry | None, bool]:
    """Build a MemoryEntry from a stored value. Returns (entry, repaired)."""
    if isinstance(raw, str):
        # Version 1 stored plain content strings
        return MemoryEntry(title=title, content=raw), True

    if not isinstance(raw, dict):
        logger.warning("Dropping memory %r in project %r: unsupported value type %s", title, project_name, type(raw).__name__)
        return None, True

    repaired = False
    content = raw.get("content", "")
    if not isinstance(content, str):
        content, repaired = "", True

    importance = _safe_float(raw.get("importance", DEFAULT_IMPORTANCE), DEFAULT_IMPORTANCE)
    clamped = clamp_importance(importance)
    if clamped != importance or "importance" not in raw:
        repaired = True

    access_count = _safe_int(raw.get("accessCount", 0))
    if access_count != raw.get("accessCount", 0):
        repaired = True

    timestamp = _safe_float(raw.get("timestamp"), time.time())
    if timestamp != raw.get("timestamp"):
        repaired = True

    embedding = _safe_embedding(raw.get("embedding"))
    if embedding is None and raw.get("embedding") is not None:
        repaired = True

    entry = MemoryEntry(
        title=title,
        content=content,
        embedding=embedding,
        importance=clamped,
        access_count=access_count,
        timestamp=timestamp,
        tags=raw.get("tags"),
    )
    if raw.get("title") != title:
        repaired = True
    return entry, repaired


def migrate_project_record(raw: Any, project_name: str) -> tuple[ProjectRecord, bool]:
    """
    Turn parsed JSON into a ProjectRecord, filling documented defaults.

    Returns the record and whether anything had to be repaired. Only the
    documented defaults are filled; a top level that is not a JSON object
    is not guessed at and raises CorruptStoreError.
    """
    if not isinstance(raw, dict):
        raise CorruptStoreError(
            f"Project file for '{project_name}' does not contain a JSON object",
            operation="migrate_project_record",
            project=project_name,
            context={"found_type": type(raw).__name__},
        )

    repaired = False

    # The file name is authoritative for the project identity.
    name = check_project_name(project_name)
    if raw.get("projectName") != name:
        logger.warning("Project %r: missing or mismatched projectName, using file name", project_name)
        repaired = True

    summary = raw.get("summary", "")
    if not isinstance(summary, str):
        logger.warning("Project %r: summary is not a string, resetting", project_name)
        summary, repaired = "", True
    elif "summary" not in raw:
        repaired = True

    last_updated = raw.get("lastUpdated")
    if not isinstance(last_updated, str) or not last_updated:
        logger.warning("Project %r: missing lastUpdated, stamping now", project_name)
        last_updated, repaired = utc_now_iso(), True

    raw_memories = raw.get("memories", {})
    if not isinstance(raw_memories, dict):
        logger.warning("Project %r: memories is %s, not an object; resetting", project_name, type(raw_memories).__name__)
        raw_memories, repaired = {}, True
    elif "memories" not in raw:
        repaired = True

    memories: dict[str, MemoryEntry] = {}
    for title, value in raw_memories.items():
        if not title:
            logger.warning("Project %r: dropping memory with empty title", project_name)
            repaired = True
            continue
        entry, entry_repaired = _migrate_entry(title, value, project_name)
        repaired = repaired or entry_repaired
        if entry is not None:
            memories[title] = entry

    version = raw.get("schemaVersion")
    if version != CURRENT_SCHEMA_VERSION:
        repaired = True

    try:
        record = ProjectRecord(
            project_name=name,
            memories=memories,
            summary=summary,
            last_updated=last_updated,
        )
    except ValidationError as e:
        raise CorruptStoreError(
            f"Project file for '{project_name}' failed validation after migration: {e}",
            operation="migrate_project_record",
            project=project_name,
        ) from e

    return record, repaired


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_IMPORTANCE",
    "MIN_IMPORTANCE",
    "MemoryEntry",
    "ProjectRecord",
    "migrate_project_record",
    "utc_now_iso",
]
