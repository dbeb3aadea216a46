"""Shared Pydantic types and validators for reuse across models.

Centralises tag normalisation, the importance range, and the project-name
slug constraint so every model speaks the same language.
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import AfterValidator, BeforeValidator, Field

# ---------------------------------------------------------------------------
# Tag normalisation
# ---------------------------------------------------------------------------


def normalize_tags(v: Any) -> list[str]:
    """Accept ``str | list | set | None`` and return a sorted, de-duplicated ``list[str]``.

    * ``"b, a, b"`` → ``["a", "b"]``
    * ``["a", None, " b "]`` → ``["a", "b"]``
    * ``None`` → ``[]``
    """
    if v is None:
        return []
    if isinstance(v, str):
        items = v.split(",")
    elif isinstance(v, (list, tuple, set, frozenset)):
        items = [item for item in v if item is not None]
    else:
        return []
    return sorted({s for item in items if (s := str(item).strip())})


Tags = Annotated[list[str], BeforeValidator(normalize_tags)]
"""Tag set stored as a sorted list so JSON output is stable."""


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------

MIN_IMPORTANCE = 0.01
MAX_IMPORTANCE = 1.0


def clamp_importance(value: float) -> float:
    """Clamp to [0.01, 1.0]; importance never reaches zero."""
    return max(MIN_IMPORTANCE, min(MAX_IMPORTANCE, value))


Importance = Annotated[float, Field(ge=MIN_IMPORTANCE, le=MAX_IMPORTANCE)]
"""Float in [0.01, 1.0] governing pruning priority."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Access and merge counters."""


# ---------------------------------------------------------------------------
# String constraints
# ---------------------------------------------------------------------------

PROJECT_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


def check_project_name(v: str) -> str:
    if not isinstance(v, str) or not PROJECT_NAME_PATTERN.fullmatch(v) or ".." in v:
        raise ValueError(f"invalid project name {v!r}: use letters, digits, '.', '_' and '-'")
    return v


ProjectName = Annotated[str, AfterValidator(check_project_name)]
"""Filesystem-safe project slug."""

Title = Annotated[str, Field(min_length=1)]
"""Non-empty memory title."""
