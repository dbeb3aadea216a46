"""Vector helpers built on numpy.

``cosine_similarity`` is the default collaborator injected into the
similarity engine; callers may supply any ``(a, b) -> float`` instead.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from ..errors import VectorShapeError


def as_vector(values: Sequence[float], name: str = "vector") -> np.ndarray:
    """Convert to a 1-D float64 array, rejecting empty, non-numeric or non-finite input."""
    if isinstance(values, (str, bytes)):
        raise VectorShapeError(f"{name} must be a sequence of numbers, got {type(values).__name__}", operation="as_vector")
    try:
        arr = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise VectorShapeError(f"{name} contains non-numeric values", operation="as_vector") from e
    if arr.ndim != 1 or arr.size == 0:
        raise VectorShapeError(f"{name} must be a non-empty 1-D vector, got shape {arr.shape}", operation="as_vector")
    if not np.all(np.isfinite(arr)):
        raise VectorShapeError(f"{name} contains NaN or infinite values", operation="as_vector")
    return arr


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Zero-magnitude vectors have similarity 0."""
    va = as_vector(a, "a")
    vb = as_vector(b, "b")
    if va.shape != vb.shape:
        raise VectorShapeError(
            f"Vector dimension mismatch: {va.size} vs {vb.size}",
            operation="cosine_similarity",
            context={"dim_a": int(va.size), "dim_b": int(vb.size)},
        )
    mag_a = float(np.linalg.norm(va))
    mag_b = float(np.linalg.norm(vb))
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (mag_a * mag_b), -1.0, 1.0))


def normalize(vector: Sequence[float]) -> list[float]:
    """Scale to unit length; a zero vector is returned unchanged."""
    arr = as_vector(vector)
    magnitude = float(np.linalg.norm(arr))
    if magnitude == 0.0:
        return arr.tolist()
    return (arr / magnitude).tolist()


def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Arithmetic mean of equal-length vectors, re-normalized to unit length."""
    if not vectors:
        raise VectorShapeError("Cannot average an empty set of vectors", operation="mean_vector")
    arrays = [as_vector(v) for v in vectors]
    dims = {a.size for a in arrays}
    if len(dims) != 1:
        raise VectorShapeError(
            f"Vector dimension mismatch: {sorted(dims)}",
            operation="mean_vector",
            context={"dimensions": sorted(dims)},
        )
    return normalize(np.mean(np.stack(arrays), axis=0))
