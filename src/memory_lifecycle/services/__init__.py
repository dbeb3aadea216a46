"""Service layer: similarity engine and the memory service facade."""

from .memory_service import MemoryService
from .similarity_engine import SimilarityEngine

__all__ = ["MemoryService", "SimilarityEngine"]
