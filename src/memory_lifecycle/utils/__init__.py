"""Utility helpers for vectors, clustering and file I/O."""

from .clustering import ClusterInfo, greedy_clusters
from .similarity import cosine_similarity, mean_vector, normalize

__all__ = ["ClusterInfo", "cosine_similarity", "greedy_clusters", "mean_vector", "normalize"]
