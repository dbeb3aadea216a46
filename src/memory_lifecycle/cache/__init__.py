"""In-process cache for project records."""

from .memory_cache import CacheEntry, CacheStats, MemoryCache, make_cache_key

__all__ = ["CacheEntry", "CacheStats", "MemoryCache", "make_cache_key"]
