"""
Memory Module
=============
Last known good values for degraded reads.

Components:
- FallbackCache: LRU-bounded cache with an active flag owned by the health monitor
"""

from .fallback_cache import (
    FallbackCache,
    CacheEntry,
    CacheStats,
)


__all__ = [
    'FallbackCache',
    'CacheEntry',
    'CacheStats',
]
