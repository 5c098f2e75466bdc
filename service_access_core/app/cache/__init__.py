"""
Cache package for the Access Core.

Provides the tagged, deduplicating cache middleware that sits between
request handlers and the source-of-truth stores. Prefer explicit
invalidation over short TTLs when the underlying data changes.
"""

from .middleware import CacheEntry, CacheMiddleware

__all__ = ["CacheEntry", "CacheMiddleware"]
