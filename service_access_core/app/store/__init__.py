"""
Key-value store adapters.

The cache middleware and the lock manager only talk to the shared store
through ``KeyValueStore``. Redis is the production backend; the in-memory
store serves tests and single-process setups.
"""

from .base import KeyValueStore, guarded
from .memory_store import InMemoryKeyValueStore
from .redis_store import RedisKeyValueStore

__all__ = ["KeyValueStore", "guarded", "InMemoryKeyValueStore", "RedisKeyValueStore"]
