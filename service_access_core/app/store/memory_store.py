"""
In-process key-value store.

Useful for tests and single-process deployments. Every operation completes
without awaiting anything, so each call is atomic under asyncio.
"""

import time
from typing import Callable, Dict, Optional, Set, Tuple, Union

from .base import KeyValueStore

_Value = Union[str, Set[str]]


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed KeyValueStore with lazy TTL eviction."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[_Value]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    async def get(self, key: str) -> Optional[str]:
        value = self._live(key)
        if isinstance(value, set):
            raise TypeError(f"{key} holds a set")
        return value

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        self._data[key] = (value, self._expiry(ttl))
        return True

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl))
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._data[key]
        return True

    async def ttl(self, key: str) -> Optional[float]:
        if self._live(key) is None:
            return None
        expires_at = self._data[key][1]
        if expires_at is None:
            return None
        return expires_at - self._clock()

    async def expire(self, key: str, ttl: float) -> bool:
        value = self._live(key)
        if value is None:
            return False
        self._data[key] = (value, self._expiry(ttl))
        return True

    async def add_to_set(self, key: str, *members: str) -> int:
        current = self._live(key)
        if current is None:
            current = set()
            self._data[key] = (current, None)
        elif not isinstance(current, set):
            raise TypeError(f"{key} does not hold a set")
        added = len(set(members) - current)
        current.update(members)
        return added

    async def remove_from_set(self, key: str, *members: str) -> int:
        current = self._live(key)
        if not isinstance(current, set):
            return 0
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            del self._data[key]
        return removed

    async def set_members(self, key: str) -> Set[str]:
        current = self._live(key)
        if not isinstance(current, set):
            return set()
        return set(current)

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)
