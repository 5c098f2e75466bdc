"""
Multi-tier cache middleware.

Lookups go through three tiers: an in-process map of in-flight loads, the
shared key-value store, and finally the caller's fallback (the source of
truth). Entries carry tags; each tag owns a set in the store listing the
primary keys tagged with it, which makes bulk invalidation possible.

Store layout::

    {prefix}:cache:{key}  -> CacheEntry JSON, native TTL = entry ttl
    {prefix}:tag:{tag}    -> set of keys, TTL >= longest member TTL
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from ..store.base import KeyValueStore, guarded

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Fallback = Callable[[], Awaitable[Any]]

_MISS = object()


class CacheEntry(BaseModel):
    """Envelope stored under a primary cache key."""
    key: str
    value: Any = None
    tags: List[str] = Field(default_factory=list)
    expires_at: float


@dataclass
class _InFlight:
    tags: Tuple[str, ...]
    task: Optional["asyncio.Task[Any]"] = None
    detached: bool = False


class CacheMiddleware:
    """Get/set/invalidate-by-tag cache over a shared KeyValueStore.

    Values are stored as JSON: a hit returns plain JSON data (dicts, lists,
    scalars) even when the fallback produced a richer object.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key_prefix: str = "access",
        default_ttl: float = 300,
        store_timeout: Optional[float] = 0.5,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.store_timeout = store_timeout
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("access_core.cache")

        self._in_flight: Dict[str, _InFlight] = {}
        self._stats: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "fallback_calls": 0,
            "fallback_errors": 0,
            "dedup_joins": 0,
            "store_errors": 0,
        }

    def _entry_key(self, key: str) -> str:
        return f"{self.key_prefix}:cache:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}:tag:{tag}"

    def _count(self, metric: str, **labels):
        if self.metrics:
            self.metrics.increment_counter(metric, **labels)

    def _store_failed(self, operation: str, error: StoreUnavailableError):
        self._stats["store_errors"] += 1
        self._count("store_errors_total", operation=operation)
        self.logger.warning("Cache store unavailable", operation=operation, error=str(error))

    async def _read_entry(self, key: str) -> Optional[CacheEntry]:
        raw = await guarded(self.store.get(self._entry_key(key)), self.store_timeout, "cache.get")
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except PydanticValidationError:
            self.logger.error("Discarding malformed cache entry", key=key)
            return None

    async def get(
        self,
        key: str,
        fallback: Optional[Fallback] = None,
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Optional[Any]:
        """Return the cached value for ``key``.

        On a miss, ``fallback`` (if given) is awaited once per key per
        process no matter how many callers miss concurrently; its result is
        stored with ``ttl`` and ``tags`` and handed to every waiter. If the
        fallback raises, every waiter receives the error and nothing is
        cached. If the store cannot be read the fallback still runs but its
        result is not written back.
        """
        flight = self._in_flight.get(key)
        if flight is not None:
            return await self._join(key, flight)

        write_back = True
        try:
            entry = await self._read_entry(key)
        except StoreUnavailableError as e:
            self._store_failed("get", e)
            entry = None
            write_back = False

        if entry is not None and entry.expires_at > self._clock():
            self._stats["hits"] += 1
            self._count("cache_requests_total", result="hit")
            return entry.value

        self._stats["misses"] += 1
        self._count("cache_requests_total", result="miss")
        if fallback is None:
            return None

        # The read above suspended; another caller may have started the load.
        flight = self._in_flight.get(key)
        if flight is None:
            flight = self._start_load(key, fallback, ttl, tags, write_back)
            return await asyncio.shield(flight.task)
        return await self._join(key, flight)

    async def _join(self, key: str, flight: _InFlight) -> Any:
        self._stats["dedup_joins"] += 1
        self.logger.debug("Joining in-flight load", key=key)
        # shield: a cancelled waiter must not cancel the shared load
        return await asyncio.shield(flight.task)

    def _start_load(
        self,
        key: str,
        fallback: Fallback,
        ttl: Optional[float],
        tags: Optional[Iterable[str]],
        write_back: bool,
    ) -> _InFlight:
        flight = _InFlight(tags=tuple(sorted(set(tags or ()))))
        flight.task = asyncio.ensure_future(self._load(key, fallback, ttl, flight, write_back))
        self._in_flight[key] = flight
        flight.task.add_done_callback(lambda task: self._finish(key, flight, task))
        return flight

    def _finish(self, key: str, flight: _InFlight, task: "asyncio.Task[Any]"):
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]
        # Mark the error retrieved even if every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    async def _load(self, key: str, fallback: Fallback, ttl: Optional[float], flight: _InFlight, write_back: bool) -> Any:
        self._stats["fallback_calls"] += 1
        try:
            value = await fallback()
        except Exception as e:
            self._stats["fallback_errors"] += 1
            self._count("cache_fallback_total", outcome="error")
            self.logger.warning("Cache fallback failed", key=key, error=str(e))
            raise

        self._count("cache_fallback_total", outcome="ok")
        if write_back and not flight.detached:
            await self.set(key, value, ttl=ttl, tags=flight.tags)
            if flight.detached:
                # Invalidated while the write was in progress; the invalidation
                # may have run before the entry landed, so drop it here.
                await self._drop_late_write(key)
        elif flight.detached:
            self.logger.debug("Dropping load result invalidated mid-flight", key=key)
        return value

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Store ``value`` under ``key``. Failures are logged and return False."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False

        tag_list = sorted(set(tags or ()))
        try:
            payload = CacheEntry(
                key=key, value=value, tags=tag_list, expires_at=self._clock() + ttl
            ).model_dump_json()
        except PydanticSerializationError as e:
            self.logger.error("Cache value is not serializable", key=key, error=str(e))
            return False

        try:
            previous = await self._read_entry(key)
            # Index first: a primary entry must never exist without its tags.
            for tag in tag_list:
                tag_key = self._tag_key(tag)
                await guarded(self.store.add_to_set(tag_key, key), self.store_timeout, "cache.tag_add")
                await self._extend_index(tag_key, ttl)

            await guarded(self.store.set(self._entry_key(key), payload, ttl), self.store_timeout, "cache.set")

            if previous is not None:
                for stale in set(previous.tags) - set(tag_list):
                    await guarded(
                        self.store.remove_from_set(self._tag_key(stale), key),
                        self.store_timeout,
                        "cache.tag_remove",
                    )
        except StoreUnavailableError as e:
            self._store_failed("set", e)
            return False

        self.logger.debug("Cached value", key=key, ttl=ttl, tags=tag_list)
        return True

    async def _extend_index(self, tag_key: str, ttl: float):
        current = await guarded(self.store.ttl(tag_key), self.store_timeout, "cache.tag_ttl")
        if current is None or current < ttl:
            await guarded(self.store.expire(tag_key, ttl), self.store_timeout, "cache.tag_expire")

    def _detach(self, key: str):
        flight = self._in_flight.pop(key, None)
        if flight is not None:
            flight.detached = True

    def _detach_tag(self, tag: str):
        for key, flight in list(self._in_flight.items()):
            if tag in flight.tags:
                self._detach(key)

    async def _drop_late_write(self, key: str):
        try:
            await self._remove_entry(key)
        except StoreUnavailableError as e:
            self._store_failed("invalidate", e)

    async def invalidate(self, key: str) -> bool:
        """Remove ``key`` and its tag index memberships.

        Store failures propagate: invalidation is the consistency mechanism.
        """
        self._detach(key)
        deleted = await self._remove_entry(key)
        self._count("cache_invalidations_total", kind="key")
        self.logger.debug("Invalidated cache key", key=key, existed=deleted)
        return deleted

    async def _remove_entry(self, key: str) -> bool:
        entry = await self._read_entry(key)
        deleted = await guarded(self.store.delete(self._entry_key(key)), self.store_timeout, "cache.delete")
        if entry is not None:
            for tag in entry.tags:
                await guarded(
                    self.store.remove_from_set(self._tag_key(tag), key),
                    self.store_timeout,
                    "cache.tag_remove",
                )
        return deleted > 0

    async def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry tagged ``tag`` from the store and all tag indices.

        Returns the number of primary entries removed.
        """
        self._detach_tag(tag)
        tag_key = self._tag_key(tag)
        members = await guarded(self.store.set_members(tag_key), self.store_timeout, "cache.tag_members")

        removed = 0
        for key in sorted(members):
            entry = await self._read_entry(key)
            removed += await guarded(self.store.delete(self._entry_key(key)), self.store_timeout, "cache.delete")
            if entry is None:
                continue
            for other in entry.tags:
                if other != tag:
                    await guarded(
                        self.store.remove_from_set(self._tag_key(other), key),
                        self.store_timeout,
                        "cache.tag_remove",
                    )

        await guarded(self.store.delete(tag_key), self.store_timeout, "cache.delete")

        self._count("cache_invalidations_total", kind="tag")
        self.logger.info("Invalidated cache tag", tag=tag, count=removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get in-process cache statistics."""
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "in_flight": len(self._in_flight),
            "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
        }
