"""
Redis-backed key-value store.
"""

import math
from typing import Any, Awaitable, Callable, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from .base import KeyValueStore


# Compare-and-delete: only the holder of the exact value may remove the key.
DELETE_IF_EQUALS_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def _to_millis(ttl: float) -> int:
    return max(1, int(math.ceil(ttl * 1000)))


class RedisKeyValueStore(KeyValueStore):
    """KeyValueStore over ``redis.asyncio`` with a circuit breaker."""

    def __init__(
        self,
        redis_url: str,
        *,
        client: Optional[redis.Redis] = None,
        breaker: Optional[CircuitBreaker] = None,
        socket_timeout: float = 5.0,
        max_connections: Optional[int] = None,
    ):
        self.redis_url = redis_url
        self.logger = get_logger("access_core.store.redis")
        self.breaker = breaker or CircuitBreaker(name="redis")
        self.socket_timeout = socket_timeout
        self.max_connections = max_connections
        self.redis: Optional[redis.Redis] = client

    def _client(self) -> redis.Redis:
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
                max_connections=self.max_connections,
            )
        return self.redis

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            return await self.breaker.call(func, *args, **kwargs)
        except CircuitBreakerOpenException as e:
            raise StoreUnavailableError(operation, "circuit open") from e
        except RedisError as e:
            self.logger.warning("Redis command failed", operation=operation, error=str(e))
            raise StoreUnavailableError(operation, str(e)) from e

    async def start(self):
        """Open the connection pool and verify the server answers."""
        await self._call("ping", self._client().ping)
        self.logger.info("Redis store started", redis_url=self.redis_url)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis store stopped")

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self._client().ping))
        except StoreUnavailableError:
            return False

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._client().get, key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        px = _to_millis(ttl) if ttl is not None else None
        return bool(await self._call("set", self._client().set, key, value, px=px))

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        result = await self._call("set_if_absent", self._client().set, key, value, nx=True, px=_to_millis(ttl))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._client().delete, *keys))

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        result = await self._call("delete_if_equals", self._client().eval, DELETE_IF_EQUALS_SCRIPT, 1, key, expected)
        return bool(result)

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._call("ttl", self._client().pttl, key)
        # -2: missing key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def expire(self, key: str, ttl: float) -> bool:
        return bool(await self._call("expire", self._client().pexpire, key, _to_millis(ttl)))

    async def add_to_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("add_to_set", self._client().sadd, key, *members))

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("remove_from_set", self._client().srem, key, *members))

    async def set_members(self, key: str) -> Set[str]:
        members = await self._call("set_members", self._client().smembers, key)
        return set(members or ())
