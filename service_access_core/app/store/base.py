"""
Key-value store contract shared by the cache middleware and lock manager.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Optional, Set, TypeVar

from shared.circuit_breaker import CircuitBreakerOpenException
from shared.errors import StoreUnavailableError

T = TypeVar("T")


class KeyValueStore(ABC):
    """Thin async interface over a shared, networked key-value store.

    TTLs are expressed in seconds and may be fractional. Implementations must
    make ``set_if_absent`` and ``delete_if_equals`` atomic with respect to
    every other client of the same store.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value stored at ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        """Store ``value`` unconditionally, optionally expiring after ``ttl``."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Atomically store ``value`` only if ``key`` holds nothing."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` only if it currently holds ``expected``."""

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds; None if missing or persistent."""

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        """Set the lifetime of an existing key."""

    @abstractmethod
    async def add_to_set(self, key: str, *members: str) -> int:
        """Add members to the set at ``key``."""

    @abstractmethod
    async def remove_from_set(self, key: str, *members: str) -> int:
        """Remove members from the set at ``key``."""

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]:
        """Return all members of the set at ``key``."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


async def guarded(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """Await a store call with a bounded timeout.

    Timeouts, connection failures and open-circuit rejections all surface as
    ``StoreUnavailableError`` so callers can apply one failure policy.
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except StoreUnavailableError:
        raise
    except asyncio.TimeoutError as e:
        raise StoreUnavailableError(operation, "timed out", {"timeout": timeout}) from e
    except CircuitBreakerOpenException as e:
        raise StoreUnavailableError(operation, "circuit open") from e
    except (ConnectionError, OSError) as e:
        raise StoreUnavailableError(operation, str(e)) from e
