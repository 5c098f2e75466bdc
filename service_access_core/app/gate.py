"""
AccessGate: the single entry point request handlers use for authorization
and entity locking.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

from shared.circuit_breaker import CircuitBreaker
from shared.config import AccessCoreConfig
from shared.errors import LockConflictError, PermissionDeniedError, StoreUnavailableError, UnauthenticatedError
from shared.logging import bind_actor_context, configure_logging, get_logger
from shared.metrics import MetricsCollector
from .cache.middleware import CacheMiddleware
from .locks.manager import LockManager
from .locks.models import LockRecord, LockReleaseResult
from .permissions.aggregator import RoleAggregator
from .permissions.cache import PermissionCache
from .permissions.evaluator import PermissionEvaluator
from .permissions.models import (
    REASON_UNAUTHENTICATED, ActorContext, AuthzResult, Permission, PermissionCheck,
)
from .permissions.sources import PostgresRoleDataSource, RoleDataSource
from .store.base import KeyValueStore
from .store.redis_store import RedisKeyValueStore

T = TypeVar("T")


@dataclass(frozen=True)
class LockConflict:
    """Returned by ``with_lock`` when someone else holds the lock."""
    record: Optional[LockRecord]

    @property
    def locked_by(self) -> Optional[str]:
        return self.record.locked_by if self.record else None


class AccessGate:
    """Facade over the permission evaluator and the lock manager."""

    def __init__(
        self,
        evaluator: PermissionEvaluator,
        locks: LockManager,
        *,
        store: Optional[KeyValueStore] = None,
        role_source: Optional[RoleDataSource] = None,
    ):
        self.evaluator = evaluator
        self.locks = locks
        self.store = store
        self.role_source = role_source
        self.logger = get_logger("access_core.gate")

    @property
    def permission_cache(self) -> PermissionCache:
        return self.evaluator.permission_cache

    async def start(self):
        """Verify the shared store is reachable and open the role store."""
        if isinstance(self.store, RedisKeyValueStore):
            await self.store.start()
        if isinstance(self.role_source, PostgresRoleDataSource):
            await self.role_source.start()
        self.logger.info("Access gate started")

    async def stop(self):
        if self.store is not None:
            await self.store.close()
        if isinstance(self.role_source, PostgresRoleDataSource):
            await self.role_source.stop()
        self.logger.info("Access gate stopped")

    async def health_check(self) -> bool:
        return self.store is not None and await self.store.ping()

    # Authorization

    async def authorize(self, actor: ActorContext, check: PermissionCheck) -> AuthzResult:
        with bind_actor_context(actor.actor_id, actor.tenant_id):
            return await self.evaluator.evaluate(actor, check)

    async def require(self, actor: ActorContext, check: PermissionCheck) -> AuthzResult:
        """Like ``authorize`` but raises on deny."""
        result = await self.authorize(actor, check)
        if result.allowed:
            return result
        if result.reason == REASON_UNAUTHENTICATED:
            raise UnauthenticatedError()
        raise PermissionDeniedError(
            result.reason,
            {"resource": check.resource, "action": check.action, "scope": check.scope.value}
        )

    async def authorize_many(self, actor: ActorContext, checks: Iterable[PermissionCheck]) -> List[AuthzResult]:
        with bind_actor_context(actor.actor_id, actor.tenant_id):
            return await self.evaluator.evaluate_many(actor, checks)

    async def effective_permissions(self, actor: ActorContext, resource: Optional[str] = None) -> List[Permission]:
        with bind_actor_context(actor.actor_id, actor.tenant_id):
            return await self.evaluator.effective_permissions(actor, resource)

    async def invalidate_actor_permissions(self, actor_id: str) -> int:
        """Call after any change to the actor's role assignments."""
        return await self.permission_cache.invalidate_actor(actor_id)

    async def invalidate_tenant_role_permissions(self, tenant_id: Optional[str]) -> int:
        """Call after any change to a tenant role's permission set.

        A platform-wide role (no tenant) affects every tenant, so passing
        None drops every cached bundle.
        """
        if tenant_id is None:
            return await self.permission_cache.invalidate_all()
        return await self.permission_cache.invalidate_tenant_roles(tenant_id)

    # Locking

    async def acquire_lock(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        actor_id: str,
        ttl: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> bool:
        return await self.locks.acquire(tenant_id, entity_type, entity_id, actor_id, ttl, reason)

    async def release_lock(self, tenant_id: Optional[str], entity_type: str, entity_id: str, actor_id: str) -> LockReleaseResult:
        return await self.locks.release(tenant_id, entity_type, entity_id, actor_id)

    async def is_locked(self, tenant_id: Optional[str], entity_type: str, entity_id: str) -> Optional[LockRecord]:
        return await self.locks.is_locked(tenant_id, entity_type, entity_id)

    @asynccontextmanager
    async def hold_lock(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        actor_id: str,
        ttl: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> AsyncIterator[LockRecord]:
        """Hold the entity lock for the duration of the block.

        Raises LockConflictError (carrying the current holder's record) if
        the lock cannot be taken. The lock is released on every exit path.
        """
        with bind_actor_context(actor_id, tenant_id):
            record = await self.locks.try_acquire(tenant_id, entity_type, entity_id, actor_id, ttl, reason)
            if record is None:
                raise LockConflictError(await self.locks.is_locked(tenant_id, entity_type, entity_id))

        try:
            yield record
        finally:
            with bind_actor_context(actor_id, tenant_id):
                await self._release_after_use(record)

    async def with_lock(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        actor_id: str,
        ttl: Optional[float],
        fn: Callable[[], Awaitable[T]],
        reason: Optional[str] = None,
    ) -> Union[T, LockConflict]:
        """Run ``fn`` under the entity lock, or return a LockConflict.

        Exceptions raised by ``fn`` propagate after the lock is released.
        """
        with bind_actor_context(actor_id, tenant_id):
            record = await self.locks.try_acquire(tenant_id, entity_type, entity_id, actor_id, ttl, reason)
            if record is None:
                return LockConflict(record=await self.locks.is_locked(tenant_id, entity_type, entity_id))

            try:
                return await fn()
            finally:
                await self._release_after_use(record)

    async def _release_after_use(self, record: LockRecord):
        try:
            await self.locks.release(record.tenant_id, record.entity_type, record.entity_id, record.locked_by)
        except StoreUnavailableError as e:
            # The TTL frees the lock; do not mask the block's own outcome.
            self.logger.error(
                "Lock release failed, leaving it to expire",
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                actor_id=record.locked_by,
                error=str(e)
            )


def create_access_gate(
    config: AccessCoreConfig,
    data_source: Optional[RoleDataSource] = None,
    *,
    store: Optional[KeyValueStore] = None,
    metrics: Optional[MetricsCollector] = None,
    cache_clock: Optional[Callable[[], float]] = None,
    lock_clock: Optional[Callable[[], datetime]] = None,
) -> AccessGate:
    """Wire one process's access core.

    Builds a single CacheMiddleware shared by every consumer. Without a
    ``data_source`` the role store is read from Postgres at ``postgres_dsn``.
    """
    configure_logging(config.service_name, config.log_level)

    if store is None:
        store = RedisKeyValueStore(
            config.redis_url,
            breaker=CircuitBreaker(
                failure_threshold=config.circuit_breaker_failure_threshold,
                recovery_timeout=config.circuit_breaker_recovery_timeout,
                name="redis",
            ),
            max_connections=config.redis_max_connections,
        )

    if data_source is None:
        data_source = PostgresRoleDataSource(config.postgres_dsn)

    cache_kwargs: Dict[str, Any] = {"clock": cache_clock} if cache_clock else {}
    lock_kwargs: Dict[str, Any] = {"clock": lock_clock} if lock_clock else {}

    cache = CacheMiddleware(
        store,
        key_prefix=config.cache_key_prefix,
        default_ttl=config.cache_default_ttl_seconds,
        store_timeout=config.store_timeout_seconds,
        metrics=metrics,
        **cache_kwargs,
    )
    permission_cache = PermissionCache(
        cache,
        RoleAggregator(data_source),
        ttl=config.permission_bundle_ttl_seconds,
    )
    locks = LockManager(
        store,
        key_prefix=config.cache_key_prefix,
        store_timeout=config.store_timeout_seconds,
        default_ttl=config.lock_default_ttl_seconds,
        max_ttl=config.lock_max_ttl_seconds,
        metrics=metrics,
        **lock_kwargs,
    )
    return AccessGate(PermissionEvaluator(permission_cache, metrics), locks, store=store, role_source=data_source)
