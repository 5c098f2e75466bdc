"""
Permission bundle cache.

Bundles are memoized per (tenant, actor) through the cache middleware and
tagged by actor and tenant. Changes to role data are handled by dropping the
affected bundles; a cached bundle is never patched in place.
"""

from typing import Optional

from shared.logging import get_logger
from ..cache.middleware import CacheMiddleware
from .aggregator import RoleAggregator
from .models import PermissionBundle

DEFAULT_BUNDLE_TTL = 30 * 60

# Empty tenant segment for platform-wide actors; tenant ids are never empty.
PLATFORM_TENANT = ""

# Carried by every bundle; edits to platform-wide roles drop them all.
ALL_BUNDLES_TAG = "permissions"


def bundle_key(actor_id: str, tenant_id: Optional[str]) -> str:
    return f"perm:{tenant_id or PLATFORM_TENANT}:{actor_id}"


def actor_tag(actor_id: str) -> str:
    return f"actor:{actor_id}"


def tenant_tag(tenant_id: Optional[str]) -> str:
    return f"tenant:{tenant_id or PLATFORM_TENANT}"


class PermissionCache:
    """Memoizes RoleAggregator output per actor."""

    def __init__(self, cache: CacheMiddleware, aggregator: RoleAggregator, ttl: float = DEFAULT_BUNDLE_TTL):
        self.cache = cache
        self.aggregator = aggregator
        self.ttl = ttl
        self.logger = get_logger("access_core.permissions.cache")

    async def get_bundle(self, actor_id: str, tenant_id: Optional[str]) -> PermissionBundle:
        async def load() -> PermissionBundle:
            return await self.aggregator.load_permission_bundle(actor_id, tenant_id)

        raw = await self.cache.get(
            bundle_key(actor_id, tenant_id),
            load,
            ttl=self.ttl,
            tags=[actor_tag(actor_id), tenant_tag(tenant_id), ALL_BUNDLES_TAG],
        )
        if isinstance(raw, PermissionBundle):
            return raw
        return PermissionBundle.model_validate(raw)

    async def invalidate_actor(self, actor_id: str) -> int:
        """Drop every cached bundle of ``actor_id`` across tenants."""
        count = await self.cache.invalidate_by_tag(actor_tag(actor_id))
        self.logger.info("Actor permissions invalidated", actor_id=actor_id, count=count)
        return count

    async def invalidate_tenant_roles(self, tenant_id: Optional[str]) -> int:
        """Drop every cached bundle in ``tenant_id``."""
        count = await self.cache.invalidate_by_tag(tenant_tag(tenant_id))
        self.logger.info("Tenant role permissions invalidated", tenant_id=tenant_id, count=count)
        return count

    async def invalidate_all(self) -> int:
        """Drop every cached bundle, e.g. after a platform role changes."""
        count = await self.cache.invalidate_by_tag(ALL_BUNDLES_TAG)
        self.logger.info("All permission bundles invalidated", count=count)
        return count
