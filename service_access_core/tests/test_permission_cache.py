"""
Unit tests for PermissionCache.
"""

import pytest
from unittest.mock import patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_access_core.app.cache.middleware import CacheMiddleware
from service_access_core.app.permissions.aggregator import RoleAggregator
from service_access_core.app.permissions.cache import (
    ALL_BUNDLES_TAG, DEFAULT_BUNDLE_TTL, PermissionCache, actor_tag, bundle_key, tenant_tag,
)
from service_access_core.app.permissions.models import Permission, PermissionBundle
from service_access_core.app.store.memory_store import InMemoryKeyValueStore
from shared.test_helpers import AccessTestData, FakeClock


class TestPermissionCache:
    """Test cases for PermissionCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock(1_700_000_000.0)

    @pytest.fixture
    def store(self, clock):
        return InMemoryKeyValueStore(clock=clock.time)

    @pytest.fixture
    def source(self):
        source = AccessTestData.create_data_source()
        source.assign_role("7", "editor", tenant_id="3")
        return source

    @pytest.fixture
    def aggregator(self, source, clock):
        return RoleAggregator(source, clock=clock.now)

    @pytest.fixture
    def permission_cache(self, store, clock, aggregator):
        cache = CacheMiddleware(store, key_prefix="access", clock=clock.time)
        return PermissionCache(cache, aggregator)

    def test_key_and_tags(self):
        """Test the bundle key and tag formats."""
        assert bundle_key("7", "3") == "perm:3:7"
        assert bundle_key("7", None) == "perm::7"
        assert bundle_key("7", "global") != bundle_key("7", None)
        assert tenant_tag("global") != tenant_tag(None)
        assert actor_tag("7") == "actor:7"
        assert tenant_tag("3") == "tenant:3"
        assert DEFAULT_BUNDLE_TTL == 30 * 60

    @pytest.mark.asyncio
    async def test_get_bundle_loads_and_caches(self, permission_cache, aggregator, store):
        """Test the first lookup loads, the second is served from the store."""
        with patch.object(aggregator, "load_permission_bundle", wraps=aggregator.load_permission_bundle) as load:
            first = await permission_cache.get_bundle("7", "3")
            second = await permission_cache.get_bundle("7", "3")

        assert load.await_count == 1
        assert isinstance(second, PermissionBundle)
        assert first == second
        assert second.permissions == (Permission.parse("profile.update.own"),)

        assert await store.get("access:cache:perm:3:7") is not None
        assert await store.set_members("access:tag:actor:7") == {"perm:3:7"}
        assert await store.set_members("access:tag:tenant:3") == {"perm:3:7"}
        assert await store.set_members(f"access:tag:{ALL_BUNDLES_TAG}") == {"perm:3:7"}

    @pytest.mark.asyncio
    async def test_bundle_expires_after_ttl(self, permission_cache, source, clock):
        """Test a cached bundle is reloaded after thirty minutes."""
        await permission_cache.get_bundle("7", "3")
        source.revoke_role("7", "editor", tenant_id="3")

        clock.advance(DEFAULT_BUNDLE_TTL - 1)
        assert (await permission_cache.get_bundle("7", "3")).permissions != ()

        clock.advance(1)
        assert (await permission_cache.get_bundle("7", "3")).permissions == ()

    @pytest.mark.asyncio
    async def test_invalidate_actor_is_idempotent(self, permission_cache):
        """Test the second invalidation is a no-op."""
        await permission_cache.get_bundle("7", "3")
        await permission_cache.get_bundle("7", "4")

        assert await permission_cache.invalidate_actor("7") == 2
        assert await permission_cache.invalidate_actor("7") == 0

    @pytest.mark.asyncio
    async def test_invalidate_actor_reloads_fresh_data(self, permission_cache, source):
        """Test an assignment change is visible after invalidation."""
        assert (await permission_cache.get_bundle("7", "3")).roles == ("editor",)

        source.assign_role("7", "viewer", tenant_id="3")
        assert (await permission_cache.get_bundle("7", "3")).roles == ("editor",)

        await permission_cache.invalidate_actor("7")
        assert (await permission_cache.get_bundle("7", "3")).roles == ("editor", "viewer")

    @pytest.mark.asyncio
    async def test_invalidate_tenant_roles(self, permission_cache, source):
        """Test only bundles in the tenant are dropped."""
        source.assign_role("8", "viewer", tenant_id="3")
        await permission_cache.get_bundle("7", "3")
        await permission_cache.get_bundle("8", "3")
        await permission_cache.get_bundle("7", "4")

        assert await permission_cache.invalidate_tenant_roles("3") == 2
        assert await permission_cache.invalidate_actor("7") == 1

    @pytest.mark.asyncio
    async def test_tenant_named_global_is_not_platform(self, permission_cache):
        """Test a tenant with id "global" keeps its own bundles and tag."""
        await permission_cache.get_bundle("7", "global")
        await permission_cache.get_bundle("7", None)

        assert await permission_cache.invalidate_tenant_roles("global") == 1
        assert await permission_cache.invalidate_actor("7") == 1

    @pytest.mark.asyncio
    async def test_invalidate_all(self, permission_cache):
        await permission_cache.get_bundle("7", "3")
        await permission_cache.get_bundle("7", None)

        assert await permission_cache.invalidate_all() == 2
        assert await permission_cache.invalidate_all() == 0
