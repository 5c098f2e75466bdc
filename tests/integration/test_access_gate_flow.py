"""
Integration tests for the access gate: authorization, invalidation and
locking across processes that share one key-value store.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_access_core.app.gate import LockConflict, create_access_gate
from service_access_core.app.permissions.catalog import builtin_roles
from service_access_core.app.permissions.models import ActorContext, Permission, PermissionCheck, Scope
from service_access_core.app.permissions.sources import InMemoryRoleDataSource
from service_access_core.app.store.memory_store import InMemoryKeyValueStore
from shared.metrics import MetricsCollector
from shared.test_helpers import AccessTestData, FakeClock


class TestAccessGateFlow:
    """Integration tests for the access gate flow."""

    @pytest.fixture
    def clock(self):
        return FakeClock(1_700_000_000.0)

    @pytest.fixture
    def store(self, clock):
        """Shared store standing in for Redis."""
        return InMemoryKeyValueStore(clock=clock.time)

    @pytest.fixture
    def source(self):
        source = AccessTestData.create_data_source()
        for role in builtin_roles():
            source.add_role(role)
        return source

    @pytest.fixture
    def config(self):
        return AccessTestData.create_config()

    def _gate(self, config, source, store, clock, metrics=None):
        return create_access_gate(
            config, source, store=store, metrics=metrics, cache_clock=clock.time, lock_clock=clock.now
        )

    @pytest.fixture
    def gate(self, config, source, store, clock):
        return self._gate(config, source, store, clock)

    @pytest.fixture
    def other_gate(self, config, source, store, clock):
        """A second process sharing the store."""
        return self._gate(config, source, store, clock)

    @pytest.mark.asyncio
    async def test_editor_scenario(self, gate, source):
        """Test an editor may update their own profile and nobody else's."""
        source.assign_role("7", "editor", tenant_id="3")
        actor = ActorContext(actor_id="7", tenant_id="3", roles=frozenset({"editor"}))

        own = await gate.authorize(actor, PermissionCheck("profile", "update", "own", target_id="7"))
        other = await gate.authorize(actor, PermissionCheck("profile", "update", "own", target_id="9"))

        assert own.allowed is True
        assert other.allowed is False
        assert other.reason == "no matching permission"

    @pytest.mark.asyncio
    async def test_tenant_admin_scenario(self, gate, source):
        source.assign_role("1", "tenant_admin", tenant_id="3")
        admin = AccessTestData.create_actor(actor_id="1", tenant_id="3", roles=["tenant_admin"])

        for resource, action in [("profile", "delete"), ("jobs", "approve"), ("billing", "refund")]:
            result = await gate.authorize(admin, PermissionCheck(resource, action, Scope.TENANT, tenant_id="3"))
            assert result.allowed is True

        elsewhere = await gate.authorize(admin, PermissionCheck("profile", "delete", Scope.TENANT, tenant_id="4"))
        assert elsewhere.allowed is False

    @pytest.mark.asyncio
    async def test_super_admin_from_catalog(self, gate, source):
        """Test the built-in platform role grants everything everywhere."""
        source.assign_role("root", "super_admin")
        root = AccessTestData.create_actor(actor_id="root", tenant_id="3")

        result = await gate.authorize(root, PermissionCheck("tenants", "delete", Scope.GLOBAL))

        assert result.allowed is True
        assert result.matched_permission == Permission.parse("*.*.global")

    @pytest.mark.asyncio
    async def test_revocation_visible_after_invalidation(self, gate, source):
        """Test a revoked role keeps working only until the actor is invalidated."""
        source.assign_role("7", "viewer", tenant_id="3")
        actor = AccessTestData.create_actor(actor_id="7", tenant_id="3")
        check = PermissionCheck("profile", "read", Scope.TENANT, tenant_id="3")

        assert (await gate.authorize(actor, check)).allowed

        source.revoke_role("7", "viewer", tenant_id="3")
        assert (await gate.authorize(actor, check)).allowed

        assert await gate.invalidate_actor_permissions("7") == 1
        assert not (await gate.authorize(actor, check)).allowed

    @pytest.mark.asyncio
    async def test_invalidation_reaches_other_processes(self, gate, other_gate, source):
        """Test invalidating through one gate drops the bundle for every gate."""
        source.assign_role("7", "viewer", tenant_id="3")
        actor = AccessTestData.create_actor(actor_id="7", tenant_id="3")
        check = PermissionCheck("profile", "export", Scope.TENANT, tenant_id="3")

        assert not (await other_gate.authorize(actor, check)).allowed

        source.set_role_permissions("viewer", [Permission.parse("profile.*.tenant")])
        assert await gate.invalidate_tenant_role_permissions("3") == 1

        assert (await other_gate.authorize(actor, check)).allowed

    @pytest.mark.asyncio
    async def test_platform_role_edit_invalidates_all_tenants(self, gate, source):
        source.add_role(AccessTestData.create_role("support", ["tickets.read.tenant"]))
        source.assign_role("7", "support")
        in_three = AccessTestData.create_actor(actor_id="7", tenant_id="3")
        in_four = AccessTestData.create_actor(actor_id="7", tenant_id="4")

        assert not (await gate.authorize(in_three, PermissionCheck("tickets", "close", Scope.TENANT, tenant_id="3"))).allowed
        assert not (await gate.authorize(in_four, PermissionCheck("tickets", "close", Scope.TENANT, tenant_id="4"))).allowed

        source.set_role_permissions("support", [Permission.parse("tickets.*.tenant")])
        assert await gate.invalidate_tenant_role_permissions(None) == 2

        assert (await gate.authorize(in_three, PermissionCheck("tickets", "close", Scope.TENANT, tenant_id="3"))).allowed
        assert (await gate.authorize(in_four, PermissionCheck("tickets", "close", Scope.TENANT, tenant_id="4"))).allowed

    @pytest.mark.asyncio
    async def test_bundle_ttl_bounds_staleness(self, gate, source, clock):
        """Test a missed invalidation heals once the bundle TTL elapses."""
        source.assign_role("7", "viewer", tenant_id="3")
        actor = AccessTestData.create_actor(actor_id="7", tenant_id="3")
        check = PermissionCheck("profile", "read", Scope.TENANT, tenant_id="3")
        assert (await gate.authorize(actor, check)).allowed

        source.revoke_role("7", "viewer", tenant_id="3")
        clock.advance(30 * 60)

        assert not (await gate.authorize(actor, check)).allowed

    @pytest.mark.asyncio
    async def test_lock_flow_across_processes(self, gate, other_gate, clock):
        """Test lock arbitration between two processes sharing the store."""
        assert await gate.acquire_lock("3", "profile", "p1", "A", ttl=120, reason="multi-page edit")

        conflict = await other_gate.with_lock("3", "profile", "p1", "B", 60, lambda: asyncio.sleep(0, "saved"))
        assert isinstance(conflict, LockConflict)
        assert conflict.locked_by == "A"

        assert not await other_gate.release_lock("3", "profile", "p1", "B")
        assert (await gate.is_locked("3", "profile", "p1")).locked_by == "A"

        assert await gate.release_lock("3", "profile", "p1", "A")
        assert await other_gate.with_lock("3", "profile", "p1", "B", 60, lambda: asyncio.sleep(0, "saved")) == "saved"

    @pytest.mark.asyncio
    async def test_abandoned_lock_expires(self, gate, other_gate, clock):
        assert await gate.acquire_lock("3", "profile", "p1", "A", ttl=120)

        clock.advance(120)

        assert await other_gate.is_locked("3", "profile", "p1") is None
        assert await other_gate.acquire_lock("3", "profile", "p1", "B", ttl=60)

    @pytest.mark.asyncio
    async def test_concurrent_checks_load_bundle_once(self, config, source, store, clock):
        """Test a burst of checks for a cold actor loads the bundle once."""
        metrics = MetricsCollector("access_core")
        gate = self._gate(config, source, store, clock, metrics)
        source.assign_role("7", "editor", tenant_id="3")
        actor = AccessTestData.create_actor(actor_id="7", tenant_id="3")
        check = PermissionCheck("profile", "update", "own", target_id="7")

        results = await asyncio.gather(*(gate.authorize(actor, check) for _ in range(20)))

        assert all(result.allowed for result in results)
        assert gate.permission_cache.cache.get_stats()["fallback_calls"] == 1
        assert b'authz_decisions_total{decision="allow"} 20.0' in metrics.export()
