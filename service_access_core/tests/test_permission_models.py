"""
Unit tests for permission data models.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_access_core.app.permissions.catalog import builtin_roles
from service_access_core.app.permissions.models import (
    ActorContext, AuthzResult, Permission, PermissionBundle, PermissionCheck, RoleAssignment, Scope,
    parse_permissions,
)
from shared.errors import ValidationError


class TestScope:
    """Test cases for the scope order."""

    def test_total_order(self):
        """Test own < account < tenant < global."""
        ordered = [Scope.OWN, Scope.ACCOUNT, Scope.TENANT, Scope.GLOBAL]
        assert sorted(ordered, key=lambda s: s.rank) == ordered

    def test_covers(self):
        """Test broader scopes cover narrower ones and not the reverse."""
        assert Scope.GLOBAL.covers(Scope.OWN)
        assert Scope.TENANT.covers(Scope.TENANT)
        assert not Scope.ACCOUNT.covers(Scope.TENANT)
        assert not Scope.OWN.covers(Scope.GLOBAL)


class TestPermission:
    """Test cases for Permission."""

    def test_parse(self):
        """Test the dotted form parses into components."""
        permission = Permission.parse("profile.update.own")
        assert permission.resource == "profile"
        assert permission.action == "update"
        assert permission.scope == "own"
        assert permission.held_scope is Scope.OWN
        assert permission.target_id is None

    def test_parse_with_target(self):
        """Test the optional target suffix."""
        permission = Permission.parse("profile.update.own:42")
        assert permission.target_id == "42"
        assert str(permission) == "profile.update.own:42"

    def test_parse_wildcards(self):
        """Test every component may be a wildcard."""
        permission = Permission.parse("*.*.*")
        assert permission.held_scope is None
        assert str(permission) == "*.*.*"

    @pytest.mark.parametrize("value", ["profile.update", "profile..own", "a.b.c.d", "profile.update.planet"])
    def test_parse_rejects_malformed(self, value):
        """Test malformed permission strings raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            Permission.parse(value)
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_scope_enum_is_normalized(self):
        """Test constructing with a Scope stores its plain value."""
        permission = Permission(resource="jobs", action="create", scope=Scope.TENANT)
        assert permission.scope == "tenant"
        assert str(permission) == "jobs.create.tenant"
        assert permission == Permission.parse("jobs.create.tenant")

    def test_permissions_are_hashable(self):
        """Test duplicate grants collapse in a set."""
        assert len(parse_permissions(["a.b.own", "a.b.own", "a.b.tenant"])) == 2


class TestPermissionCheck:
    """Test cases for PermissionCheck."""

    def test_default_scope_is_tenant(self):
        check = PermissionCheck(resource="jobs", action="read")
        assert check.scope is Scope.TENANT

    def test_string_scope_is_coerced(self):
        check = PermissionCheck(resource="jobs", action="read", scope="own")
        assert check.scope is Scope.OWN

    def test_unknown_scope_rejected(self):
        """Test a check cannot request a wildcard or unknown scope."""
        with pytest.raises(ValidationError):
            PermissionCheck(resource="jobs", action="read", scope="*")


class TestPermissionBundle:
    """Test cases for PermissionBundle."""

    def test_canonical_order(self):
        """Test bundles built from the same grants in any order are equal."""
        grants = ["profile.update.own", "*.*.tenant", "jobs.create.tenant", "profile.update.own"]
        first = PermissionBundle(
            actor_id="7", tenant_id="3", roles=("b", "a"),
            permissions=tuple(Permission.parse(g) for g in grants),
        )
        second = PermissionBundle(
            actor_id="7", tenant_id="3", roles=("a", "b", "a"),
            permissions=tuple(Permission.parse(g) for g in reversed(grants)),
            loaded_at=first.loaded_at,
        )

        assert first == second
        assert first.roles == ("a", "b")
        assert [str(p) for p in first.permissions] == ["*.*.tenant", "jobs.create.tenant", "profile.update.own"]

    def test_json_round_trip(self):
        """Test a bundle survives the cache's JSON form."""
        bundle = PermissionBundle(actor_id="7", tenant_id="3", permissions=(Permission.parse("a.b.own:7"),))
        assert PermissionBundle.model_validate_json(bundle.model_dump_json()) == bundle


class TestActorAndAssignment:
    """Test cases for ActorContext and RoleAssignment."""

    def test_anonymous_actor(self):
        actor = ActorContext.anonymous()
        assert actor.is_authenticated is False
        assert actor.roles == frozenset()

    def test_roles_coerced_to_frozenset(self):
        actor = ActorContext(actor_id="7", roles=["editor", "editor"])
        assert actor.roles == frozenset({"editor"})

    def test_assignment_liveness(self):
        """Test expired and inactive assignments are not live."""
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert RoleAssignment(actor_id="7", role_id="r").is_live(now)
        assert RoleAssignment(actor_id="7", role_id="r", expires_at=now + timedelta(seconds=1)).is_live(now)
        assert not RoleAssignment(actor_id="7", role_id="r", expires_at=now).is_live(now)
        assert not RoleAssignment(actor_id="7", role_id="r", is_active=False).is_live(now)

    def test_authz_result_truthiness(self):
        assert AuthzResult(allowed=True, reason="granted")
        assert not AuthzResult(allowed=False, reason="no matching permission")


class TestBuiltinRoles:
    """Test cases for the built-in role catalog."""

    def test_catalog_contents(self):
        roles = {role.role_id: role for role in builtin_roles()}
        assert Permission.parse("*.*.global") in roles["super_admin"].permissions
        assert Permission.parse("*.*.tenant") in roles["tenant_admin"].permissions
        assert roles["account_owner"].inherits_from == ["account_manager"]
        assert all(role.tenant_id is None for role in roles.values())

    def test_catalog_returns_fresh_objects(self):
        """Test mutating one catalog copy does not leak into the next."""
        first = builtin_roles()
        first[0].permissions = frozenset()
        assert builtin_roles()[0].permissions
