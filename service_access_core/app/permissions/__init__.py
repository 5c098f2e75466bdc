"""
Permissions package for the Access Core.

- models: Scope, Permission, Role, RoleAssignment, ActorContext, bundles
- catalog: Built-in platform roles
- sources: Role/permission data-access providers
- aggregator: Flattens role assignments into permission bundles
- cache: Memoizes bundles per actor with tag invalidation
- evaluator: Allow/deny decisions over the scope hierarchy
"""

from .aggregator import RoleAggregator
from .cache import PermissionCache
from .catalog import builtin_roles
from .evaluator import PermissionEvaluator, permission_matches
from .models import (
    WILDCARD,
    ActorContext,
    AuthzResult,
    Permission,
    PermissionBundle,
    PermissionCheck,
    Role,
    RoleAssignment,
    Scope,
)
from .sources import InMemoryRoleDataSource, PostgresRoleDataSource, RoleDataSource

__all__ = [
    "WILDCARD",
    "ActorContext",
    "AuthzResult",
    "InMemoryRoleDataSource",
    "Permission",
    "PermissionBundle",
    "PermissionCache",
    "PermissionCheck",
    "PermissionEvaluator",
    "PostgresRoleDataSource",
    "Role",
    "RoleAggregator",
    "RoleAssignment",
    "RoleDataSource",
    "Scope",
    "builtin_roles",
    "permission_matches",
]
