"""
Permission evaluation engine.
"""

import time
from typing import Iterable, List, Optional, TYPE_CHECKING

from shared.logging import get_logger
from .cache import PermissionCache
from .models import (
    WILDCARD, REASON_NO_MATCH, REASON_UNAUTHENTICATED,
    ActorContext, AuthzResult, Permission, PermissionBundle, PermissionCheck, Scope,
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


def _component_matches(held: str, requested: str) -> bool:
    return held == WILDCARD or held == requested


def _identity_holds(scope: Scope, actor: ActorContext, check: PermissionCheck) -> bool:
    """The identity constraint attached to a grant held at ``scope``."""
    if scope is Scope.GLOBAL:
        return True
    if scope is Scope.TENANT:
        return actor.tenant_id is not None and check.tenant_id == actor.tenant_id
    if scope is Scope.ACCOUNT:
        return actor.account_id is not None and check.account_id == actor.account_id
    return bool(actor.actor_id) and check.target_id == actor.actor_id


def permission_matches(permission: Permission, actor: ActorContext, check: PermissionCheck) -> bool:
    """Structural match of one held permission against a check.

    A grant at scope S satisfies a requested scope R when R <= S and the
    identity constraint of S holds. A wildcard scope is taken at R.
    """
    if not _component_matches(permission.resource, check.resource):
        return False
    if not _component_matches(permission.action, check.action):
        return False
    if permission.target_id is not None and permission.target_id != check.target_id:
        return False

    held = permission.held_scope or check.scope
    if not held.covers(check.scope):
        return False
    return _identity_holds(held, actor, check)


class PermissionEvaluator:
    """Allow/deny decisions over cached permission bundles.

    Fail-closed: anything short of a matching grant is a deny. Performs no
    I/O of its own beyond the bundle lookup.
    """

    def __init__(self, permission_cache: PermissionCache, metrics: Optional["MetricsCollector"] = None):
        self.permission_cache = permission_cache
        self.metrics = metrics
        self.logger = get_logger("access_core.permissions.evaluator")

    async def evaluate(self, actor: ActorContext, check: PermissionCheck) -> AuthzResult:
        """Evaluate ``check`` for ``actor``."""
        start_time = time.time()
        if not actor.is_authenticated:
            return self._finish(AuthzResult(allowed=False, reason=REASON_UNAUTHENTICATED), actor, check, start_time)

        bundle = await self.permission_cache.get_bundle(actor.actor_id, actor.tenant_id)
        return self._finish(self.decide(bundle, actor, check), actor, check, start_time)

    async def evaluate_many(self, actor: ActorContext, checks: Iterable[PermissionCheck]) -> List[AuthzResult]:
        """Evaluate several checks against one bundle fetch."""
        checks = list(checks)
        start_time = time.time()
        if not actor.is_authenticated:
            return [
                self._finish(AuthzResult(allowed=False, reason=REASON_UNAUTHENTICATED), actor, check, start_time)
                for check in checks
            ]

        bundle = await self.permission_cache.get_bundle(actor.actor_id, actor.tenant_id)
        return [self._finish(self.decide(bundle, actor, check), actor, check, start_time) for check in checks]

    async def effective_permissions(self, actor: ActorContext, resource: Optional[str] = None) -> List[Permission]:
        """Permissions the actor holds, optionally limited to one resource."""
        if not actor.is_authenticated:
            return []
        bundle = await self.permission_cache.get_bundle(actor.actor_id, actor.tenant_id)
        if resource is None:
            return list(bundle.permissions)
        return [p for p in bundle.permissions if _component_matches(p.resource, resource)]

    def decide(self, bundle: PermissionBundle, actor: ActorContext, check: PermissionCheck) -> AuthzResult:
        """Pure decision over a fixed bundle; bundle order is canonical."""
        for permission in bundle.permissions:
            if permission_matches(permission, actor, check):
                return AuthzResult(
                    allowed=True,
                    reason=f"granted by {permission}",
                    matched_permission=permission,
                )
        return AuthzResult(allowed=False, reason=REASON_NO_MATCH)

    def _finish(self, result: AuthzResult, actor: ActorContext, check: PermissionCheck, start_time: float) -> AuthzResult:
        duration = time.time() - start_time
        result.evaluation_time_ms = duration * 1000

        if self.metrics:
            self.metrics.increment_counter("authz_decisions_total", decision="allow" if result.allowed else "deny")
            self.metrics.observe_histogram("authz_duration_seconds", duration)

        log = self.logger.debug if result.allowed else self.logger.info
        log(
            "Permission evaluated",
            actor_id=actor.actor_id,
            tenant_id=actor.tenant_id,
            resource=check.resource,
            action=check.action,
            scope=check.scope.value,
            allowed=result.allowed,
            reason=result.reason,
        )
        return result
