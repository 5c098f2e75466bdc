"""
Role aggregation: flatten an actor's live role assignments into a bundle.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from shared.errors import PermissionSourceError
from shared.logging import get_logger
from .models import Permission, PermissionBundle, Role, utcnow
from .sources import RoleDataSource


class RoleAggregator:
    """Loads permission bundles from the authoritative role store.

    Never caches; that is PermissionCache's job.
    """

    def __init__(self, source: RoleDataSource, clock: Callable[[], datetime] = utcnow):
        self.source = source
        self._clock = clock
        self.logger = get_logger("access_core.permissions.aggregator")

    async def load_permission_bundle(self, actor_id: str, tenant_id: Optional[str]) -> PermissionBundle:
        """Union the permissions of every live role the actor holds in the tenant."""
        now = self._clock()
        try:
            assignments = await self.source.get_role_assignments(actor_id, tenant_id)
            live_role_ids = sorted({a.role_id for a in assignments if a.is_live(now)})
            roles = await self._resolve_roles(live_role_ids, tenant_id)
        except PermissionSourceError:
            raise
        except Exception as e:
            self.logger.error(
                "Failed to load role data",
                actor_id=actor_id,
                tenant_id=tenant_id,
                error=str(e)
            )
            raise PermissionSourceError(
                "Failed to load role data",
                {"actor_id": actor_id, "tenant_id": tenant_id}
            ) from e

        permissions: Set[Permission] = set()
        for role in roles:
            permissions.update(role.permissions)

        bundle = PermissionBundle(
            actor_id=actor_id,
            tenant_id=tenant_id,
            roles=tuple(role.role_id for role in roles),
            permissions=tuple(permissions),
            loaded_at=now,
        )

        self.logger.debug(
            "Permission bundle loaded",
            actor_id=actor_id,
            tenant_id=tenant_id,
            roles=list(bundle.roles),
            permissions=len(bundle.permissions)
        )
        return bundle

    async def _resolve_roles(self, role_ids: List[str], tenant_id: Optional[str]) -> List[Role]:
        """Fetch roles and, transitively, the roles they inherit from."""
        resolved: Dict[str, Role] = {}
        pending = list(role_ids)
        seen: Set[str] = set()

        while pending:
            batch = [role_id for role_id in pending if role_id not in seen]
            seen.update(batch)
            if not batch:
                break

            pending = []
            for role in await self.source.get_roles(batch):
                if not role.is_active or not role.applies_to_tenant(tenant_id):
                    continue
                resolved[role.role_id] = role
                pending.extend(parent for parent in role.inherits_from if parent not in seen)

        return sorted(resolved.values(), key=lambda r: r.role_id)
