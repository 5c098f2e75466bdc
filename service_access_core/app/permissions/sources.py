"""
Role/permission data-access providers.

The aggregator reads authoritative role data only through ``RoleDataSource``.
Mutations made here do not touch any cache: whoever mutates roles must call
the permission invalidation hooks afterwards.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import asyncpg

from shared.errors import AccessLayerException
from shared.logging import get_logger
from .models import Permission, Role, RoleAssignment, utcnow


class RoleDataSource(Protocol):
    """Read side of the role/permission store."""

    async def get_role_assignments(self, actor_id: str, tenant_id: Optional[str]) -> List[RoleAssignment]:
        """Assignments for the actor in ``tenant_id`` plus platform-wide ones."""
        ...

    async def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        """Roles by id; unknown ids are skipped."""
        ...


class InMemoryRoleDataSource:
    """Role store held in process memory."""

    def __init__(self, roles: Optional[Iterable[Role]] = None):
        self.logger = get_logger("access_core.permissions.source")
        self.roles: Dict[str, Role] = {}
        self.assignments: List[RoleAssignment] = []
        for role in roles or ():
            self.add_role(role)

    def add_role(self, role: Role) -> Role:
        self.roles[role.role_id] = role
        return role

    def set_role_permissions(self, role_id: str, permissions: Iterable[Permission]) -> Role:
        role = self.roles[role_id]
        role.permissions = frozenset(permissions)
        self.logger.info("Role permissions replaced", role_id=role_id, count=len(role.permissions))
        return role

    def assign_role(
        self,
        actor_id: str,
        role_id: str,
        *,
        granted_by: Optional[str] = None,
        tenant_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        if role_id not in self.roles:
            raise KeyError(role_id)
        assignment = RoleAssignment(
            actor_id=actor_id,
            role_id=role_id,
            granted_by=granted_by,
            tenant_id=tenant_id,
            expires_at=expires_at,
        )
        self.assignments.append(assignment)
        self.logger.info("Role assigned", actor_id=actor_id, role_id=role_id, tenant_id=tenant_id)
        return assignment

    def revoke_role(self, actor_id: str, role_id: str, tenant_id: Optional[str] = None) -> bool:
        before = len(self.assignments)
        self.assignments = [
            a for a in self.assignments
            if not (a.actor_id == actor_id and a.role_id == role_id and a.tenant_id == tenant_id)
        ]
        revoked = len(self.assignments) != before
        if revoked:
            self.logger.info("Role revoked", actor_id=actor_id, role_id=role_id, tenant_id=tenant_id)
        return revoked

    async def get_role_assignments(self, actor_id: str, tenant_id: Optional[str]) -> List[RoleAssignment]:
        return [
            a for a in self.assignments
            if a.actor_id == actor_id and a.tenant_id in (tenant_id, None)
        ]

    async def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        return [self.roles[role_id] for role_id in role_ids if role_id in self.roles]


class PostgresRoleDataSource:
    """Role store in PostgreSQL.

    Permissions are stored in their dotted string form, one row per grant.
    """

    def __init__(self, dsn: str, *, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("access_core.permissions.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self, create_tables: bool = False):
        """Open the connection pool."""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=2,
                    max_size=10,
                    command_timeout=30
                )
            if create_tables:
                await self._create_tables()
            self.logger.info("PostgreSQL role source started")
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL role source", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL role source stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS roles (
                    role_id VARCHAR(255) PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    description TEXT,
                    tenant_id VARCHAR(255),
                    inherits_from TEXT[] NOT NULL DEFAULT '{}',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS role_permissions (
                    role_id VARCHAR(255) NOT NULL REFERENCES roles(role_id) ON DELETE CASCADE,
                    permission VARCHAR(512) NOT NULL,
                    PRIMARY KEY (role_id, permission)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS role_assignments (
                    actor_id VARCHAR(255) NOT NULL,
                    role_id VARCHAR(255) NOT NULL REFERENCES roles(role_id) ON DELETE CASCADE,
                    tenant_id VARCHAR(255),
                    granted_by VARCHAR(255),
                    granted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_role_assignments_actor ON role_assignments(actor_id, tenant_id);
            """)

    async def get_role_assignments(self, actor_id: str, tenant_id: Optional[str]) -> List[RoleAssignment]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT actor_id, role_id, tenant_id, granted_by, granted_at, expires_at, is_active
                FROM role_assignments
                WHERE actor_id = $1
                  AND (tenant_id = $2 OR tenant_id IS NULL)
                  AND is_active
                  AND (expires_at IS NULL OR expires_at > $3)
            """, actor_id, tenant_id, utcnow())

        return [
            RoleAssignment(
                actor_id=row["actor_id"],
                role_id=row["role_id"],
                tenant_id=row["tenant_id"],
                granted_by=row["granted_by"],
                granted_at=row["granted_at"],
                expires_at=row["expires_at"],
                is_active=row["is_active"],
            )
            for row in rows
        ]

    async def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        ids = list(role_ids)
        if not ids:
            return []

        async with self.pool.acquire() as conn:
            role_rows = await conn.fetch("""
                SELECT role_id, name, description, tenant_id, inherits_from, is_active
                FROM roles WHERE role_id = ANY($1::text[])
            """, ids)
            grant_rows = await conn.fetch("""
                SELECT role_id, permission FROM role_permissions WHERE role_id = ANY($1::text[])
            """, ids)

        grants: Dict[str, List[Permission]] = {}
        for row in grant_rows:
            grants.setdefault(row["role_id"], []).append(Permission.parse(row["permission"]))

        return [self._row_to_role(row, grants.get(row["role_id"], [])) for row in role_rows]

    def _row_to_role(self, row, permissions: List[Permission]) -> Role:
        return Role(
            role_id=row["role_id"],
            name=row["name"],
            description=row["description"],
            tenant_id=row["tenant_id"],
            inherits_from=list(row["inherits_from"] or []),
            is_active=row["is_active"],
            permissions=frozenset(permissions),
        )

    async def save_role(self, role: Role) -> None:
        """Insert or replace a role and its grants."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO roles (role_id, name, description, tenant_id, inherits_from, is_active)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (role_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        tenant_id = EXCLUDED.tenant_id,
                        inherits_from = EXCLUDED.inherits_from,
                        is_active = EXCLUDED.is_active
                """, role.role_id, role.name, role.description, role.tenant_id,
                    list(role.inherits_from), role.is_active)
                await conn.execute("DELETE FROM role_permissions WHERE role_id = $1", role.role_id)
                rows: List[Tuple[str, str]] = [(role.role_id, str(p)) for p in role.permissions]
                if rows:
                    await conn.executemany(
                        "INSERT INTO role_permissions (role_id, permission) VALUES ($1, $2)", rows
                    )
        self.logger.info("Role saved", role_id=role.role_id, permissions=len(role.permissions))
