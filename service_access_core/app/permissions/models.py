"""
Permission data models for the Access Core.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.errors import ValidationError

WILDCARD = "*"

REASON_UNAUTHENTICATED = "unauthenticated"
REASON_NO_MATCH = "no matching permission"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scope(str, Enum):
    """Permission scopes, ordered own < account < tenant < global."""
    OWN = "own"
    ACCOUNT = "account"
    TENANT = "tenant"
    GLOBAL = "global"

    @property
    def rank(self) -> int:
        return _SCOPE_RANK[self]

    def covers(self, other: "Scope") -> bool:
        """True if a grant at this scope is at least as broad as ``other``."""
        return self.rank >= other.rank


_SCOPE_RANK = {Scope.OWN: 0, Scope.ACCOUNT: 1, Scope.TENANT: 2, Scope.GLOBAL: 3}


class Permission(BaseModel):
    """A (resource, action, scope) grant, optionally pinned to one target.

    Any of the three components may be ``*``. The dotted form
    ``resource.action.scope`` (with an optional ``:target`` suffix) is what
    the role/permission store holds.
    """
    model_config = ConfigDict(frozen=True)

    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    scope: str = Field(..., min_length=1)
    target_id: Optional[str] = None

    @field_validator("scope", mode="before")
    @classmethod
    def _normalize_scope(cls, value: Any) -> Any:
        if isinstance(value, Scope):
            return value.value
        if value != WILDCARD:
            Scope(value)
        return value

    @classmethod
    def parse(cls, value: str) -> "Permission":
        """Parse ``resource.action.scope[:target]``."""
        body, _, target = value.partition(":")
        parts = body.split(".")
        if len(parts) != 3 or not all(parts):
            raise ValidationError(f"Invalid permission string: {value!r}", {"permission": value})
        resource, action, scope = parts
        if scope != WILDCARD and scope not in _SCOPE_VALUES:
            raise ValidationError(f"Unknown scope in permission: {value!r}", {"scope": scope})
        return cls(resource=resource, action=action, scope=scope, target_id=target or None)

    @property
    def held_scope(self) -> Optional[Scope]:
        """The concrete scope, or None for a wildcard scope."""
        return None if self.scope == WILDCARD else Scope(self.scope)

    @property
    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.resource, self.action, self.scope, self.target_id or "")

    def __str__(self) -> str:
        text = f"{self.resource}.{self.action}.{self.scope}"
        return f"{text}:{self.target_id}" if self.target_id else text


_SCOPE_VALUES = {scope.value for scope in Scope}


def parse_permissions(values: List[str]) -> FrozenSet[Permission]:
    """Parse a list of dotted permission strings."""
    return frozenset(Permission.parse(value) for value in values)


@dataclass(frozen=True)
class ActorContext:
    """Identity of the caller, built once per request by the auth layer."""
    actor_id: str
    tenant_id: Optional[str] = None
    account_id: Optional[str] = None
    roles: FrozenSet[str] = frozenset()
    is_authenticated: bool = True

    def __post_init__(self):
        object.__setattr__(self, "roles", frozenset(self.roles))

    @classmethod
    def anonymous(cls) -> "ActorContext":
        return cls(actor_id="", is_authenticated=False)


@dataclass
class Role:
    """Named bag of permissions, tenant-scoped or platform-wide."""
    role_id: str
    name: str
    permissions: FrozenSet[Permission] = frozenset()
    tenant_id: Optional[str] = None
    inherits_from: List[str] = field(default_factory=list)
    is_active: bool = True
    description: Optional[str] = None

    def applies_to_tenant(self, tenant_id: Optional[str]) -> bool:
        return self.tenant_id is None or self.tenant_id == tenant_id


@dataclass
class RoleAssignment:
    """Grant of a role to an actor."""
    actor_id: str
    role_id: str
    granted_by: Optional[str] = None
    tenant_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    granted_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now


class PermissionBundle(BaseModel):
    """All permissions an actor holds in a tenant, materialized for caching."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    tenant_id: Optional[str] = None
    roles: Tuple[str, ...] = ()
    permissions: Tuple[Permission, ...] = ()
    loaded_at: datetime = Field(default_factory=utcnow)

    @field_validator("roles")
    @classmethod
    def _sort_roles(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(sorted(set(value)))

    @field_validator("permissions")
    @classmethod
    def _canonical_permissions(cls, value: Tuple[Permission, ...]) -> Tuple[Permission, ...]:
        return tuple(sorted(set(value), key=lambda p: p.sort_key))


@dataclass(frozen=True)
class PermissionCheck:
    """A requested (resource, action, scope) plus the identities it targets."""
    resource: str
    action: str
    scope: Union[Scope, str] = Scope.TENANT
    tenant_id: Optional[str] = None
    account_id: Optional[str] = None
    target_id: Optional[str] = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "scope", Scope(self.scope))
        except ValueError as e:
            raise ValidationError(f"Unknown scope: {self.scope!r}", {"scope": str(self.scope)}) from e


@dataclass
class AuthzResult:
    """Outcome of a permission evaluation."""
    allowed: bool
    reason: str
    matched_permission: Optional[Permission] = None
    evaluation_time_ms: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed
