"""
Lock data models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import NotLockOwnerError


class LockRecord(BaseModel):
    """A live edit lock on one entity."""
    model_config = ConfigDict(frozen=True)

    tenant_id: Optional[str] = Field(None, description="Tenant ID, None for platform entities")
    entity_type: str = Field(..., description="Entity type, e.g. profile")
    entity_id: str = Field(..., description="Entity ID")
    locked_by: str = Field(..., description="Actor holding the lock")
    acquired_at: datetime
    expires_at: datetime
    reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class ReleaseStatus(str, Enum):
    """Outcome of a release attempt."""
    RELEASED = "released"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"


class LockReleaseResult(BaseModel):
    """Release outcome; truthy only when the lock was actually released."""
    status: ReleaseStatus
    record: Optional[LockRecord] = None

    @property
    def released(self) -> bool:
        return self.status == ReleaseStatus.RELEASED

    @property
    def reason(self) -> Optional[str]:
        if self.status == ReleaseStatus.NOT_OWNER:
            return "not lock owner"
        if self.status == ReleaseStatus.NOT_FOUND:
            return "no lock exists"
        return None

    def raise_for_owner(self, requested_by: str) -> "LockReleaseResult":
        """Raise NotLockOwnerError if the lock belonged to someone else."""
        if self.status == ReleaseStatus.NOT_OWNER and self.record is not None:
            raise NotLockOwnerError(requested_by, self.record.locked_by)
        return self

    def __bool__(self) -> bool:
        return self.released
