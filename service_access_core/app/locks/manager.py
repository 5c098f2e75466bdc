"""
Distributed entity lock manager.

Locks live in the shared key-value store under
``{prefix}:lock:{tenant}:{entity_type}:{entity_id}``. Acquisition is a single
atomic set-if-absent carrying the store's native TTL, so an abandoned lock
disappears on its own without a sweeper. Release is an atomic
compare-and-delete against the exact record the releasing actor read.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from shared.errors import StoreUnavailableError, ValidationError
from shared.logging import get_logger
from ..permissions.models import utcnow
from ..store.base import KeyValueStore, guarded
from .models import LockRecord, LockReleaseResult, ReleaseStatus

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

# Empty tenant segment for platform-wide entities; tenant ids are never empty.
PLATFORM_TENANT = ""


class LockManager:
    """TTL-bounded, ownership-checked mutual exclusion per entity."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key_prefix: str = "access",
        store_timeout: Optional[float] = 0.5,
        default_ttl: float = 900,
        max_ttl: float = 86400,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self.store_timeout = store_timeout
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("access_core.locks")

    def lock_key(self, tenant_id: Optional[str], entity_type: str, entity_id: str) -> str:
        return f"{self.key_prefix}:lock:{tenant_id or PLATFORM_TENANT}:{entity_type}:{entity_id}"

    def _record(self, operation: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("lock_operations_total", operation=operation, outcome=outcome)

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0 or ttl > self.max_ttl:
            raise ValidationError(
                "Lock TTL out of range",
                {"ttl": ttl, "max_ttl": self.max_ttl}
            )
        return ttl

    async def acquire(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        locked_by: str,
        ttl: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Take the lock if nobody holds it.

        Returns False when the lock is held or when the store cannot be
        reached; an unreachable store is never reported as a success.
        """
        try:
            record = await self.try_acquire(tenant_id, entity_type, entity_id, locked_by, ttl, reason)
        except StoreUnavailableError:
            return False
        return record is not None

    async def try_acquire(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        locked_by: str,
        ttl: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Optional[LockRecord]:
        """Like ``acquire`` but returns the stored record, or None if the lock is held.

        Raises StoreUnavailableError when the store cannot be reached, so an
        outage is never mistaken for a conflict.
        """
        ttl = self._resolve_ttl(ttl)
        now = self._clock()
        record = LockRecord(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            locked_by=locked_by,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl),
            reason=reason,
        )
        key = self.lock_key(tenant_id, entity_type, entity_id)

        try:
            acquired = await guarded(
                self.store.set_if_absent(key, record.model_dump_json(), ttl),
                self.store_timeout,
                "lock.acquire",
            )
        except StoreUnavailableError as e:
            self._record("acquire", "error")
            self.logger.error("Lock acquisition failed, store unavailable", key=key, locked_by=locked_by, error=str(e))
            raise

        self._record("acquire", "acquired" if acquired else "conflict")
        self.logger.info(
            "Lock acquired" if acquired else "Lock already held",
            key=key,
            locked_by=locked_by,
            ttl=ttl,
        )
        return record if acquired else None

    async def _read(self, key: str) -> Tuple[Optional[LockRecord], Optional[str]]:
        raw = await guarded(self.store.get(key), self.store_timeout, "lock.read")
        if raw is None:
            return None, None
        try:
            record = LockRecord.model_validate_json(raw)
        except PydanticValidationError:
            self.logger.error("Malformed lock record", key=key)
            return None, None
        # The store evicts on its own; this only covers clock skew at the edge.
        if record.is_expired(self._clock()):
            return None, None
        return record, raw

    async def is_locked(self, tenant_id: Optional[str], entity_type: str, entity_id: str) -> Optional[LockRecord]:
        """Return the live lock record, or None.

        Raises StoreUnavailableError rather than reporting "unlocked" when
        the store cannot be read.
        """
        record, _ = await self._read(self.lock_key(tenant_id, entity_type, entity_id))
        return record

    async def release(
        self,
        tenant_id: Optional[str],
        entity_type: str,
        entity_id: str,
        requested_by: str,
    ) -> LockReleaseResult:
        """Release the lock if ``requested_by`` holds it."""
        key = self.lock_key(tenant_id, entity_type, entity_id)
        record, raw = await self._read(key)

        if record is None:
            self._record("release", ReleaseStatus.NOT_FOUND.value)
            return LockReleaseResult(status=ReleaseStatus.NOT_FOUND)

        if record.locked_by != requested_by:
            self._record("release", ReleaseStatus.NOT_OWNER.value)
            self.logger.warning("Lock release rejected: not lock owner", key=key,
                                requested_by=requested_by, locked_by=record.locked_by)
            return LockReleaseResult(status=ReleaseStatus.NOT_OWNER, record=record)

        deleted = await guarded(self.store.delete_if_equals(key, raw), self.store_timeout, "lock.release")
        if deleted:
            self._record("release", ReleaseStatus.RELEASED.value)
            self.logger.info("Lock released", key=key, released_by=requested_by)
            return LockReleaseResult(status=ReleaseStatus.RELEASED, record=record)

        # The record changed between read and delete: it expired, and maybe
        # someone else took it since.
        current, _ = await self._read(key)
        if current is None:
            self._record("release", ReleaseStatus.NOT_FOUND.value)
            return LockReleaseResult(status=ReleaseStatus.NOT_FOUND)
        self._record("release", ReleaseStatus.NOT_OWNER.value)
        return LockReleaseResult(status=ReleaseStatus.NOT_OWNER, record=current)
