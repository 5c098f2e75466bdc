"""
Entity locking for multi-step edit flows.

Locks are pessimistic and short-lived. There is no renewal: a long edit
re-acquires with a fresh TTL after releasing.
"""

from .manager import LockManager
from .models import LockRecord, LockReleaseResult, ReleaseStatus

__all__ = ["LockManager", "LockRecord", "LockReleaseResult", "ReleaseStatus"]
