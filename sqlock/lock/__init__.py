"""Distributed lock and its factory."""

from sqlock.lock.distributed import DEFAULT_TIMEOUT_SECONDS, DistributedLock, LockState
from sqlock.lock.factory import DistributedLockFactory, entity_lock_key

__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "DistributedLock",
    "DistributedLockFactory",
    "LockState",
    "entity_lock_key",
]
