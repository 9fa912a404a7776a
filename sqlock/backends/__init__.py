"""Session-scoped lock service backends."""

from sqlock.backends.base import AcquireOutcome, LockSession, SessionSource
from sqlock.backends.memory import InMemoryLockServer, InMemoryLockSession
from sqlock.backends.postgres import (
    PostgresLockSession,
    PostgresSessionSource,
    advisory_lock_id,
)

__all__ = [
    "AcquireOutcome",
    "InMemoryLockServer",
    "InMemoryLockSession",
    "LockSession",
    "PostgresLockSession",
    "PostgresSessionSource",
    "SessionSource",
    "advisory_lock_id",
]
