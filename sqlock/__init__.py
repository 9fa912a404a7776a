"""SQLock - named, exclusive locks held by a database session.

Public API surface for the sqlock package.
"""

from loguru import logger

from sqlock.backends import InMemoryLockServer, PostgresSessionSource
from sqlock.errors import (
    LockCancelledError,
    LockError,
    LockStateError,
    LockTimeoutError,
    LockTransportError,
)
from sqlock.lock import DistributedLock, DistributedLockFactory, LockState, entity_lock_key

__version__ = "0.1.0"
__logo__ = "🔒"

# Library code stays quiet until an application opts in (the CLI does).
logger.disable("sqlock")

__all__ = [
    "DistributedLock",
    "DistributedLockFactory",
    "InMemoryLockServer",
    "LockCancelledError",
    "LockError",
    "LockState",
    "LockStateError",
    "LockTimeoutError",
    "LockTransportError",
    "PostgresSessionSource",
    "entity_lock_key",
]
