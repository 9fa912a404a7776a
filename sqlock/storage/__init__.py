"""Database engine and lock inspection helpers."""

from sqlock.storage.database import (
    advisory_lock_parts,
    check_connection,
    count_granted_locks,
    create_lock_engine,
    dispose_engine,
    get_engine,
)

__all__ = [
    "advisory_lock_parts",
    "check_connection",
    "count_granted_locks",
    "create_lock_engine",
    "dispose_engine",
    "get_engine",
]
