"""Builds DistributedLock instances, one fresh session each."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlock.backends.base import SessionSource
from sqlock.lock.distributed import DEFAULT_TIMEOUT_SECONDS, DistributedLock
from sqlock.settings import SQLockSettings, get_settings


def entity_lock_key(entity_name: str, entity_id: int) -> str:
    """Compose the key guarding one entity row, e.g. ``vehicle:42``."""
    if not entity_name or not entity_name.strip():
        raise ValueError("Entity name cannot be empty or whitespace")
    return f"{entity_name}:{entity_id}"


class DistributedLockFactory:
    def __init__(
        self,
        source: SessionSource,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._source = source
        self._default_timeout = default_timeout

    @classmethod
    def from_settings(cls, settings: SQLockSettings | None = None) -> DistributedLockFactory:
        """PostgreSQL-backed factory configured from ``SQLOCK_*`` settings."""
        from sqlock.backends.postgres import PostgresSessionSource

        s = settings or get_settings()
        return cls(PostgresSessionSource.from_settings(s), default_timeout=s.lock_timeout_seconds)

    @property
    def source(self) -> SessionSource:
        return self._source

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def create_lock(self, key: str) -> DistributedLock:
        """New idle lock on ``key``. No I/O happens until it is taken."""
        return DistributedLock(self._source.new_session(), key, default_timeout=self._default_timeout)

    def create_entity_lock(self, entity_name: str, entity_id: int) -> DistributedLock:
        return self.create_lock(entity_lock_key(entity_name, entity_id))

    async def create_lock_and_take(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> DistributedLock:
        """Create a lock and take it. On any error the lock is already released."""
        lock = self.create_lock(key)
        try:
            await lock.take(timeout, cancel)
        except BaseException:
            await lock.release()
            raise
        return lock

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DistributedLock]:
        """Hold ``key`` for the duration of the ``async with`` block."""
        lock = await self.create_lock_and_take(key, timeout, cancel)
        try:
            yield lock
        finally:
            await lock.release()

    async def dispose(self) -> None:
        await self._source.dispose()
