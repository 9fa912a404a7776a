"""PostgreSQL advisory-lock backend.

Each session is one dedicated connection from a NullPool engine, so closing
the session really ends the server-side session and with it every
session-level advisory lock it holds.

Bounded wait is implemented with the ``lock_timeout`` setting: a blocked
``pg_advisory_lock`` is aborted with SQLSTATE 55P03 once it expires.
``lock_timeout = 0`` disables the limit in PostgreSQL, so a zero timeout uses
``pg_try_advisory_lock`` instead.
"""

from __future__ import annotations

import hashlib
import uuid

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from sqlock.backends.base import AcquireOutcome
from sqlock.errors import LockTransportError
from sqlock.settings import SQLockSettings

LOCK_NOT_AVAILABLE = "55P03"

_SET_LOCK_TIMEOUT = text("SELECT set_config('lock_timeout', :value, false)")
_LOCK = text("SELECT pg_advisory_lock(:lock_id)")
_TRY_LOCK = text("SELECT pg_try_advisory_lock(:lock_id)")
_UNLOCK = text("SELECT pg_advisory_unlock(:lock_id)")


def advisory_lock_id(resource: str) -> int:
    """Map a lock key to a signed 64-bit advisory lock id (stable across processes)."""
    digest = hashlib.blake2b(resource.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _sqlstate(exc: DBAPIError) -> str | None:
    """Extract the SQLSTATE from a wrapped driver error, if there is one."""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


class PostgresLockSession:
    def __init__(self, engine: AsyncEngine, session_id: str | None = None) -> None:
        self._engine = engine
        self.session_id = session_id or uuid.uuid4().hex
        self._conn: AsyncConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.closed

    async def open(self) -> None:
        if self.is_open:
            return
        try:
            conn = await self._engine.connect()
        except (SQLAlchemyError, OSError) as exc:
            raise LockTransportError(f"Cannot connect to lock service: {exc}") from exc
        try:
            # Advisory locks live outside transactions; keep the session out of one.
            self._conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        except (SQLAlchemyError, OSError) as exc:
            await conn.close()
            raise LockTransportError(f"Cannot configure lock session: {exc}") from exc
        except BaseException:
            # interrupted mid-configure; the connection may still be busy
            await self._drop(conn)
            raise
        logger.debug(f"Lock session {self.session_id} opened")

    async def _drop(self, conn: AsyncConnection) -> None:
        try:
            await conn.invalidate()
            await conn.close()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(f"Dropping lock session {self.session_id} failed: {exc}")

    async def acquire(self, resource: str, timeout_ms: int) -> AcquireOutcome:
        conn = self._require_conn(resource)
        lock_id = advisory_lock_id(resource)
        try:
            if timeout_ms <= 0:
                granted = await conn.scalar(_TRY_LOCK, {"lock_id": lock_id})
                if granted is None:
                    raise LockTransportError(
                        f"Malformed reply acquiring '{resource}': no result", key=resource
                    )
                return AcquireOutcome.GRANTED if granted else AcquireOutcome.TIMED_OUT

            await conn.execute(_SET_LOCK_TIMEOUT, {"value": f"{timeout_ms}ms"})
            await conn.execute(_LOCK, {"lock_id": lock_id})
        except DBAPIError as exc:
            if _sqlstate(exc) == LOCK_NOT_AVAILABLE:
                return AcquireOutcome.TIMED_OUT
            raise LockTransportError(f"Acquire of '{resource}' failed: {exc}", key=resource) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise LockTransportError(f"Acquire of '{resource}' failed: {exc}", key=resource) from exc
        return AcquireOutcome.GRANTED

    async def release(self, resource: str) -> bool:
        conn = self._require_conn(resource)
        try:
            released = await conn.scalar(_UNLOCK, {"lock_id": advisory_lock_id(resource)})
        except (SQLAlchemyError, OSError) as exc:
            raise LockTransportError(f"Release of '{resource}' failed: {exc}", key=resource) from exc
        return bool(released)

    async def close(self, *, abandon: bool = False) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            if abandon:
                await conn.invalidate()
            await conn.close()
        except (SQLAlchemyError, OSError) as exc:
            raise LockTransportError(f"Closing lock session {self.session_id} failed: {exc}") from exc
        logger.debug(f"Lock session {self.session_id} closed (abandon={abandon})")

    def _require_conn(self, resource: str) -> AsyncConnection:
        if self._conn is None or self._conn.closed:
            raise LockTransportError(f"Lock session {self.session_id} is not open", key=resource)
        return self._conn


class PostgresSessionSource:
    """Creates one dedicated PostgreSQL session per lock."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @classmethod
    def from_settings(cls, settings: SQLockSettings | None = None) -> PostgresSessionSource:
        from sqlock.storage.database import create_lock_engine

        return cls(create_lock_engine(settings))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def new_session(self) -> PostgresLockSession:
        return PostgresLockSession(self._engine)

    async def dispose(self) -> None:
        await self._engine.dispose()
