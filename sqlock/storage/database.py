"""Async database engine & advisory-lock inspection."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from sqlock.backends.postgres import advisory_lock_id
from sqlock.errors import LockTransportError
from sqlock.settings import SQLockSettings, get_settings

# Module-level singleton (created on first call to get_engine)
_engine: AsyncEngine | None = None

_GRANTED_LOCKS = text(
    "SELECT count(*) FROM pg_locks "
    "WHERE locktype = 'advisory' AND granted AND objsubid = 1 "
    "AND classid = CAST(:classid AS oid) AND objid = CAST(:objid AS oid)"
)


def create_lock_engine(settings: SQLockSettings | None = None) -> AsyncEngine:
    """Engine without pooling: every connect() is a new server session and close() ends it."""
    s = settings or get_settings()
    return create_async_engine(
        s.database_url,
        echo=s.debug,
        poolclass=NullPool,
        connect_args={"timeout": s.connect_timeout_seconds},
    )


def get_engine(settings: SQLockSettings | None = None) -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_lock_engine(settings)
    return _engine


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


async def check_connection(engine: AsyncEngine | None = None) -> bool:
    """Round-trip ``SELECT 1``. Returns False instead of raising."""
    eng = engine or get_engine()
    try:
        async with eng.connect() as conn:
            await conn.scalar(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning(f"Database connection check failed: {exc}")
        return False
    return True


def advisory_lock_parts(key: str) -> tuple[int, int]:
    """Split a key's 64-bit lock id into the (classid, objid) pair pg_locks reports."""
    unsigned = advisory_lock_id(key) & 0xFFFF_FFFF_FFFF_FFFF
    return unsigned >> 32, unsigned & 0xFFFF_FFFF


async def count_granted_locks(key: str, engine: AsyncEngine | None = None) -> int:
    """Number of sessions currently granted the advisory lock for ``key``."""
    eng = engine or get_engine()
    classid, objid = advisory_lock_parts(key)
    try:
        async with eng.connect() as conn:
            count = await conn.scalar(_GRANTED_LOCKS, {"classid": classid, "objid": objid})
    except (SQLAlchemyError, OSError) as exc:
        raise LockTransportError(f"Cannot inspect lock '{key}': {exc}", key=key) from exc
    return int(count or 0)
