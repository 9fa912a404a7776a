"""In-process lock service with session-scoped semantics.

Used for:
- Tests
- Local experiments
- Demonstrating the lock protocol without a database

NOT a coordination mechanism between processes.
"""

from __future__ import annotations

import asyncio
import uuid

from loguru import logger

from sqlock.backends.base import AcquireOutcome
from sqlock.errors import LockTransportError


class InMemoryLockServer:
    """Lock table keyed by resource, owned by session id.

    Knobs for exercising failure paths:
    - ``reachable``: when False, open/acquire/release raise LockTransportError
    - ``fail_release``: release calls raise LockTransportError
    - ``grant_latency``: delay between recording a grant and replying
    """

    def __init__(self, *, grant_latency: float = 0.0) -> None:
        self.grant_latency = grant_latency
        self.reachable = True
        self.fail_release = False
        self.acquire_calls = 0
        self.release_calls = 0
        self._holders: dict[str, str] = {}
        self._sessions: set[str] = set()
        self._cond: asyncio.Condition | None = None

    def _get_cond(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    # ------------------------------------------------------------------
    # SessionSource
    # ------------------------------------------------------------------

    def new_session(self) -> InMemoryLockSession:
        return InMemoryLockSession(self, uuid.uuid4().hex)

    async def dispose(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def holder(self, resource: str) -> str | None:
        return self._holders.get(resource)

    def is_granted(self, resource: str) -> bool:
        return resource in self._holders

    @property
    def open_sessions(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Service operations (called by sessions)
    # ------------------------------------------------------------------

    def _check_reachable(self, resource: str | None = None) -> None:
        if not self.reachable:
            raise LockTransportError("In-memory lock server is unreachable", key=resource)

    async def _connect(self, session_id: str) -> None:
        self._check_reachable()
        self._sessions.add(session_id)

    async def _acquire(self, session_id: str, resource: str, timeout_ms: int) -> AcquireOutcome:
        self._check_reachable(resource)
        self.acquire_calls += 1

        def connected() -> bool:
            return session_id in self._sessions

        def available() -> bool:
            return not connected() or self._holders.get(resource) in (None, session_id)

        cond = self._get_cond()
        async with cond:
            if not available():
                if timeout_ms <= 0:
                    return AcquireOutcome.TIMED_OUT
                try:
                    await asyncio.wait_for(cond.wait_for(available), timeout_ms / 1000)
                except TimeoutError:
                    return AcquireOutcome.TIMED_OUT
            if not connected():
                raise LockTransportError(
                    f"Session {session_id} ended while waiting for '{resource}'", key=resource
                )
            self._holders[resource] = session_id

        logger.debug(f"Resource '{resource}' granted to session {session_id}")
        if self.grant_latency > 0:
            await asyncio.sleep(self.grant_latency)
        return AcquireOutcome.GRANTED

    async def _release(self, session_id: str, resource: str) -> bool:
        self._check_reachable(resource)
        self.release_calls += 1
        if self.fail_release:
            raise LockTransportError(f"Release of '{resource}' failed (simulated)", key=resource)

        cond = self._get_cond()
        async with cond:
            if self._holders.get(resource) != session_id:
                return False
            del self._holders[resource]
            cond.notify_all()
        return True

    async def _disconnect(self, session_id: str) -> None:
        cond = self._get_cond()
        async with cond:
            self._sessions.discard(session_id)
            dropped = [r for r, owner in self._holders.items() if owner == session_id]
            for resource in dropped:
                del self._holders[resource]
            if dropped:
                logger.debug(f"Session {session_id} ended; dropped {dropped}")
            # wakes this session's own waiters too
            cond.notify_all()


class InMemoryLockSession:
    def __init__(self, server: InMemoryLockServer, session_id: str) -> None:
        self._server = server
        self.session_id = session_id
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self._open:
            return
        await self._server._connect(self.session_id)
        self._open = True

    async def acquire(self, resource: str, timeout_ms: int) -> AcquireOutcome:
        self._require_open(resource)
        return await self._server._acquire(self.session_id, resource, timeout_ms)

    async def release(self, resource: str) -> bool:
        self._require_open(resource)
        return await self._server._release(self.session_id, resource)

    async def close(self, *, abandon: bool = False) -> None:
        if not self._open:
            return
        self._open = False
        await self._server._disconnect(self.session_id)

    def _require_open(self, resource: str) -> None:
        if not self._open:
            raise LockTransportError(f"Lock session {self.session_id} is not open", key=resource)
