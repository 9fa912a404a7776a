"""Exclusive lock whose ownership lives in a lock-service session.

State transitions:
    IDLE -> HELD         take / try_take granted
    IDLE -> IDLE         not granted (session closed, instance spent)
    IDLE|HELD -> RELEASED   release() or leaving ``async with``

RELEASED is terminal. Ownership is the session: once it ends, so does the
lock, which is why every non-success path closes it.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Coroutine
from enum import Enum
from typing import Any

from loguru import logger

from sqlock.backends.base import AcquireOutcome, LockSession
from sqlock.errors import (
    LockCancelledError,
    LockError,
    LockStateError,
    LockTimeoutError,
    LockTransportError,
)

DEFAULT_TIMEOUT_SECONDS = 30.0

# How long an abandoned acquire may take to unwind before the session is dropped anyway.
_ABANDON_GRACE_SECONDS = 0.1


class LockState(str, Enum):
    IDLE = "idle"
    HELD = "held"
    RELEASED = "released"


def _consume_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


class DistributedLock:
    """Exclusive lock on ``key`` held through one dedicated session.

    An instance is single-shot: it makes one acquisition attempt. After a
    timeout, cancellation or transport failure its session is closed and a
    new instance must be created to retry.

    Usage::

        async with factory.create_lock("vehicle:42") as lock:
            await lock.take(timeout=5)
            ...  # guarded section
    """

    def __init__(
        self,
        session: LockSession,
        key: str,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not key or not key.strip():
            raise ValueError("Lock key cannot be empty or whitespace")
        if default_timeout < 0:
            raise ValueError(f"Default timeout must be non-negative, got {default_timeout}")
        self._session = session
        self._key = key
        self._default_timeout = default_timeout
        self._state = LockState.IDLE
        self._attempted = False

    @property
    def key(self) -> str:
        return self._key

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def held(self) -> bool:
        return self._state is LockState.HELD

    @property
    def session_id(self) -> str:
        return self._session.session_id

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def take(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """
        Acquire the lock, waiting at most ``timeout`` seconds.

        Raises:
            LockTimeoutError: not granted within the timeout
            LockCancelledError: ``cancel`` was set before or during the wait
            LockStateError: instance already held, released or spent
            LockTransportError: lock service failure
        """
        timeout_ms = self._timeout_ms(timeout)
        if not await self._acquire(timeout_ms, cancel):
            raise LockTimeoutError(
                f"Failed to acquire lock '{self._key}' within {timeout_ms}ms",
                key=self._key,
            )

    async def try_take(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Like ``take`` but reports a timeout as ``False``. Other failures still raise."""
        return await self._acquire(self._timeout_ms(timeout), cancel)

    async def _acquire(self, timeout_ms: int, cancel: asyncio.Event | None) -> bool:
        self._ensure_acquirable()
        self._attempted = True

        if cancel is not None and cancel.is_set():
            raise LockCancelledError(
                f"Acquisition of lock '{self._key}' cancelled before it started",
                key=self._key,
            )

        logger.debug(f"Acquiring lock '{self._key}' (timeout {timeout_ms}ms)")
        try:
            outcome = await self._race(self._open_and_acquire(timeout_ms), cancel)
        except asyncio.CancelledError:
            await self._teardown(abandon=True)
            raise
        except Exception as exc:
            await self._teardown(abandon=True)
            if self._state is LockState.RELEASED:
                raise self._released_during_acquire() from exc
            if isinstance(exc, LockError):
                raise
            raise LockTransportError(
                f"Acquisition of lock '{self._key}' failed: {exc}", key=self._key
            ) from exc

        if self._state is LockState.RELEASED:
            # release() ran while the request was in flight
            await self._teardown(abandon=True)
            raise self._released_during_acquire()

        if outcome is AcquireOutcome.GRANTED:
            self._state = LockState.HELD
            logger.debug(f"Lock '{self._key}' held by session {self.session_id}")
            return True

        if outcome is not AcquireOutcome.TIMED_OUT:
            await self._teardown(abandon=True)
            raise LockTransportError(
                f"Malformed acquire outcome for lock '{self._key}': {outcome!r}", key=self._key
            )

        await self._teardown(abandon=False)
        logger.debug(f"Lock '{self._key}' not granted within {timeout_ms}ms")
        return False

    async def _open_and_acquire(self, timeout_ms: int) -> AcquireOutcome:
        await self._session.open()
        return await self._session.acquire(self._key, timeout_ms)

    async def _race(
        self,
        operation: Coroutine[Any, Any, AcquireOutcome],
        cancel: asyncio.Event | None,
    ) -> AcquireOutcome:
        """Run ``operation`` unless ``cancel`` fires first.

        The remote call cannot be interrupted reliably mid-flight, so a lost
        race only abandons it; the caller then drops the session.
        """
        if cancel is None:
            return await operation

        acquire_task = asyncio.ensure_future(operation)
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({acquire_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancel_task.cancel()
            await self._abandon(acquire_task)
            raise
        cancel_task.cancel()

        if acquire_task.done():
            return acquire_task.result()

        await self._abandon(acquire_task)
        raise LockCancelledError(f"Acquisition of lock '{self._key}' was cancelled", key=self._key)

    @staticmethod
    async def _abandon(task: asyncio.Future[Any]) -> None:
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=_ABANDON_GRACE_SECONDS)
        if done:
            _consume_result(task)
        else:
            task.add_done_callback(_consume_result)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self) -> None:
        """
        Release the lock and end the session. Safe to call repeatedly.

        A failed release is logged, not raised: ending the session releases
        the lock on the service side anyway.
        """
        if self._state is LockState.RELEASED:
            return
        was_held = self._state is LockState.HELD
        # an IDLE lock that already attempted may still have its acquire in flight
        in_flight = not was_held and self._attempted
        self._state = LockState.RELEASED

        acknowledged = not was_held
        try:
            if was_held:
                acknowledged = await self._release_remote()
        finally:
            await self._teardown(abandon=in_flight or not acknowledged)
        if was_held:
            logger.debug(f"Lock '{self._key}' released")

    async def _release_remote(self) -> bool:
        try:
            released = await self._session.release(self._key)
        except Exception as exc:
            logger.warning(f"Release of lock '{self._key}' failed, dropping session instead: {exc}")
            return False
        if not released:
            logger.warning(
                f"Lock service reported '{self._key}' was not held by session {self.session_id}"
            )
        return released

    async def _teardown(self, *, abandon: bool) -> None:
        try:
            await self._session.close(abandon=abandon)
        except Exception as exc:
            logger.warning(f"Closing session for lock '{self._key}' failed: {exc}")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _released_during_acquire(self) -> LockStateError:
        return LockStateError(f"Lock '{self._key}' was released during acquisition", key=self._key)

    def _ensure_acquirable(self) -> None:
        if self._state is LockState.HELD:
            raise LockStateError(f"Lock '{self._key}' is already held by this instance", key=self._key)
        if self._state is LockState.RELEASED:
            raise LockStateError(f"Lock '{self._key}' has been released", key=self._key)
        if self._attempted:
            raise LockStateError(
                f"Lock '{self._key}' already made its acquisition attempt; create a new lock to retry",
                key=self._key,
            )

    def _timeout_ms(self, timeout: float | None) -> int:
        seconds = self._default_timeout if timeout is None else timeout
        if seconds < 0:
            raise ValueError(f"Timeout must be non-negative, got {seconds}")
        return math.ceil(seconds * 1000)

    async def __aenter__(self) -> DistributedLock:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    def __repr__(self) -> str:
        return f"<DistributedLock key={self._key!r} state={self._state.value}>"
