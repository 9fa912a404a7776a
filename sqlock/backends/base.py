"""Backend contract for session-scoped lock services.

A lock service grants exclusive locks to a *session* (one connection).
Guarantees every backend must provide:
- At most one session holds a given resource at a time
- Acquire waits no longer than the requested timeout
- Closing a session releases every lock it still holds
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol


class AcquireOutcome(str, Enum):
    """Non-error outcomes of a bounded-wait acquire."""

    GRANTED = "granted"
    TIMED_OUT = "timed_out"


class LockSession(Protocol):
    """One connection to the lock service; owner scope for its locks."""

    session_id: str

    @property
    def is_open(self) -> bool:
        ...

    async def open(self) -> None:
        """Connect. Calling it on an open session is a no-op."""
        ...

    async def acquire(self, resource: str, timeout_ms: int) -> AcquireOutcome:
        """
        Request an exclusive lock on *resource* owned by this session.

        ``timeout_ms == 0`` is a single immediate attempt.

        Raises:
            LockTransportError: service unreachable or failed
        """
        ...

    async def release(self, resource: str) -> bool:
        """Release *resource*. Returns False if the service reports it was not held."""
        ...

    async def close(self, *, abandon: bool = False) -> None:
        """
        Tear the session down.

        ``abandon=True`` drops the connection without a graceful goodbye,
        used when a request may still be in flight.
        """
        ...


class SessionSource(Protocol):
    """Hands out fresh, not-yet-opened sessions."""

    def new_session(self) -> LockSession:
        ...

    async def dispose(self) -> None:
        ...
