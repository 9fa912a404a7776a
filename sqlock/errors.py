"""Lock error taxonomy."""

from __future__ import annotations


class LockError(RuntimeError):
    """Base class for every failure raised by a lock operation."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class LockTimeoutError(LockError):
    """Raised by ``take`` when the lock was not granted within the timeout."""


class LockCancelledError(LockError):
    """Raised when the cancel signal fires before or during acquisition."""


class LockStateError(LockError):
    """Raised when acquiring a lock that is held, released or already spent."""


class LockTransportError(LockError):
    """Raised when the backing lock service is unreachable or misbehaves."""
