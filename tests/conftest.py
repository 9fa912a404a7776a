"""Shared fixtures: an in-process lock server and a factory bound to it."""

from __future__ import annotations

import pytest

from sqlock.backends.memory import InMemoryLockServer
from sqlock.lock.factory import DistributedLockFactory


@pytest.fixture
def server():
    return InMemoryLockServer()


@pytest.fixture
def factory(server):
    return DistributedLockFactory(server, default_timeout=5.0)
