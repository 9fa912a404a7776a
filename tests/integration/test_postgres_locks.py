"""End-to-end tests against a real PostgreSQL server.

Set SQLOCK_TEST_DATABASE_URL (postgresql+asyncpg://...) to run them.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid

import pytest
import pytest_asyncio

from sqlock.demo import (
    CancellationScenario,
    DemoContext,
    HappyPathScenario,
    InterProcessScenario,
    TimeoutScenario,
    postgres_probe,
)
from sqlock.errors import LockCancelledError, LockTimeoutError
from sqlock.lock.factory import DistributedLockFactory
from sqlock.settings import SQLockSettings
from sqlock.storage.database import check_connection, count_granted_locks

DATABASE_URL = os.environ.get("SQLOCK_TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DATABASE_URL, reason="SQLOCK_TEST_DATABASE_URL not set"),
]


@pytest.fixture
def settings():
    return SQLockSettings(_env_file=None, database_url=DATABASE_URL, lock_timeout_seconds=5.0)


@pytest_asyncio.fixture
async def factory(settings):
    f = DistributedLockFactory.from_settings(settings)
    yield f
    await f.dispose()


@pytest.fixture
def key():
    return f"it_{uuid.uuid4().hex}"


def _granted(factory, key):
    return count_granted_locks(key, factory.source.engine)


@pytest.mark.asyncio
async def test_check_connection(factory):
    assert await check_connection(factory.source.engine) is True


@pytest.mark.asyncio
async def test_round_trip(factory, key):
    lock = await factory.create_lock_and_take(key)
    assert await _granted(factory, key) == 1

    await lock.release()
    assert await _granted(factory, key) == 0


@pytest.mark.asyncio
async def test_timeout_accuracy(factory, key):
    async with factory.hold(key):
        contender = factory.create_lock(key)
        start = time.perf_counter()
        with pytest.raises(LockTimeoutError):
            await contender.take(0.5)
        elapsed = time.perf_counter() - start

        assert 0.4 <= elapsed < 1.0
        assert await _granted(factory, key) == 1


@pytest.mark.asyncio
async def test_zero_timeout(factory, key):
    async with factory.hold(key):
        assert await factory.create_lock(key).try_take(0) is False


@pytest.mark.asyncio
async def test_cancel_while_blocked(factory, key):
    async with factory.hold(key):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        start = time.perf_counter()
        with pytest.raises(LockCancelledError):
            await factory.create_lock(key).take(5, cancel)
        assert time.perf_counter() - start < 0.25
    assert await _granted(factory, key) == 0


@pytest.mark.asyncio
async def test_waiter_granted_after_release(factory, key):
    first = await factory.create_lock_and_take(key)
    second = factory.create_lock(key)
    waiter = asyncio.create_task(second.take(5))
    await asyncio.sleep(0.2)
    assert not waiter.done()

    await first.release()
    await asyncio.wait_for(waiter, 5)
    assert second.held
    await second.release()


@pytest.mark.asyncio
async def test_abandoned_session_frees_lock(factory, key):
    lock = await factory.create_lock_and_take(key)
    # dropping the connection without unlocking must still free the key
    await lock._session.close(abandon=True)

    other = factory.create_lock(key)
    assert await other.try_take(2) is True
    await other.release()


@pytest.mark.asyncio
async def test_demo_scenarios(factory):
    ctx = DemoContext(factory=factory, probe=postgres_probe(factory.source.engine))
    scenarios = [
        HappyPathScenario(),
        TimeoutScenario(hold=1.5, timeout=0.5, tolerance=0.4),
        CancellationScenario(hold=0.5),
    ]
    for scenario in scenarios:
        result = await scenario.run(ctx)
        assert result.passed, f"{result.name}: {result.detail}"


@pytest.mark.asyncio
async def test_inter_process(factory, monkeypatch):
    monkeypatch.setenv("SQLOCK_DATABASE_URL", DATABASE_URL)
    ctx = DemoContext(factory=factory, probe=postgres_probe(factory.source.engine))

    result = await InterProcessScenario(hold_ms=2000, second_hold_ms=500, stagger=0.5).run(ctx)

    assert result.passed, result.detail
