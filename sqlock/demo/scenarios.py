"""Demo scenarios that exercise the lock against a live lock service.

Each scenario checks one observable property (mutual exclusion, timeout
accuracy, cancellation latency, cleanup) and reports a ScenarioResult
instead of raising.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from sqlock.backends.memory import InMemoryLockServer
from sqlock.errors import LockCancelledError
from sqlock.lock.factory import DistributedLockFactory
from sqlock.storage.database import count_granted_locks

# Number of sessions the lock service reports as granted for a key.
GrantProbe = Callable[[str], Awaitable[int]]


def postgres_probe(engine: AsyncEngine) -> GrantProbe:
    async def probe(key: str) -> int:
        return await count_granted_locks(key, engine)

    return probe


def memory_probe(server: InMemoryLockServer) -> GrantProbe:
    async def probe(key: str) -> int:
        return 1 if server.is_granted(key) else 0

    return probe


@dataclass(frozen=True, slots=True)
class DemoContext:
    factory: DistributedLockFactory
    probe: GrantProbe
    take_command: tuple[str, ...] = field(default=(sys.executable, "-m", "sqlock"))


@dataclass(frozen=True, slots=True)
class ScenarioResult:
    name: str
    passed: bool
    detail: str
    elapsed_ms: int


def unique_key(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"[:32]


def elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


async def _wait_until_held(held: asyncio.Event, holder: asyncio.Task[Any]) -> None:
    """Wait for ``held`` unless the holder task dies first (its error is re-raised)."""
    waiter = asyncio.ensure_future(held.wait())
    try:
        await asyncio.wait({waiter, holder}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not held.is_set():
        holder.result()
        raise RuntimeError("holder finished without taking the lock")


class DemoScenario(ABC):
    name: str = ""
    description: str = ""
    requires_processes: bool = False

    @abstractmethod
    async def run(self, ctx: DemoContext) -> ScenarioResult:
        ...

    def _result(self, passed: bool, detail: str, start: float) -> ScenarioResult:
        return ScenarioResult(name=self.name, passed=passed, detail=detail, elapsed_ms=elapsed_ms(start))

    def _holder(
        self, ctx: DemoContext, key: str, hold: float, held: asyncio.Event
    ) -> asyncio.Task[None]:
        async def hold_lock() -> None:
            async with ctx.factory.hold(key):
                logger.info(f"[Holder] Acquired '{key}', holding for {hold:.2f}s")
                held.set()
                await asyncio.sleep(hold)
                logger.info(f"[Holder] Releasing '{key}'")

        return asyncio.create_task(hold_lock())


class HappyPathScenario(DemoScenario):
    name = "happy-path"
    description = (
        "Basic mechanics: take returns, the service shows the lock granted, "
        "and after release no grant remains."
    )

    async def run(self, ctx: DemoContext) -> ScenarioResult:
        key = unique_key("happy_path")
        start = time.perf_counter()

        async with ctx.factory.create_lock(key) as lock:
            await lock.take()
            logger.info(f"Lock '{key}' acquired")
            granted = await ctx.probe(key)
            if granted != 1:
                return self._result(False, f"service reports {granted} grants while held", start)
            await lock.release()

        granted = await ctx.probe(key)
        if granted:
            return self._result(False, f"service still reports {granted} grants after release", start)
        return self._result(True, "granted while held, gone after release", start)


class MutualExclusionScenario(DemoScenario):
    name = "mutual-exclusion"
    description = (
        "Two tasks in one process take the same key; the second blocks until the first releases."
    )

    def __init__(self, hold: float = 2.0, second_hold: float = 0.5) -> None:
        self.hold = hold
        self.second_hold = second_hold

    async def run(self, ctx: DemoContext) -> ScenarioResult:
        key = unique_key("mutual_exclusion")
        start = time.perf_counter()
        first_held = asyncio.Event()
        second_started = asyncio.Event()
        marks: dict[str, float] = {}

        async def first() -> None:
            async with ctx.factory.hold(key):
                marks["first_acquired"] = time.perf_counter()
                logger.info(f"Task 1: acquired at {elapsed_ms(start)}ms")
                first_held.set()
                await second_started.wait()
                await asyncio.sleep(self.hold)
                marks["first_released"] = time.perf_counter()
                logger.info(f"Task 1: releasing at {elapsed_ms(start)}ms")

        async def second() -> None:
            await first_held.wait()
            logger.info(f"Task 2: attempt started at {elapsed_ms(start)}ms")
            second_started.set()
            async with ctx.factory.hold(key):
                marks["second_acquired"] = time.perf_counter()
                logger.info(f"Task 2: acquired at {elapsed_ms(start)}ms")
                await asyncio.sleep(self.second_hold)

        await asyncio.gather(first(), second())

        waited_ms = int((marks["second_acquired"] - marks["first_released"]) * 1000)
        if marks["second_acquired"] < marks["first_released"]:
            return self._result(False, f"task 2 acquired {-waited_ms}ms before task 1 released", start)
        return self._result(True, f"task 2 acquired {waited_ms}ms after task 1 released", start)


class TimeoutScenario(DemoScenario):
    name = "timeout"
    description = (
        "try_take on a held key returns False after about the requested timeout, "
        "and the contender is never granted."
    )

    def __init__(self, hold: float = 4.0, timeout: float = 1.5, tolerance: float = 0.5) -> None:
        self.hold = hold
        self.timeout = timeout
        self.tolerance = tolerance

    async def run(self, ctx: DemoContext) -> ScenarioResult:
        key = unique_key("timeout")
        start = time.perf_counter()
        held = asyncio.Event()
        holder = self._holder(ctx, key, self.hold, held)
        try:
            await _wait_until_held(held, holder)
            await asyncio.sleep(0.1)

            attempt_start = time.perf_counter()
            async with ctx.factory.create_lock(key) as contender:
                acquired = await contender.try_take(self.timeout)
            waited = time.perf_counter() - attempt_start
            grants = await ctx.probe(key)
            logger.info(f"[Contender] try_take returned {acquired} after {waited * 1000:.0f}ms")
        finally:
            await holder

        problems = []
        if acquired:
            problems.append("contender acquired the lock")
        if grants > 1:
            problems.append(f"service reports {grants} grants")
        if abs(waited - self.timeout) >= self.tolerance:
            problems.append(f"waited {waited:.3f}s for a {self.timeout:.3f}s timeout")
        if problems:
            return self._result(False, "; ".join(problems), start)
        return self._result(True, f"timed out after {waited * 1000:.0f}ms", start)


class CancellationScenario(DemoScenario):
    name = "cancellation"
    description = (
        "A take blocked on a held key aborts quickly when its cancel event fires "
        "and leaves no grant behind."
    )

    def __init__(
        self,
        hold: float = 0.5,
        cancel_after: float = 0.05,
        max_elapsed: float = 0.25,
        take_timeout: float = 5.0,
    ) -> None:
        self.hold = hold
        self.cancel_after = cancel_after
        self.max_elapsed = max_elapsed
        self.take_timeout = take_timeout

    async def run(self, ctx: DemoContext) -> ScenarioResult:
        key = unique_key("cancel")
        start = time.perf_counter()
        held = asyncio.Event()
        holder = self._holder(ctx, key, self.hold, held)
        cancelled = False
        try:
            await _wait_until_held(held, holder)

            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(self.cancel_after, cancel.set)
            attempt_start = time.perf_counter()
            async with ctx.factory.create_lock(key) as contender:
                try:
                    await contender.take(self.take_timeout, cancel)
                    logger.warning(f"Contender acquired '{key}' despite cancellation")
                except LockCancelledError:
                    cancelled = True
            waited = time.perf_counter() - attempt_start
            grants = await ctx.probe(key)
            logger.info(f"[Contender] finished in {waited * 1000:.0f}ms (cancelled={cancelled})")
        finally:
            await holder
        remaining = await ctx.probe(key)

        problems = []
        if not cancelled:
            problems.append("LockCancelledError was not raised")
        if waited >= self.max_elapsed:
            problems.append(f"took {waited * 1000:.0f}ms to cancel")
        if grants > 1:
            problems.append(f"service reports {grants} grants after cancellation")
        if remaining:
            problems.append("lock still granted after the holder released")
        if problems:
            return self._result(False, "; ".join(problems), start)
        return self._result(True, f"cancelled after {waited * 1000:.0f}ms", start)


class InterProcessScenario(DemoScenario):
    name = "inter-process"
    description = (
        "Two separate processes take the same key; the second blocks until the first releases."
    )
    requires_processes = True

    def __init__(self, hold_ms: int = 5000, second_hold_ms: int = 1000, stagger: float = 1.0) -> None:
        self.hold_ms = hold_ms
        self.second_hold_ms = second_hold_ms
        self.stagger = stagger

    async def run(self, ctx: DemoContext) -> ScenarioResult:
        key = unique_key("inter_process")
        start = time.perf_counter()
        logger.info(f"Using lock key {key}")

        first = await self._spawn(ctx, key, self.hold_ms)
        logger.info(f"[{elapsed_ms(start)}ms] Started process 1 (pid {first.pid}), holding {self.hold_ms}ms")
        await asyncio.sleep(self.stagger)
        second = await self._spawn(ctx, key, self.second_hold_ms)
        logger.info(f"[{elapsed_ms(start)}ms] Started process 2 (pid {second.pid})")

        await asyncio.gather(
            self._pump(first, "Process 1"),
            self._pump(second, "Process 2"),
        )
        await asyncio.gather(first.wait(), second.wait())
        total = elapsed_ms(start)

        if first.returncode or second.returncode:
            return self._result(
                False, f"exit codes {first.returncode}/{second.returncode}", start
            )
        # Without exclusion both holds overlap and the run ends after max(hold, stagger + second hold).
        expected = self.hold_ms + self.second_hold_ms
        if total < expected:
            return self._result(False, f"finished in {total}ms, expected at least {expected}ms", start)
        return self._result(True, f"finished in {total}ms (>= {expected}ms)", start)

    @staticmethod
    async def _spawn(ctx: DemoContext, key: str, hold_ms: int) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *ctx.take_command,
            "take",
            key,
            "--hold",
            str(hold_ms),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "PYTHONUNBUFFERED": "1"},
        )

    @staticmethod
    async def _pump(process: asyncio.subprocess.Process, label: str) -> None:
        if process.stdout is None:
            return
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(f"[{label}] {line}")


def default_scenarios() -> list[DemoScenario]:
    return [
        HappyPathScenario(),
        MutualExclusionScenario(),
        TimeoutScenario(),
        CancellationScenario(),
        InterProcessScenario(),
    ]
