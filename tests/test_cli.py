"""Tests for sqlock/cli/commands.py using typer's CliRunner."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from loguru import logger
from typer.testing import CliRunner

from sqlock import __version__
from sqlock.backends.memory import InMemoryLockServer
from sqlock.cli.commands import app
from sqlock.errors import LockTransportError
from sqlock.lock.factory import DistributedLockFactory

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logger():
    yield
    # the CLI binds a sink to the runner's temporary stderr
    logger.remove()
    logger.disable("sqlock")


@pytest.fixture
def memory_server(monkeypatch):
    server = InMemoryLockServer()
    monkeypatch.setattr(
        DistributedLockFactory,
        "from_settings",
        lambda settings=None: DistributedLockFactory(server, default_timeout=1.0),
    )
    return server


@pytest.fixture
def fake_engine(monkeypatch):
    engine = MagicMock()
    engine.dispose = AsyncMock()
    monkeypatch.setattr("sqlock.storage.database.create_lock_engine", lambda settings=None: engine)
    return engine


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"SQLock v{__version__}" in result.output


class TestTake:
    def test_take_hold_release(self, memory_server):
        result = runner.invoke(app, ["take", "demo-key", "--hold", "10"])

        assert result.exit_code == 0, result.output
        assert "Attempting to take lock 'demo-key'" in result.output
        assert "Successfully acquired lock 'demo-key'" in result.output
        assert "Lock 'demo-key' released" in result.output
        assert not memory_server.is_granted("demo-key")
        assert memory_server.open_sessions == 0

    def test_take_times_out(self, memory_server):
        memory_server._holders["busy"] = "another-session"

        result = runner.invoke(app, ["take", "busy", "--hold", "10", "--timeout", "0.05"])

        assert result.exit_code == 1
        assert "within 50ms" in result.output
        assert memory_server.holder("busy") == "another-session"

    def test_take_transport_failure(self, memory_server):
        memory_server.reachable = False

        result = runner.invoke(app, ["take", "k", "--hold", "10"])

        assert result.exit_code == 1
        assert "Failed to take lock 'k'" in result.output


class TestCheck:
    def test_connection_ok(self, monkeypatch, fake_engine):
        monkeypatch.setattr(
            "sqlock.storage.database.check_connection", AsyncMock(return_value=True)
        )

        result = runner.invoke(app, ["check"])

        assert result.exit_code == 0
        assert "connection OK" in result.output
        fake_engine.dispose.assert_awaited_once()

    def test_connection_failed(self, monkeypatch, fake_engine):
        monkeypatch.setattr(
            "sqlock.storage.database.check_connection", AsyncMock(return_value=False)
        )

        result = runner.invoke(app, ["check"])

        assert result.exit_code == 1
        assert "connection failed" in result.output


class TestInspect:
    def test_reports_held_lock(self, monkeypatch, fake_engine):
        counter = AsyncMock(return_value=1)
        monkeypatch.setattr("sqlock.storage.database.count_granted_locks", counter)

        result = runner.invoke(app, ["inspect", "vehicle:1"])

        assert result.exit_code == 0, result.output
        assert "vehicle:1" in result.output
        assert "yes" in result.output
        counter.assert_awaited_once_with("vehicle:1", fake_engine)

    def test_reports_free_lock(self, monkeypatch, fake_engine):
        monkeypatch.setattr(
            "sqlock.storage.database.count_granted_locks", AsyncMock(return_value=0)
        )

        result = runner.invoke(app, ["inspect", "vehicle:1"])

        assert result.exit_code == 0
        assert "no" in result.output

    def test_inspect_failure(self, monkeypatch, fake_engine):
        monkeypatch.setattr(
            "sqlock.storage.database.count_granted_locks",
            AsyncMock(side_effect=LockTransportError("Cannot inspect lock 'k': refused", key="k")),
        )

        result = runner.invoke(app, ["inspect", "k"])

        assert result.exit_code == 1
        assert "Cannot inspect" in result.output


class TestDemo:
    def test_in_memory_happy_path(self):
        result = runner.invoke(app, ["demo", "--in-memory", "--scenario", "happy-path"])

        assert result.exit_code == 0, result.output
        assert "happy-path" in result.output
        assert "PASS" in result.output
        assert "inter-process" not in result.output

    def test_unknown_scenario(self):
        result = runner.invoke(app, ["demo", "--in-memory", "--scenario", "nope"])
        assert result.exit_code == 2
