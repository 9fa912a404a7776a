"""Tests for sqlock/settings.py."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sqlock.settings import SQLockSettings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "SQLOCK_DATABASE_URL",
        "SQLOCK_LOCK_TIMEOUT_SECONDS",
        "SQLOCK_CONNECT_TIMEOUT_SECONDS",
        "SQLOCK_DEBUG",
        "SQLOCK_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    s = SQLockSettings(_env_file=None)
    assert s.app_name == "SQLock"
    assert s.database_url.startswith("postgresql+asyncpg://")
    assert s.lock_timeout_seconds == 30.0
    assert s.connect_timeout_seconds == 10.0
    assert s.debug is False
    assert s.log_level == "INFO"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SQLOCK_DATABASE_URL", "postgresql+asyncpg://u:p@db:5432/x")
    monkeypatch.setenv("SQLOCK_LOCK_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("SQLOCK_DEBUG", "true")

    s = SQLockSettings(_env_file=None)

    assert s.database_url == "postgresql+asyncpg://u:p@db:5432/x"
    assert s.lock_timeout_seconds == 2.5
    assert s.debug is True


def test_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("SQLOCK_LOG_LEVEL=DEBUG\nUNRELATED=1\n", encoding="utf-8")

    s = SQLockSettings(_env_file=env_file)

    assert s.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("field", "value"),
    [("lock_timeout_seconds", -1), ("connect_timeout_seconds", 0)],
)
def test_invalid_timeouts_rejected(field, value):
    with pytest.raises(ValidationError):
        SQLockSettings(_env_file=None, **{field: value})


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
