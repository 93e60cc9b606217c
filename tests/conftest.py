"""Shared test fixtures for pyexecd."""

from __future__ import annotations

import sys

import pytest

from pyexecd.types import PythonEnvironment

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(daemon=DaemonConfig(enabled=False))
        s = make_settings(process=ProcessConfig(kill_timeout=0.5))
    """
    from pyexecd.config import (
        DaemonConfig,
        InterpreterConfig,
        LoggingConfig,
        ProcessConfig,
        Settings,
    )

    defaults = {
        "process": ProcessConfig(),
        "daemon": DaemonConfig(),
        "interpreter": InterpreterConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def current_interpreter(**overrides) -> PythonEnvironment:
    """PythonEnvironment for the interpreter running the tests."""
    fields = {
        "path": sys.executable,
        "sys_prefix": sys.prefix,
        "version": ".".join(str(p) for p in sys.version_info[:3]),
        "env_type": "global",
    }
    fields.update(overrides)
    return PythonEnvironment(**fields)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O. Tests are fully isolated from local config.
    """
    safe = make_settings()
    monkeypatch.setattr("pyexecd.config._settings", safe)


@pytest.fixture
def interpreter() -> PythonEnvironment:
    return current_interpreter()
