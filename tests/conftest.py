"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"

from command_stream.commands import CommandRegistry, register_builtins  # noqa: E402
from command_stream.config import reload_config  # noqa: E402
from command_stream.settings import reset_settings  # noqa: E402
from command_stream.supervisor import RunnerSupervisor  # noqa: E402


@pytest.fixture(autouse=True)
def clean_settings():
    """Every test starts and ends with default shell options."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def registry() -> CommandRegistry:
    """A private registry seeded with the built-ins."""
    return register_builtins(CommandRegistry())


@pytest.fixture
def supervisor() -> RunnerSupervisor:
    return RunnerSupervisor()


@pytest.fixture
def fake_worker() -> list[str]:
    """argv prefix that runs the fake worker with this interpreter."""
    return [sys.executable, str(FIXTURES_DIR / "fake_worker.py")]


@pytest.fixture
def fresh_config(monkeypatch):
    """Reload config after monkeypatching the environment."""

    def _reload(**env: str):
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        return reload_config()

    yield _reload
    monkeypatch.undo()
    reload_config()
