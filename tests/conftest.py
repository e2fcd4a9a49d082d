"""Pytest configuration and fixtures for all tests.

This file is automatically loaded by pytest and ensures proper test environment setup.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is in PYTHONPATH for imports to work
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from agentrelay.config.settings import Settings  # noqa: E402
from tests.helpers import FAKE_CLI, EventRecorder, FakeClock  # noqa: E402


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with fast streaming and an isolated workspace root."""
    settings = Settings(RELAY_CONFIG=str(tmp_path / "missing.yaml"))
    settings.streaming.flush_interval_seconds = 0.05
    settings.workspace.root = str(tmp_path)
    return settings


@pytest.fixture
def fake_cli() -> Path:
    return FAKE_CLI
