"""
Shared pytest fixtures and configuration for chime tests.

This module provides:
- Environment isolation for ChimeSettings (no CHIME_* / REDIS_URL leakage)
- A deterministic FakeClock
- Reminder store and repository fixtures backed by tmp_path
- An in-memory coordination store driven by the same clock

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments.

    def test_something(repository, clock):
        ...
"""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Generator

import pytest

# Ensure chime package and the tests._support helpers are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from chime.core.clock import FakeClock
from chime.core.settings import ChimeSettings, get_settings
from chime.leasing.store import InMemoryCoordinationStore
from chime.reminders.repository import ReminderRepository
from chime.reminders.storage import JsonFileStore

SETTINGS_ENV_VARS = (
    "REDIS_URL",
    "UPSTASH_REDIS_URL",
    "REDIS",
    "REDIS_CONNECTION_STRING",
    "LEADER_LOCK_KEY",
    "RENDER_INSTANCE_ID",
    "IS_DISPATCHER",
)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Environment Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Strip settings-related env vars and reset the settings cache."""
    import os

    for name in list(os.environ):
        if name.startswith("CHIME_") or name in SETTINGS_ENV_VARS:
            monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Clock / Stores
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at 2025-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "reminders.json"


@pytest.fixture
def json_store(store_path: Path) -> JsonFileStore:
    return JsonFileStore(store_path)


@pytest.fixture
def repository(json_store: JsonFileStore, clock: FakeClock) -> ReminderRepository:
    """Repository over an empty JSON store."""
    return ReminderRepository(json_store, clock=clock, max_backdate=timedelta(days=1))


@pytest.fixture
def coordination_store(clock: FakeClock) -> InMemoryCoordinationStore:
    return InMemoryCoordinationStore(clock)


@pytest.fixture
def make_settings(store_path: Path):
    """Factory for ChimeSettings that ignores any local .env file."""

    def _make(**overrides) -> ChimeSettings:
        overrides.setdefault("storage_path", store_path)
        return ChimeSettings(_env_file=None, **overrides)

    return _make
