"""Pytest fixtures for scheduling tests."""

import pytest

from tests._support import ManualBackend, RecordingSink


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def manual_backend() -> ManualBackend:
    return ManualBackend()
