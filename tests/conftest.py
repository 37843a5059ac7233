"""
Pytest configuration and fixtures for perptrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timezone

import pytest

from infra.state_store import InMemoryStore
from tests.helpers import FrozenClock


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 11, 1, 12, 0, tzinfo=timezone.utc))
