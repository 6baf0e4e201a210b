"""
Shared fixtures for cache engine tests.
"""

import pytest

from cache_engine.backend.memory import MemoryBackend
from cache_engine.shared.metrics import MetricsCollector
from tests.helpers import ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def metrics():
    return MetricsCollector()
