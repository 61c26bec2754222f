"""
Pytest configuration and fixtures for the sniper tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from core.events import EventBus
from core.ledger import Ledger
from infra.metrics import MetricsRecorder
from tests.helpers import FakeClock, StubPriceClient, StubVenue


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return Ledger(initial_capital=0.6, reserve_floor=0.06, clock=clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def prices():
    return StubPriceClient()


@pytest.fixture
def venue():
    return StubVenue()
