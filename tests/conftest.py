"""
Pytest configuration and fixtures for levelbounce tests.
"""
import pytest

from infra.metrics import MetricsRecorder


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "trading_state.json"
