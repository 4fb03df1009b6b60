"""
Pytest configuration and shared fixtures for AutoSpotting tests.
"""

import pytest
from moto import mock_aws

from autospotting.core.config import Config
from autospotting.core.deadline import Deadline
from autospotting.core.retry import RetryPolicy

from fakes import FakeClock, build_cloud


@pytest.fixture
def mock_aws_services():
    """Mock all AWS services used by the application."""
    with mock_aws():
        yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def deadline(clock):
    """Unbounded run deadline on the fake clock."""
    return Deadline(None, clock=clock.now, sleeper=clock.sleep)


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=0.5)


@pytest.fixture
def config():
    """Configuration used by most scenario tests."""
    return Config(
        poll_interval_seconds=1.0,
        launch_timeout_seconds=120.0,
        lifecycle_hook_timeout_seconds=300.0,
        retry_max_attempts=3,
        retry_base_delay=0.1,
        retry_max_delay=0.5,
        max_workers=2,
    )


@pytest.fixture
def cloud():
    return build_cloud()
