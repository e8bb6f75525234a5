"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import MockCloud  # noqa: E402

from pac_controller.config import Config  # noqa: E402
from pac_controller.store import InMemoryStore  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Controller configuration with ingress enabled."""
    return Config(
        vpc_region="us-south",
        load_balancer_id="r006-mock-lb",
        retry_delay_seconds=60,
        in_progress_requeue_seconds=120,
        api_timeout_seconds=5,
    )


@pytest.fixture
def cloud() -> MockCloud:
    return MockCloud()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
