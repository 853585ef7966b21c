"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for tyk_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from tyk_operator.config import Config  # noqa: E402


@pytest.fixture
def config() -> Config:
    """A valid gateway-mode configuration."""
    return Config(
        url="http://tyk-gateway:8080",
        auth="secret",
        requeue_after_seconds=5,
        request_timeout_seconds=2,
    )
