"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for region_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from region_mock import MockEnvironment  # noqa: E402


@pytest.fixture
def env() -> MockEnvironment:
    """Controller components over fresh mock backends."""
    return MockEnvironment()
