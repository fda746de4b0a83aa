"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import InMemoryControlPlane, RecordingSleep  # noqa: E402
from factories import make_config  # noqa: E402
from hubspoke.config import Config  # noqa: E402


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def control_plane() -> InMemoryControlPlane:
    return InMemoryControlPlane()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
