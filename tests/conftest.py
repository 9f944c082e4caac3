"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for platform_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from installer.poller import StatusPoller  # noqa: E402
from platform_mock import FakePlatform  # noqa: E402


@pytest.fixture
def fake() -> FakePlatform:
    """Fake platform registered as "fake"."""
    return FakePlatform("fake")


@pytest.fixture
def fast_poller() -> StatusPoller:
    """Poller with zero interval so waits never sleep."""
    return StatusPoller(interval=0, timeout=1)
