"""
conftest.py - pytest fixtures for hybrid_sync tests.
"""

import tempfile
import pytest

from fakes import FAST_SETTINGS, InMemoryRecordService
from hybrid_sync.store.memory import MemoryStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service():
    return InMemoryRecordService()


@pytest.fixture
def settings():
    return FAST_SETTINGS
