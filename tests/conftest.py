"""Pytest configuration: project root on sys.path, fresh settings per test."""

import sys
from pathlib import Path

import pytest

# Project root on sys.path so tests can import tests.transports helpers
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from loadstage.config import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()
