"""Pytest configuration — adds src/ to sys.path and provides the fake pCloud provider."""

import os
import sys

import pytest

# Add src/ to Python path so tests can import from pcloud_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tests.fake_pcloud import FakePCloud  # noqa: E402


@pytest.fixture
def fake_pcloud() -> FakePCloud:
    return FakePCloud()
