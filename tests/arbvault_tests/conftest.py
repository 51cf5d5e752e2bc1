"""
Shared settlement fixtures.
"""

import sys
from pathlib import Path

import pytest

# Make the world builder importable from every test directory
sys.path.insert(0, str(Path(__file__).parent))

from settlement_world import SettlementWorld, build_world  # noqa: E402


@pytest.fixture
def world() -> SettlementWorld:
    return build_world()


@pytest.fixture
def make_world():
    """Factory for tests that need several independent worlds (property tests)."""
    return build_world
