"""Shared fixtures."""

import pytest

from partitionhop.sim.world import SimulatedWorld
from partitionhop.utils.config import reset_config


@pytest.fixture
def world():
    """Simulated world on partition 3 in domain "azeroth"."""
    return SimulatedWorld(partition=3, domain="azeroth", fingerprint="zone-1")


@pytest.fixture(autouse=True)
def _reset_global_config():
    yield
    reset_config()
