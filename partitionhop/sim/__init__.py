"""Simulated collaborators for scripted scenarios and tests."""

from partitionhop.sim.clock import ManualClock
from partitionhop.sim.world import (
    RecordingSink,
    SimGate,
    SimOracle,
    SimProbe,
    SimRequests,
    SimRoster,
    SimulatedWorld,
)

__all__ = [
    "ManualClock",
    "RecordingSink",
    "SimGate",
    "SimOracle",
    "SimProbe",
    "SimRequests",
    "SimRoster",
    "SimulatedWorld",
]
