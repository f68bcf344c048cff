"""Distributed pose-graph optimisation across a simulated robot team.

Each robot owns a :class:`PGOAgent` that keeps its own pose graph, aligns its
frame to already-initialised neighbours, and alternates local Riemannian
updates with exchanges of public poses, statuses and loop closure weights
over an in-memory peer-to-peer bus.
"""

from .partition import partition_measurements, RobotMeasurementBundle
from .communication import PeerToPeerBus, PoseMessage, StatusMessage, WeightMessage
from .agents import PGOAgent, PGOAgentParameters
from .backend import BackendConfig, BackendResult, DistributedPGOBackend

__all__ = [
    "partition_measurements",
    "RobotMeasurementBundle",
    "PeerToPeerBus",
    "PoseMessage",
    "StatusMessage",
    "WeightMessage",
    "PGOAgent",
    "PGOAgentParameters",
    "BackendConfig",
    "BackendResult",
    "DistributedPGOBackend",
]
