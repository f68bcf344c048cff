from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple
import numpy as np


class PreconditionError(RuntimeError):
    """Raised when a caller violates an operation's contract.

    Why: wrong agent state, mismatched dimensions or acceleration misuse
    are programmer errors, not runtime conditions. They are never caught
    inside the library.
    """


def ensure(condition: bool, message: str) -> None:
    if not condition:
        raise PreconditionError(message)


@dataclass(frozen=True)
class PoseID:
    """Global identifier of one pose: (robot, frame)."""

    robot_id: int
    frame_id: int


@dataclass
class RelativeSEMeasurement:
    """Relative pose measurement (r1, p1) -> (r2, p2).

    `R` is d x d, `t` has d entries. `kappa` and `tau` are the rotation and
    translation precisions. `weight` is the only field mutated after
    creation, and only for edges that are neither `fixed_weight` nor
    `is_known_inlier`.
    """

    r1: int
    p1: int
    r2: int
    p2: int
    R: np.ndarray
    t: np.ndarray
    kappa: float
    tau: float
    weight: float = 1.0
    fixed_weight: bool = False
    is_known_inlier: bool = False

    def __post_init__(self):
        self.R = np.array(self.R, dtype=float)
        self.t = np.array(self.t, dtype=float).reshape(-1)
        if self.R.shape != (self.t.size, self.t.size):
            raise ValueError(f"Rotation shape {self.R.shape} does not match translation size {self.t.size}")
        self.kappa = float(self.kappa)
        self.tau = float(self.tau)
        self.weight = float(self.weight)

    @property
    def d(self) -> int:
        return int(self.t.size)

    @property
    def src(self) -> PoseID:
        return PoseID(self.r1, self.p1)

    @property
    def dst(self) -> PoseID:
        return PoseID(self.r2, self.p2)

    def edge_id(self) -> Tuple[PoseID, PoseID]:
        return self.src, self.dst


class AgentState(Enum):
    WAIT_FOR_DATA = 0
    WAIT_FOR_INITIALIZATION = 1
    INITIALIZED = 2


@dataclass
class AgentStatus:
    """Externally visible summary of one agent, exchanged to decide termination."""

    agent_id: int
    state: AgentState = AgentState.WAIT_FOR_DATA
    instance_number: int = 0
    iteration_number: int = 0
    ready_to_terminate: bool = False
    relative_change: float = 0.0


@dataclass
class PoseGraphStatistics:
    total_loop_closures: int = 0
    accept_loop_closures: int = 0
    reject_loop_closures: int = 0

    @property
    def undecided_loop_closures(self) -> int:
        return self.total_loop_closures - self.accept_loop_closures - self.reject_loop_closures

    def decided_ratio(self) -> float:
        if self.total_loop_closures == 0:
            return 1.0
        return (self.accept_loop_closures + self.reject_loop_closures) / self.total_loop_closures


