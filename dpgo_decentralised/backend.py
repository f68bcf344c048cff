from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional
import logging
import os
import random
import time
import numpy as np

from dpgo_common.kpi_logging import KPILogger
from dpgo_common.models import AgentState, AgentStatus, RelativeSEMeasurement, ensure

from .agents import PGOAgent, PGOAgentParameters
from .communication import PeerToPeerBus, PoseMessage, StatusMessage, WeightMessage
from .partition import RobotMeasurementBundle, partition_measurements

logger = logging.getLogger("dpgo.decentralised.backend")


_seed_env = os.environ.get("DPGO_RUN_SEED")
if _seed_env:
    try:
        _seed_val = int(_seed_env)
        random.seed(_seed_val)
        np.random.seed(_seed_val)
    except ValueError:
        logger.warning("Ignoring non-integer DPGO_RUN_SEED=%r", _seed_env)


@dataclass
class BackendConfig:
    """Orchestration settings.

    ``selection`` picks the robot that optimises in a synchronous round:
    ``round_robin`` cycles through ids, ``random`` draws uniformly.
    ``async_rate`` (Hz), ``async_timeout`` and ``exchange_period`` (seconds)
    only apply to :meth:`DistributedPGOBackend.run_async`.
    """

    max_rounds: int = 1000
    selection: str = "round_robin"
    seed: Optional[int] = None
    init_exchange_passes: Optional[int] = None
    async_rate: float = 50.0
    async_timeout: float = 30.0
    exchange_period: float = 0.02

    def __post_init__(self):
        if self.selection not in ("round_robin", "random"):
            raise ValueError(f"Unknown selection rule {self.selection!r}")


@dataclass
class BackendResult:
    """Aggregated output of a distributed run."""

    trajectories: Dict[int, np.ndarray]
    rounds: int
    converged: bool
    statuses: Dict[int, AgentStatus] = field(default_factory=dict)
    history: Dict[str, List[float]] = field(default_factory=dict)


class DistributedPGOBackend:
    """High-level orchestrator for a team of :class:`PGOAgent`.

    Usage pattern:

    ```python
    backend = DistributedPGOBackend.from_measurements(measurements, num_poses, 2, params)
    result = backend.run()
    trajectory_of_robot_1 = result.trajectories[1]
    ```

    Agents only talk through the :class:`PeerToPeerBus`: statuses go to the
    whole team, public poses go to neighbours, and shared loop closure
    weights go from the lower-id endpoint robot to the other one.
    """

    def __init__(
        self,
        bundles: Dict[int, RobotMeasurementBundle],
        params: PGOAgentParameters,
        config: Optional[BackendConfig] = None,
        *,
        kpi: Optional[KPILogger] = None,
        bus: Optional[PeerToPeerBus] = None,
    ) -> None:
        ensure(len(bundles) == params.num_robots,
               f"Got {len(bundles)} bundles for a team of {params.num_robots}")
        self.params = params
        self.config = config or BackendConfig()
        self.kpi = kpi
        self.bus = bus or PeerToPeerBus()
        self._rng = np.random.default_rng(self.config.seed)
        self._initialized = False
        self.agents: Dict[int, PGOAgent] = {}

        for rid in sorted(bundles):
            bundle = bundles[rid]
            agent_params = params
            if params.log_data:
                agent_params = replace(params, log_directory=os.path.join(params.log_directory, f"robot_{rid}"))
            agent = PGOAgent(rid, agent_params, kpi=kpi)
            agent.set_measurements(bundle.odometry, bundle.private_loop_closures, bundle.shared_loop_closures)
            self.agents[rid] = agent

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_measurements(
        cls,
        measurements: Iterable[RelativeSEMeasurement],
        num_poses: int,
        num_robots: int,
        params: PGOAgentParameters,
        config: Optional[BackendConfig] = None,
        **kwargs,
    ) -> "DistributedPGOBackend":
        bundles = partition_measurements(measurements, num_poses, num_robots)
        return cls(bundles, params, config, **kwargs)

    # ------------------------------------------------------------------
    # Message exchange
    # ------------------------------------------------------------------
    def _publish(self, auxiliary: bool) -> None:
        team = list(self.agents)
        for rid, agent in self.agents.items():
            self.bus.broadcast_status(rid, team, agent.status)
            neighbors = agent.get_neighbors()
            poses = agent.get_shared_pose_dict()
            if poses is not None and neighbors:
                self.bus.broadcast_poses(rid, neighbors, poses, agent.iteration_number)
                if self.kpi:
                    self.kpi.pose_broadcast(rid, len(poses))
            if auxiliary:
                aux = agent.get_aux_shared_pose_dict()
                if aux is not None and neighbors:
                    self.bus.broadcast_poses(rid, neighbors, aux, agent.iteration_number, auxiliary=True)
                    if self.kpi:
                        self.kpi.pose_broadcast(rid, len(aux), auxiliary=True)
            if agent.publish_weights_requested:
                for nbr in neighbors:
                    weights = agent.get_shared_loop_closure_weights(nbr)
                    if weights:
                        self.bus.post(WeightMessage(sender=rid, receiver=nbr, weights=weights))
                agent.publish_weights_requested = False
            agent.publish_public_poses_requested = False

    def _deliver(self) -> None:
        for rid, agent in self.agents.items():
            messages = self.bus.drain(rid)
            # Statuses first: pose updates are gated on the sender's status.
            for msg in messages:
                if isinstance(msg, StatusMessage):
                    agent.set_neighbor_status(msg.status)
            for msg in messages:
                if isinstance(msg, PoseMessage):
                    if msg.auxiliary:
                        agent.update_aux_neighbor_poses(msg.sender, msg.poses)
                    else:
                        agent.update_neighbor_poses(msg.sender, msg.poses)
                elif isinstance(msg, WeightMessage):
                    for (src, dst), weight in msg.weights.items():
                        agent.set_measurement_weight(src, dst, weight)

    def exchange(self) -> None:
        """One publish/deliver cycle over the bus."""
        self._publish(auxiliary=self.params.acceleration)
        self._deliver()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Share the lifting matrix, initialise every agent and propagate the global frame."""
        lifting = self.agents[0].get_lifting_matrix()
        ensure(lifting is not None, "Anchor agent has no lifting matrix")
        for agent in self.agents.values():
            agent.set_lifting_matrix(lifting)
        for agent in self.agents.values():
            agent.initialize()

        passes = self.config.init_exchange_passes or len(self.agents) + 1
        for _ in range(passes):
            self.exchange()
            if all(a.state is AgentState.INITIALIZED for a in self.agents.values()):
                break
        pending = [rid for rid, a in self.agents.items() if a.state is not AgentState.INITIALIZED]
        if pending:
            logger.warning("Robots %s are not initialized in the global frame yet", pending)

        anchor = self.agents[0].get_shared_pose(0)
        ensure(anchor is not None, "Anchor agent failed to initialize")
        for agent in self.agents.values():
            agent.set_global_anchor(anchor.matrix)
        # Second exchange so every cache holds poses from now-initialized peers.
        self.exchange()
        self._initialized = True

    def _select_robot(self, round_idx: int) -> int:
        if self.config.selection == "random":
            return int(self._rng.integers(len(self.agents)))
        return round_idx % len(self.agents)

    def team_status(self) -> Dict[int, AgentStatus]:
        return {rid: agent.status for rid, agent in self.agents.items()}

    def _collect(self, rounds: int, converged: bool, history: Dict[str, List[float]]) -> BackendResult:
        trajectories = {}
        for rid, agent in self.agents.items():
            T = agent.get_trajectory_in_global_frame()
            if T is None:
                logger.warning("Robot %d has no global trajectory", rid)
                continue
            trajectories[rid] = T
        if self.kpi:
            self.kpi.termination(rounds, converged)
        return BackendResult(trajectories=trajectories, rounds=rounds, converged=converged,
                             statuses=self.team_status(), history=history)

    def run(self, max_rounds: Optional[int] = None) -> BackendResult:
        """Synchronous rounds: one robot optimises, everyone iterates and exchanges."""
        if not self._initialized:
            self.initialize()
        max_rounds = max_rounds or self.config.max_rounds
        history: Dict[str, List[float]] = {"max_relative_change": [], "grad_norm": []}
        converged = False
        rounds = 0
        for rounds in range(1, max_rounds + 1):
            selected = self._select_robot(rounds - 1)
            for rid, agent in self.agents.items():
                agent.iterate(rid == selected)
            self.exchange()

            statuses = self.team_status()
            history["max_relative_change"].append(max(s.relative_change for s in statuses.values()))
            result = self.agents[selected].optimization_result
            history["grad_norm"].append(result.grad_norm_opt if result is not None else float("nan"))
            if self.agents[0].should_terminate(statuses):
                converged = all(s.ready_to_terminate for s in statuses.values())
                break
        logger.info("Synchronous run finished after %d rounds (converged=%s)", rounds, converged)
        return self._collect(rounds, converged, history)

    def run_async(self, rate: Optional[float] = None, timeout: Optional[float] = None) -> BackendResult:
        """Free-running agent loops; the calling thread only relays messages."""
        ensure(not self.params.acceleration, "Asynchronous execution does not support acceleration")
        if not self._initialized:
            self.initialize()
        rate = rate or self.config.async_rate
        timeout = timeout if timeout is not None else self.config.async_timeout
        history: Dict[str, List[float]] = {"max_relative_change": []}
        converged = False
        exchanges = 0
        for agent in self.agents.values():
            agent.start_optimization_loop(rate)
        start = time.monotonic()
        try:
            while time.monotonic() - start < timeout:
                time.sleep(self.config.exchange_period)
                self.exchange()
                exchanges += 1
                statuses = self.team_status()
                history["max_relative_change"].append(max(s.relative_change for s in statuses.values()))
                if self.agents[0].should_terminate(statuses):
                    converged = all(s.ready_to_terminate for s in statuses.values())
                    break
        finally:
            for agent in self.agents.values():
                agent.end_optimization_loop()
        logger.info("Asynchronous run finished after %d exchanges (converged=%s)", exchanges, converged)
        return self._collect(exchanges, converged, history)
