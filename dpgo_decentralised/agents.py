from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging
import math
import threading
import time
import numpy as np

from dpgo_common.data_logging import PGOLogger
from dpgo_common.geometry import (
    LiftedPose,
    LiftedPoseArray,
    LiftedSEManifold,
    Pose,
    PoseArray,
    PoseDict,
    angular_to_chordal_so3,
    check_rotation_matrix,
    compute_measurement_error,
    fixed_stiefel_variable,
    project_to_rotation_group,
)
from dpgo_common.kpi_logging import KPILogger
from dpgo_common.models import (
    AgentState,
    AgentStatus,
    PoseID,
    RelativeSEMeasurement,
    ensure,
)
from dpgo_core.initialization import chordal_initialization, odometry_initialization
from dpgo_core.pose_graph import PoseGraph
from dpgo_core.quadratic import OptimizerConfig, OptResult, QuadraticOptimizer, QuadraticProblem
from dpgo_core.robust import (
    RobustCost,
    RobustCostParameters,
    RobustCostType,
    error_threshold_at_quantile,
    robust_single_pose_averaging,
    robust_single_rotation_averaging,
    single_translation_averaging,
)

logger = logging.getLogger("dpgo.decentralised.agent")

EdgeID = Tuple[PoseID, PoseID]


@dataclass
class PGOAgentParameters:
    """Configuration shared by every agent of a team.

    ``r`` is the relaxation rank (r >= d). ``restart_interval`` and
    ``robust_opt_inner_iters`` count calls to :meth:`PGOAgent.iterate`.
    ``robust_init_min_inliers`` is the fewest inlier candidates a frame
    alignment may rest on.
    """

    d: int
    r: int
    num_robots: int = 1
    algorithm: str = "RGD"
    acceleration: bool = False
    restart_interval: int = 30
    robust_cost_params: RobustCostParameters = field(default_factory=RobustCostParameters)
    robust_opt_inner_iters: int = 30
    robust_opt_warm_start: bool = True
    robust_opt_min_convergence_ratio: float = 0.8
    robust_init_min_inliers: int = 2
    multirobot_initialization: bool = True
    rel_change_tol: float = 0.2
    max_num_iters: int = 1000
    log_data: bool = False
    log_directory: str = ""
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    verbose: bool = False

    def __post_init__(self):
        ensure(self.d in (2, 3), f"Unsupported dimension {self.d}")
        ensure(self.r >= self.d, f"Relaxation rank {self.r} must be at least {self.d}")
        ensure(self.num_robots >= 1, "num_robots must be positive")
        ensure(self.restart_interval >= 1, "restart_interval must be positive")
        ensure(self.robust_opt_inner_iters >= 1, "robust_opt_inner_iters must be positive")
        ensure(self.algorithm.upper() == "RGD", f"Unsupported local solver {self.algorithm!r}")
        ensure(not self.log_data or bool(self.log_directory), "log_data requires a log_directory")


class PGOAgent:
    """One robot of a distributed pose-graph optimisation team.

    Lifecycle: WAIT_FOR_DATA -> (initialize) -> WAIT_FOR_INITIALIZATION ->
    (initialize_in_global_frame) -> INITIALIZED -> (reset) -> WAIT_FOR_DATA.
    The agent never references another agent; it only stores copies of the
    public poses, statuses and weights handed to it.

    Three locks guard the mutable state and are always taken in the order
    poses -> measurements -> neighbour poses:

    * ``_poses_lock``: X, Y, V, XPrev, initial trajectories, lifting data.
    * ``_measurements_lock``: the pose graph and its measurement weights.
    * ``_neighbor_poses_lock``: neighbour pose caches and team statuses.
    """

    def __init__(self, robot_id: int, params: PGOAgentParameters, kpi: Optional[KPILogger] = None):
        self._id = int(robot_id)
        self.params = params
        self.d = params.d
        self.r = params.r
        self.kpi = kpi

        self._state = AgentState.WAIT_FOR_DATA
        self._instance_number = 0
        self._iteration_number = 0
        self._num_poses_received = 0
        self._ready_to_terminate = False
        self._relative_change = 0.0

        self._robust_cost = RobustCost(params.robust_cost_params)
        self._pose_graph = PoseGraph(self._id, self.r, self.d)

        self._lifting: Optional[np.ndarray] = None
        self._global_anchor: Optional[LiftedPose] = None
        self._T_local_init: Optional[PoseArray] = None
        self._X_init: Optional[LiftedPoseArray] = None

        self.X = LiftedPoseArray(self.r, self.d, 1)
        self.Y = self.X.copy()
        self.V = self.X.copy()
        self.X_prev = self.X.copy()
        self.gamma = 0.0
        self.alpha = 0.0

        self._neighbor_pose_dict: PoseDict = {}
        self._neighbor_aux_pose_dict: PoseDict = {}
        self._team_status: Dict[int, AgentStatus] = {}

        self._poses_lock = threading.Lock()
        self._measurements_lock = threading.Lock()
        self._neighbor_poses_lock = threading.Lock()

        self._rate = 10.0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.publish_public_poses_requested = False
        self.publish_weights_requested = False
        self._opt_result: Optional[OptResult] = None

        self._data_logger = PGOLogger(params.log_directory) if params.log_data else None

        if self._id == 0:
            self.set_lifting_matrix(fixed_stiefel_variable(self.d, self.r))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def id(self) -> int:
        return self._id

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def num_poses(self) -> int:
        return self._pose_graph.n

    @property
    def iteration_number(self) -> int:
        return self._iteration_number

    @property
    def instance_number(self) -> int:
        return self._instance_number

    @property
    def num_poses_received(self) -> int:
        return self._num_poses_received

    @property
    def robust_cost(self) -> RobustCost:
        return self._robust_cost

    @property
    def pose_graph(self) -> PoseGraph:
        return self._pose_graph

    @property
    def optimization_result(self) -> Optional[OptResult]:
        return self._opt_result

    @property
    def status(self) -> AgentStatus:
        """Current status; readiness and relative change come from the last optimisation."""
        return AgentStatus(
            agent_id=self._id,
            state=self._state,
            instance_number=self._instance_number,
            iteration_number=self._iteration_number,
            ready_to_terminate=self._ready_to_terminate,
            relative_change=self._relative_change,
        )

    # ------------------------------------------------------------------
    # Measurements and trajectory
    # ------------------------------------------------------------------
    def add_measurement(self, m: RelativeSEMeasurement) -> None:
        ensure(self._state is AgentState.WAIT_FOR_DATA, "Measurements can only be added before initialization")
        with self._measurements_lock:
            self._pose_graph.add_measurement(m)

    def set_measurements(self, odometry: List[RelativeSEMeasurement],
                         private_loop_closures: List[RelativeSEMeasurement],
                         shared_loop_closures: List[RelativeSEMeasurement]) -> None:
        ensure(not self.is_optimization_running(), "Cannot replace measurements while optimizing")
        ensure(self._state is AgentState.WAIT_FOR_DATA, "Measurements can only be set before initialization")
        if not odometry:
            logger.warning("[robot %d] No odometry given; measurements ignored", self._id)
            return
        with self._measurements_lock:
            graph = PoseGraph(self._id, self.r, self.d)
            graph.set_measurements(odometry, private_loop_closures, shared_loop_closures)
            self._pose_graph = graph
        logger.debug("[robot %d] %d odometry, %d private, %d shared measurements over %d poses",
                     self._id, len(odometry), len(private_loop_closures), len(shared_loop_closures),
                     self._pose_graph.n)

    def set_x(self, X: np.ndarray) -> None:
        ensure(self._state is not AgentState.WAIT_FOR_DATA, "set_x requires a local trajectory")
        X = np.asarray(X, dtype=float)
        ensure(X.shape == (self.r, (self.d + 1) * self.num_poses),
               f"Expected X of shape {(self.r, (self.d + 1) * self.num_poses)}, got {X.shape}")
        with self._poses_lock:
            self._state = AgentState.INITIALIZED
            self.X.set_data(X)
            if self.params.acceleration:
                self._initialize_acceleration()
        logger.info("[robot %d] Trajectory reset externally (%d poses)", self._id, self.num_poses)

    def get_x(self) -> np.ndarray:
        with self._poses_lock:
            return self.X.get_data()

    def set_lifting_matrix(self, M: np.ndarray) -> None:
        M = np.asarray(M, dtype=float)
        ensure(M.shape == (self.r, self.d), f"Lifting matrix must be {self.r}x{self.d}, got {M.shape}")
        with self._poses_lock:
            self._lifting = M.copy()

    def get_lifting_matrix(self) -> Optional[np.ndarray]:
        """Lifting matrix held by the anchor agent (id 0); None if unset."""
        ensure(self._id == 0, "Only the anchor agent hands out the lifting matrix")
        with self._poses_lock:
            return None if self._lifting is None else self._lifting.copy()

    def set_global_anchor(self, M: np.ndarray) -> None:
        M = np.asarray(M, dtype=float)
        ensure(M.shape == (self.r, self.d + 1), f"Global anchor must be {self.r}x{self.d + 1}, got {M.shape}")
        with self._poses_lock:
            self._global_anchor = LiftedPose(M)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    def initialize(self, T_init: Optional[PoseArray] = None) -> None:
        """Compute a local-frame trajectory, then join the global frame if possible."""
        ensure(self._state is AgentState.WAIT_FOR_DATA, "initialize requires WAIT_FOR_DATA")
        ensure(not self.is_optimization_running(), "Optimization loop must not run during initialization")
        if self._pose_graph.empty():
            logger.info("[robot %d] Local pose graph is empty; skipping initialization", self._id)
            return

        n = self.num_poses
        use_provided = T_init is not None and T_init.d == self.d and T_init.n == n
        with self._poses_lock:
            self.X = LiftedPoseArray(self.r, self.d, n)
            if use_provided:
                logger.info("[robot %d] Using provided trajectory initialization", self._id)
                self._T_local_init = T_init.copy()
            else:
                if T_init is not None:
                    logger.warning("[robot %d] Ignoring provided initialization of size d=%d n=%d",
                                   self._id, T_init.d, T_init.n)
                with self._measurements_lock:
                    self._T_local_init = self._initialize_local_trajectory()
            self._state = AgentState.WAIT_FOR_INITIALIZATION

        if self._id == 0 or not self.params.multirobot_initialization:
            self.initialize_in_global_frame(Pose.identity(self.d))

    def _initialize_local_trajectory(self) -> PoseArray:
        n = self._pose_graph.n
        if self.params.robust_cost_params.cost_type is RobustCostType.L2:
            logger.debug("[robot %d] Chordal initialization", self._id)
            return chordal_initialization(self._pose_graph.local_measurements(), n, self.d)
        # Loop closures are untrusted under a robust cost.
        logger.debug("[robot %d] Odometry initialization", self._id)
        return odometry_initialization(self._pose_graph.odometry, n, self.d)

    def initialize_in_global_frame(self, T_world_robot: Pose) -> None:
        """Express the local initial trajectory in the global frame and start iterating from it."""
        ensure(self._lifting is not None, "Lifting matrix is not set")
        ensure(T_world_robot.d == self.d, "Global transform has the wrong dimension")
        ensure(self._T_local_init is not None and self._state is not AgentState.WAIT_FOR_DATA,
               "initialize_in_global_frame requires a local trajectory")
        check_rotation_matrix(T_world_robot.rotation)

        halted = False
        if self.is_optimization_running():
            logger.info("[robot %d] Halting optimization loop for re-initialization", self._id)
            halted = True
            self.end_optimization_loop()

        with self._poses_lock, self._measurements_lock, self._neighbor_poses_lock:
            self._neighbor_pose_dict.clear()
            self._neighbor_aux_pose_dict.clear()

            T = self._T_local_init.copy()
            for i in range(T.n):
                T.set_pose(i, (T_world_robot * Pose(T.pose(i))).matrix)

            self.X.set_data(self._lifting @ T.get_data())
            self._X_init = self.X.copy()

            if self._state is AgentState.INITIALIZED:
                logger.info("[robot %d] Re-initializes in global frame", self._id)
            else:
                logger.info("[robot %d] Initializes in global frame", self._id)
                self._state = AgentState.INITIALIZED

            if self.params.acceleration:
                self._initialize_acceleration()

            if self._data_logger is not None:
                self._data_logger.log_trajectory(self.d, T.n, T.get_data(), "trajectory_initial.csv")

        if halted:
            self.start_optimization_loop(self._rate)

    # ------------------------------------------------------------------
    # Frame alignment
    # ------------------------------------------------------------------
    def compute_neighbor_transform(self, m: RelativeSEMeasurement, neighbor_pose: LiftedPose) -> Pose:
        """Transform from this robot's local frame to the neighbour's global frame implied by `m`."""
        with self._poses_lock:
            return self._compute_neighbor_transform(m, neighbor_pose)

    def _compute_neighbor_transform(self, m: RelativeSEMeasurement, neighbor_pose: LiftedPose) -> Pose:
        ensure(self._lifting is not None, "Lifting matrix is not set")
        ensure(self._T_local_init is not None, "Local initialization is not available")
        ensure(neighbor_pose.r == self.r and neighbor_pose.d == self.d, "Neighbor pose has the wrong dimensions")

        # world1/frame1 refer to this robot's local frame and public pose,
        # world2/frame2 to the neighbour's aligned frame and public pose.
        dT = Pose.from_rt(m.R, m.t)
        T_world2_frame2 = Pose(self._lifting.T @ neighbor_pose.matrix)
        if m.r2 == self._id:
            T_frame1_frame2 = dT.inverse()
            T_world1_frame1 = Pose(self._T_local_init.pose(m.p2))
        else:
            T_frame1_frame2 = dT
            T_world1_frame1 = Pose(self._T_local_init.pose(m.p1))
        T_world2_frame1 = T_world2_frame2 * T_frame1_frame2.inverse()
        T_world2_world1 = T_world2_frame1 * T_world1_frame1.inverse()
        check_rotation_matrix(T_world2_world1.rotation)
        return T_world2_world1

    def _alignment_candidates(self, neighbor_id: int, pose_dict: PoseDict):
        rotations, translations = [], []
        for m in self._pose_graph.shared_loop_closures_with_robot(neighbor_id):
            nbr_pose_id = m.src if m.r1 == neighbor_id else m.dst
            pose = pose_dict.get(nbr_pose_id)
            if pose is None:
                continue
            T = self._compute_neighbor_transform(m, pose)
            rotations.append(T.rotation)
            translations.append(T.translation)
        return rotations, translations

    def compute_robust_neighbor_transform_two_stage(self, neighbor_id: int, pose_dict: PoseDict) -> Optional[Pose]:
        """Robust rotation averaging over candidates, then translation mean over its inliers."""
        with self._poses_lock, self._measurements_lock:
            rotations, translations = self._alignment_candidates(neighbor_id, pose_dict)
        if not rotations:
            return None
        # About 30 degrees of rotation error.
        max_rotation_error = angular_to_chordal_so3(0.5)
        R_opt, inliers = robust_single_rotation_averaging(rotations, np.ones(len(rotations)), max_rotation_error)
        logger.info("[robot %d] Attempts initialization from neighbor %d: finds %d/%d inliers",
                    self._id, neighbor_id, len(inliers), len(rotations))
        if len(inliers) < self.params.robust_init_min_inliers:
            return None
        t_opt = single_translation_averaging([translations[i] for i in inliers])
        check_rotation_matrix(R_opt)
        return Pose.from_rt(R_opt, t_opt)

    def compute_robust_neighbor_transform(self, neighbor_id: int, pose_dict: PoseDict) -> Optional[Pose]:
        """Joint robust pose averaging over candidates with fixed precision priors."""
        with self._poses_lock, self._measurements_lock:
            rotations, translations = self._alignment_candidates(neighbor_id, pose_dict)
        if not rotations:
            return None
        num = len(rotations)
        # Priors: rotation stddev near 30 degrees, translation stddev near 10 m.
        kappa = 1.82 * np.ones(num)
        tau = 0.01 * np.ones(num)
        cbar = error_threshold_at_quantile(0.9, 3)
        R_opt, t_opt, inliers = robust_single_pose_averaging(rotations, translations, kappa, tau, cbar)
        logger.info("[robot %d] Attempts initialization from neighbor %d: finds %d/%d inliers",
                    self._id, neighbor_id, len(inliers), num)
        if len(inliers) < self.params.robust_init_min_inliers:
            return None
        check_rotation_matrix(R_opt)
        return Pose.from_rt(R_opt, t_opt)

    # ------------------------------------------------------------------
    # Neighbour exchange
    # ------------------------------------------------------------------
    def _check_incoming(self, neighbor_id: int, pose_dict: PoseDict) -> None:
        ensure(neighbor_id != self._id, "Cannot receive poses from self")
        for pid, pose in pose_dict.items():
            ensure(pid.robot_id == neighbor_id, f"Pose {pid} does not belong to robot {neighbor_id}")
            ensure(pose.r == self.r and pose.d == self.d, f"Pose {pid} has the wrong dimensions")

    def _cache_poses(self, cache: PoseDict, neighbor_state: AgentState, pose_dict: PoseDict) -> int:
        stored = 0
        for pid, pose in pose_dict.items():
            self._num_poses_received += 1
            if not self._pose_graph.has_neighbor_pose(pid):
                continue
            if self._state is AgentState.INITIALIZED and neighbor_state is AgentState.INITIALIZED:
                cache[pid] = pose
                stored += 1
        return stored

    def update_neighbor_poses(self, neighbor_id: int, pose_dict: PoseDict) -> None:
        """Receive a neighbour's public poses; may trigger this agent's global initialization."""
        self._check_incoming(neighbor_id, pose_dict)
        neighbor_status = self.get_neighbor_status(neighbor_id)
        if neighbor_status is None:
            logger.debug("[robot %d] Ignoring poses from robot %d with unknown status", self._id, neighbor_id)
            return
        if self._state is AgentState.WAIT_FOR_INITIALIZATION:
            T_world_robot = self.compute_robust_neighbor_transform_two_stage(neighbor_id, pose_dict)
            if T_world_robot is not None:
                self.initialize_in_global_frame(T_world_robot)
        with self._measurements_lock, self._neighbor_poses_lock:
            self._cache_poses(self._neighbor_pose_dict, neighbor_status.state, pose_dict)

    def update_aux_neighbor_poses(self, neighbor_id: int, pose_dict: PoseDict) -> None:
        ensure(self.params.acceleration, "Auxiliary poses are only used with acceleration")
        self._check_incoming(neighbor_id, pose_dict)
        neighbor_status = self.get_neighbor_status(neighbor_id)
        if neighbor_status is None:
            return
        with self._measurements_lock, self._neighbor_poses_lock:
            self._cache_poses(self._neighbor_aux_pose_dict, neighbor_status.state, pose_dict)

    def get_shared_pose(self, index: int) -> Optional[LiftedPose]:
        if self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            if not 0 <= index < self.X.n:
                return None
            return self.X.pose(index)

    def get_aux_shared_pose(self, index: int) -> Optional[LiftedPose]:
        ensure(self.params.acceleration, "Auxiliary poses are only used with acceleration")
        if self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            if not 0 <= index < self.Y.n:
                return None
            return self.Y.pose(index)

    def _public_pose_dict(self, source: LiftedPoseArray) -> PoseDict:
        with self._measurements_lock:
            public_ids = self._pose_graph.my_public_pose_ids()
        out: PoseDict = {}
        for pid in public_ids:
            ensure(pid.robot_id == self._id, f"Public pose {pid} is not owned by robot {self._id}")
            out[pid] = source.pose(pid.frame_id)
        return out

    def get_shared_pose_dict(self) -> Optional[PoseDict]:
        if self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            return self._public_pose_dict(self.X)

    def get_aux_shared_pose_dict(self) -> Optional[PoseDict]:
        ensure(self.params.acceleration, "Auxiliary poses are only used with acceleration")
        if self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            return self._public_pose_dict(self.Y)

    def get_neighbors(self) -> List[int]:
        with self._measurements_lock:
            return sorted(self._pose_graph.neighbor_ids())

    def get_neighbor_public_poses(self, neighbor_id: int) -> List[int]:
        with self._measurements_lock:
            ensure(self._pose_graph.has_neighbor(neighbor_id), f"Robot {neighbor_id} is not a neighbor")
            return sorted(pid.frame_id for pid in self._pose_graph.neighbor_public_pose_ids()
                          if pid.robot_id == neighbor_id)

    def set_neighbor_status(self, status: AgentStatus) -> None:
        with self._neighbor_poses_lock:
            self._team_status[status.agent_id] = status

    def get_neighbor_status(self, neighbor_id: int) -> Optional[AgentStatus]:
        with self._neighbor_poses_lock:
            return self._team_status.get(neighbor_id)

    # ------------------------------------------------------------------
    # Global-frame queries
    # ------------------------------------------------------------------
    def get_trajectory_in_local_frame(self) -> Optional[np.ndarray]:
        """Rounded trajectory with pose 0 at the origin (d x n(d+1))."""
        if self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            n = self.X.n
            T = PoseArray(self.d, n)
            T.set_data(self.X.rotation(0).T @ self.X.get_data())
            t0 = T.translation(0)
            for i in range(n):
                T.set_rotation(i, project_to_rotation_group(T.rotation(i)))
                T.set_translation(i, T.translation(i) - t0)
            return T.get_data()

    def get_trajectory_in_global_frame(self) -> Optional[np.ndarray]:
        """Rounded trajectory expressed in the frame of the global anchor."""
        if self._global_anchor is None or self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            Ya = self._global_anchor.rotation
            t0 = Ya.T @ self._global_anchor.translation
            n = self.X.n
            T = PoseArray(self.d, n)
            T.set_data(Ya.T @ self.X.get_data())
            for i in range(n):
                T.set_rotation(i, project_to_rotation_group(T.rotation(i)))
                T.set_translation(i, T.translation(i) - t0)
            return T.get_data()

    def get_pose_in_global_frame(self, pose_index: int) -> Optional[np.ndarray]:
        if self._global_anchor is None or self._state is not AgentState.INITIALIZED:
            return None
        with self._poses_lock:
            if not 0 <= pose_index < self.X.n:
                return None
            Ya = self._global_anchor.rotation
            Ti = Ya.T @ self.X.pose(pose_index).matrix
            Ti[:, self.d] -= Ya.T @ self._global_anchor.translation
            return Ti

    def get_neighbor_pose_in_global_frame(self, neighbor_id: int, pose_index: int) -> Optional[np.ndarray]:
        if self._global_anchor is None or self._state is not AgentState.INITIALIZED:
            return None
        with self._neighbor_poses_lock:
            pose = self._neighbor_pose_dict.get(PoseID(neighbor_id, pose_index))
        if pose is None:
            return None
        Ya = self._global_anchor.rotation
        Ti = Ya.T @ pose.matrix
        Ti[:, self.d] -= Ya.T @ self._global_anchor.translation
        return Ti

    # ------------------------------------------------------------------
    # Robust weights
    # ------------------------------------------------------------------
    def _should_update_loop_closure_weights(self) -> bool:
        if self._robust_cost.cost_type is RobustCostType.L2:
            return False
        if self._state is not AgentState.INITIALIZED:
            return False
        return self._iteration_number % self.params.robust_opt_inner_iters == 0

    def update_loop_closure_weights(self) -> None:
        ensure(self._state is AgentState.INITIALIZED, "Weight update requires INITIALIZED")
        with self._poses_lock, self._measurements_lock, self._neighbor_poses_lock:
            self._update_loop_closure_weights()

    def _update_loop_closure_weights(self) -> None:
        # Q depends on the weights about to change.
        self._pose_graph.clear_data_matrices()
        X = self.X
        for m in self._pose_graph.private_loop_closures():
            if m.is_known_inlier or m.fixed_weight:
                continue
            residual = math.sqrt(compute_measurement_error(
                m, X.rotation(m.p1), X.translation(m.p1), X.rotation(m.p2), X.translation(m.p2)))
            m.weight = self._robust_cost.weight(residual)
            logger.debug("[robot %d] Edge (%d,%d)->(%d,%d): residual=%.4g weight=%.4g",
                         self._id, m.r1, m.p1, m.r2, m.p2, residual, m.weight)

        # Only the lower-id endpoint robot decides shared loop closure weights.
        for m in self._pose_graph.shared_loop_closures():
            if m.is_known_inlier or m.fixed_weight:
                continue
            if m.r1 == self._id:
                if m.r2 < self._id:
                    continue
                neighbor = self._neighbor_pose_dict.get(m.dst)
                if neighbor is None:
                    logger.debug("[robot %d] Cannot update edge (%d,%d)->(%d,%d) yet",
                                 self._id, m.r1, m.p1, m.r2, m.p2)
                    continue
                Y1, p1 = X.rotation(m.p1), X.translation(m.p1)
                Y2, p2 = neighbor.rotation, neighbor.translation
            else:
                if m.r1 < self._id:
                    continue
                neighbor = self._neighbor_pose_dict.get(m.src)
                if neighbor is None:
                    logger.debug("[robot %d] Cannot update edge (%d,%d)->(%d,%d) yet",
                                 self._id, m.r1, m.p1, m.r2, m.p2)
                    continue
                Y1, p1 = neighbor.rotation, neighbor.translation
                Y2, p2 = X.rotation(m.p2), X.translation(m.p2)
            residual = math.sqrt(compute_measurement_error(m, Y1, p1, Y2, p2))
            m.weight = self._robust_cost.weight(residual)
            logger.debug("[robot %d] Edge (%d,%d)->(%d,%d): residual=%.4g weight=%.4g",
                         self._id, m.r1, m.p1, m.r2, m.p2, residual, m.weight)
        self.publish_weights_requested = True

    def get_shared_loop_closure_weights(self, neighbor_id: int) -> Dict[EdgeID, float]:
        """Weights of the shared loop closures with `neighbor_id` that this agent decides."""
        if self._id > neighbor_id:
            return {}
        with self._measurements_lock:
            return {m.edge_id(): m.weight
                    for m in self._pose_graph.shared_loop_closures_with_robot(neighbor_id)
                    if not (m.fixed_weight or m.is_known_inlier)}

    def set_measurement_weight(self, src: PoseID, dst: PoseID, weight: float) -> bool:
        """Apply a weight decided elsewhere; False if the edge is unknown or not adjustable."""
        ensure(0.0 <= weight <= 1.0, f"Weight must lie in [0, 1], got {weight}")
        with self._measurements_lock:
            m = self._pose_graph.find_measurement(src, dst)
            if m is None or m.fixed_weight or m.is_known_inlier:
                return False
            if m.weight != weight:
                m.weight = float(weight)
                self._pose_graph.clear_data_matrices()
            return True

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    def iterate(self, do_optimization: bool = True) -> bool:
        """One (possibly accelerated) update. Returns True if X was updated successfully.

        Outside INITIALIZED this returns False and leaves the agent untouched.
        """
        with self._poses_lock, self._measurements_lock, self._neighbor_poses_lock:
            if self._state is not AgentState.INITIALIZED:
                return False
            self._iteration_number += 1
            if self._should_update_loop_closure_weights():
                self._update_loop_closure_weights()
                self._robust_cost.update()
                if not self.params.robust_opt_warm_start:
                    ensure(self._X_init is not None, "Initial trajectory is not available")
                    self.X = self._X_init.copy()
                    logger.info("[robot %d] Warm start disabled; trajectory reset to initial guess", self._id)
                if self.params.acceleration:
                    self._initialize_acceleration()

            self.X_prev = self.X.copy()
            if self.params.acceleration:
                self._update_gamma()
                self._update_alpha()
                self._update_y()
                success = self._update_x(do_optimization, True)
                self._update_v()
                if self._should_restart():
                    self._restart_nesterov_acceleration(do_optimization)
                self.publish_public_poses_requested = True
            else:
                success = self._update_x(do_optimization, False)
                if do_optimization:
                    self.publish_public_poses_requested = True

            if do_optimization:
                self._relative_change = LiftedPoseArray.average_translation_distance(self.X, self.X_prev)
                stats = self._pose_graph.statistics()
                ratio = stats.decided_ratio()
                self._ready_to_terminate = (
                    success
                    and self._relative_change <= self.params.rel_change_tol
                    and ratio >= self.params.robust_opt_min_convergence_ratio
                )
                if self.params.verbose:
                    logger.info("[robot %d] loop closures accepted=%d rejected=%d undecided=%d",
                                self._id, stats.accept_loop_closures, stats.reject_loop_closures,
                                stats.undecided_loop_closures)
                if self.kpi is not None:
                    self.kpi.iteration(self._id, self._iteration_number, self._state.name,
                                       relative_change=self._relative_change,
                                       ready_to_terminate=self._ready_to_terminate,
                                       decided_ratio=ratio)
            return success

    def _update_x(self, do_optimization: bool, acceleration: bool) -> bool:
        if not do_optimization:
            if acceleration:
                self.X = self.Y.copy()
            return True
        ensure(self._state is AgentState.INITIALIZED, "Optimization requires INITIALIZED")
        if acceleration:
            ensure(self.params.acceleration, "Acceleration is disabled")
            self._pose_graph.set_neighbor_poses(self._neighbor_aux_pose_dict)
        else:
            self._pose_graph.set_neighbor_poses(self._neighbor_pose_dict)

        if not self._pose_graph.construct_data_matrices():
            logger.warning("[robot %d] Cannot construct data matrices; skipping optimization", self._id)
            return False

        if self.kpi is not None:
            self.kpi.optimization_start(self._id, self._iteration_number, self.X.n)
        start = time.perf_counter()
        problem = QuadraticProblem(self._pose_graph)
        optimizer = QuadraticOptimizer(problem, self.params.optimizer)
        X0 = self.Y.get_data() if acceleration else self.X.get_data()
        self.X.set_data(optimizer.optimize(X0))
        result = optimizer.result
        self._opt_result = result
        if self.params.verbose:
            logger.info("[robot %d] df=%.4g gn0=%.4g gn1=%.4g",
                        self._id, result.f_init - result.f_opt, result.grad_norm_init, result.grad_norm_opt)
        if self.kpi is not None:
            self.kpi.optimization_end(self._id, self._iteration_number, time.perf_counter() - start,
                                      f_init=result.f_init, f_opt=result.f_opt,
                                      grad_norm_opt=result.grad_norm_opt, success=result.success)
        return True

    # ------------------------------------------------------------------
    # Acceleration
    # ------------------------------------------------------------------
    def _should_restart(self) -> bool:
        return self.params.acceleration and self._iteration_number % self.params.restart_interval == 0

    def _restart_nesterov_acceleration(self, do_optimization: bool) -> None:
        if not (self.params.acceleration and self._state is AgentState.INITIALIZED):
            return
        logger.debug("[robot %d] Restarts Nesterov acceleration", self._id)
        self.X = self.X_prev.copy()
        self._update_x(do_optimization, False)
        self.V = self.X.copy()
        self.Y = self.X.copy()
        self.gamma = 0.0
        self.alpha = 0.0

    def _initialize_acceleration(self) -> None:
        ensure(self.params.acceleration, "Acceleration is disabled")
        if self._state is AgentState.INITIALIZED:
            self.X_prev = self.X.copy()
            self.gamma = 0.0
            self.alpha = 0.0
            self.V = self.X.copy()
            self.Y = self.X.copy()

    def _update_gamma(self) -> None:
        N = self.params.num_robots
        self.gamma = (1.0 + math.sqrt(1.0 + 4.0 * N**2 * self.gamma**2)) / (2.0 * N)

    def _update_alpha(self) -> None:
        self.alpha = 1.0 / (self.gamma * self.params.num_robots)

    def _manifold(self) -> LiftedSEManifold:
        return LiftedSEManifold(self.r, self.d, self.X.n)

    def _update_y(self) -> None:
        M = (1.0 - self.alpha) * self.X.get_data() + self.alpha * self.V.get_data()
        self.Y.set_data(self._manifold().project(M))

    def _update_v(self) -> None:
        M = self.V.get_data() + self.gamma * (self.X.get_data() - self.Y.get_data())
        self.V.set_data(self._manifold().project(M))

    # ------------------------------------------------------------------
    # Asynchronous loop
    # ------------------------------------------------------------------
    def start_optimization_loop(self, rate: float = 10.0) -> None:
        """Call iterate(True) at Poisson-distributed times with mean `rate` Hz."""
        ensure(not self.params.acceleration, "Asynchronous optimization does not support acceleration")
        ensure(rate > 0, f"Rate must be positive, got {rate}")
        if self.is_optimization_running():
            logger.info("[robot %d] Optimization loop already running", self._id)
            return
        self._rate = float(rate)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_optimization_loop,
                                        name=f"dpgo-agent-{self._id}", daemon=True)
        self._thread.start()

    def _run_optimization_loop(self) -> None:
        logger.info("[robot %d] Optimization loop running at %.2f Hz", self._id, self._rate)
        rng = np.random.default_rng()
        try:
            while not self._stop_event.wait(rng.exponential(1.0 / self._rate)):
                self.iterate(True)
        except Exception:
            logger.exception("[robot %d] Optimization loop failed", self._id)
        finally:
            if self._thread is threading.current_thread():
                self._thread = None
        logger.info("[robot %d] Optimization loop exited", self._id)

    def end_optimization_loop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None
        self._stop_event.clear()

    def is_optimization_running(self) -> bool:
        return self._thread is not None

    # ------------------------------------------------------------------
    # Termination / reset
    # ------------------------------------------------------------------
    def should_terminate(self, team_status: Optional[Dict[int, AgentStatus]] = None) -> bool:
        """True once every robot reports INITIALIZED and ready, or the iteration cap is passed."""
        if self._iteration_number > self.params.max_num_iters:
            logger.info("[robot %d] Reached maximum iterations", self._id)
            return True
        if team_status is None:
            with self._neighbor_poses_lock:
                team_status = dict(self._team_status)
            team_status[self._id] = self.status
        for robot_id in range(self.params.num_robots):
            status = team_status.get(robot_id)
            if status is None:
                return False
            ensure(status.agent_id == robot_id, f"Status keyed {robot_id} belongs to robot {status.agent_id}")
            if status.state is not AgentState.INITIALIZED or not status.ready_to_terminate:
                return False
        return True

    def reset(self) -> None:
        """Back to WAIT_FOR_DATA for a new problem instance; the lifting matrix is kept."""
        self.end_optimization_loop()

        if self._data_logger is not None:
            self._data_logger.log_measurements(self._pose_graph.measurements, "measurements.csv")
            T = self.get_trajectory_in_global_frame()
            if T is not None:
                self._data_logger.log_trajectory(self.d, self.num_poses, T, "trajectory_optimized.csv")
                logger.info("[robot %d] Saved optimized trajectory to %s", self._id, self.params.log_directory)
            self._data_logger.log_matrix(self.X.get_data(), "X.csv")

        with self._poses_lock, self._measurements_lock, self._neighbor_poses_lock:
            self._instance_number += 1
            self._iteration_number = 0
            self._num_poses_received = 0
            self._state = AgentState.WAIT_FOR_DATA
            self._ready_to_terminate = False
            self._relative_change = 0.0

            self._neighbor_pose_dict.clear()
            self._neighbor_aux_pose_dict.clear()
            self._team_status.clear()

            self._robust_cost.reset()
            self._global_anchor = None
            self._T_local_init = None
            self._X_init = None

            self.publish_public_poses_requested = False
            self.publish_weights_requested = False
            self._opt_result = None

            self.X = LiftedPoseArray(self.r, self.d, 1)
            self.Y = self.X.copy()
            self.V = self.X.copy()
            self.X_prev = self.X.copy()
            self.gamma = 0.0
            self.alpha = 0.0
            self._pose_graph = PoseGraph(self._id, self.r, self.d)

    # ------------------------------------------------------------------
    # Local solve
    # ------------------------------------------------------------------
    def local_pose_graph_optimization(self) -> np.ndarray:
        """Optimise odometry + private loop closures alone at rank d; returns d x n(d+1)."""
        with self._poses_lock, self._measurements_lock:
            ensure(self._pose_graph.n > 0, "Local pose graph is empty")
            if self._T_local_init is None:
                self._T_local_init = self._initialize_local_trajectory()
            local_graph = PoseGraph(self._id, self.d, self.d)
            local_graph.set_measurements(self._pose_graph.odometry, self._pose_graph.private_loop_closures(), [])
            T0 = self._T_local_init.get_data()
        ensure(local_graph.n == self._T_local_init.n, "Local measurements do not cover every pose")
        ensure(local_graph.construct_data_matrices(), "Local data matrices could not be built")
        config = OptimizerConfig(max_iterations=100, gradnorm_tol=1e-1)
        optimizer = QuadraticOptimizer(QuadraticProblem(local_graph), config)
        T_opt = optimizer.optimize(T0)
        logger.info("[robot %d] Local optimization took %.3f s", self._id, optimizer.result.elapsed_ms / 1e3)
        return T_opt
