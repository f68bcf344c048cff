"""Per-robot pose graph: measurement bookkeeping and quadratic data matrices."""
from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple
import logging

import numpy as np
import scipy.sparse as sp

from dpgo_common.geometry import LiftedPose, PoseDict
from dpgo_common.models import PoseGraphStatistics, PoseID, RelativeSEMeasurement, ensure

logger = logging.getLogger("dpgo.core.pose_graph")

# Weights at or beyond these bounds count as accepted / rejected loop closures.
ACCEPT_WEIGHT = 1.0 - 1e-6
REJECT_WEIGHT = 1e-6

EdgeID = Tuple[PoseID, PoseID]


class PoseGraph:
    """Measurements owned by one robot and the matrices of its local cost.

    The local cost over the packed lifted trajectory X (r x n(d+1)) is
    ``0.5 * tr(X Q X^T) + tr(X G^T)``. Q depends only on local and shared
    measurements and their weights; G carries the contribution of the
    neighbours' public poses through shared loop closures.
    """

    def __init__(self, robot_id: int, r: int, d: int):
        ensure(r >= d, f"Relaxation rank {r} must be at least the dimension {d}")
        self.robot_id = int(robot_id)
        self.r = int(r)
        self.d = int(d)
        self._n = 0
        self._odometry: List[RelativeSEMeasurement] = []
        self._private_lcs: List[RelativeSEMeasurement] = []
        self._shared_lcs: List[RelativeSEMeasurement] = []
        self._edges: Dict[EdgeID, RelativeSEMeasurement] = {}
        self._neighbor_ids: Set[int] = set()
        self._my_public_pose_ids: Set[PoseID] = set()
        self._neighbor_public_pose_ids: Set[PoseID] = set()
        self._neighbor_poses: PoseDict = {}
        self._Q: Optional[sp.csr_matrix] = None
        self._G: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------
    @property
    def n(self) -> int:
        return self._n

    def empty(self) -> bool:
        return self._n == 0

    def clear(self) -> None:
        self._n = 0
        self._odometry.clear()
        self._private_lcs.clear()
        self._shared_lcs.clear()
        self._edges.clear()
        self._neighbor_ids.clear()
        self._my_public_pose_ids.clear()
        self._neighbor_public_pose_ids.clear()
        self._neighbor_poses = {}
        self.clear_data_matrices()

    def _register(self, m: RelativeSEMeasurement) -> bool:
        ensure(m.d == self.d, f"Measurement dimension {m.d} does not match pose graph dimension {self.d}")
        ensure(m.r1 == self.robot_id or m.r2 == self.robot_id,
               f"Measurement ({m.r1},{m.p1})->({m.r2},{m.p2}) does not involve robot {self.robot_id}")
        key = m.edge_id()
        if key in self._edges:
            logger.warning("[robot %d] Ignoring duplicate measurement (%d,%d)->(%d,%d)",
                           self.robot_id, m.r1, m.p1, m.r2, m.p2)
            return False
        self._edges[key] = m
        return True

    def _add_odometry(self, m: RelativeSEMeasurement) -> None:
        ensure(m.r1 == m.r2 == self.robot_id and m.p1 + 1 == m.p2,
               "Odometry must link consecutive poses of this robot")
        if self._register(m):
            self._odometry.append(m)
            self._n = max(self._n, m.p1 + 1, m.p2 + 1)

    def _add_private_loop_closure(self, m: RelativeSEMeasurement) -> None:
        ensure(m.r1 == m.r2 == self.robot_id, "Private loop closure must stay within this robot")
        if self._register(m):
            self._private_lcs.append(m)
            self._n = max(self._n, m.p1 + 1, m.p2 + 1)

    def _add_shared_loop_closure(self, m: RelativeSEMeasurement) -> None:
        ensure(m.r1 != m.r2, "Shared loop closure must link two different robots")
        if not self._register(m):
            return
        self._shared_lcs.append(m)
        if m.r1 == self.robot_id:
            mine, theirs = m.src, m.dst
        else:
            mine, theirs = m.dst, m.src
        self._n = max(self._n, mine.frame_id + 1)
        self._my_public_pose_ids.add(mine)
        self._neighbor_public_pose_ids.add(theirs)
        self._neighbor_ids.add(theirs.robot_id)

    def add_measurement(self, m: RelativeSEMeasurement) -> None:
        if m.r1 != m.r2:
            self._add_shared_loop_closure(m)
        elif m.p1 + 1 == m.p2:
            self._add_odometry(m)
        else:
            self._add_private_loop_closure(m)
        self.clear_data_matrices()

    def set_measurements(self, odometry: List[RelativeSEMeasurement],
                         private_loop_closures: List[RelativeSEMeasurement],
                         shared_loop_closures: List[RelativeSEMeasurement]) -> None:
        self.clear()
        for m in odometry:
            self._add_odometry(m)
        for m in private_loop_closures:
            self._add_private_loop_closure(m)
        for m in shared_loop_closures:
            self._add_shared_loop_closure(m)

    @property
    def odometry(self) -> List[RelativeSEMeasurement]:
        return list(self._odometry)

    def private_loop_closures(self) -> List[RelativeSEMeasurement]:
        return list(self._private_lcs)

    def shared_loop_closures(self) -> List[RelativeSEMeasurement]:
        return list(self._shared_lcs)

    def shared_loop_closures_with_robot(self, neighbor_id: int) -> List[RelativeSEMeasurement]:
        return [m for m in self._shared_lcs if m.r1 == neighbor_id or m.r2 == neighbor_id]

    def local_measurements(self) -> List[RelativeSEMeasurement]:
        return self._odometry + self._private_lcs

    @property
    def measurements(self) -> List[RelativeSEMeasurement]:
        return self._odometry + self._private_lcs + self._shared_lcs

    def find_measurement(self, src: PoseID, dst: PoseID) -> Optional[RelativeSEMeasurement]:
        return self._edges.get((src, dst))

    def statistics(self) -> PoseGraphStatistics:
        stats = PoseGraphStatistics()
        for m in self._private_lcs + self._shared_lcs:
            stats.total_loop_closures += 1
            if m.is_known_inlier or m.weight >= ACCEPT_WEIGHT:
                stats.accept_loop_closures += 1
            elif m.weight <= REJECT_WEIGHT:
                stats.reject_loop_closures += 1
        return stats

    # ------------------------------------------------------------------
    # Neighbours
    # ------------------------------------------------------------------
    def has_neighbor(self, robot_id: int) -> bool:
        return robot_id in self._neighbor_ids

    def neighbor_ids(self) -> Set[int]:
        return set(self._neighbor_ids)

    def my_public_pose_ids(self) -> Set[PoseID]:
        return set(self._my_public_pose_ids)

    def neighbor_public_pose_ids(self) -> Set[PoseID]:
        return set(self._neighbor_public_pose_ids)

    def has_neighbor_pose(self, pose_id: PoseID) -> bool:
        """True if `pose_id` is a neighbour pose referenced by a shared loop closure."""
        return pose_id in self._neighbor_public_pose_ids

    def num_available_neighbor_poses(self) -> int:
        return sum(1 for pid in self._neighbor_public_pose_ids if pid in self._neighbor_poses)

    def set_neighbor_poses(self, poses: PoseDict) -> None:
        self._neighbor_poses = dict(poses)
        self._G = None

    # ------------------------------------------------------------------
    # Data matrices
    # ------------------------------------------------------------------
    @property
    def Q(self) -> Optional[sp.csr_matrix]:
        return self._Q

    @property
    def G(self) -> Optional[np.ndarray]:
        return self._G

    def clear_data_matrices(self) -> None:
        self._Q = None
        self._G = None

    def _edge_blocks(self, m: RelativeSEMeasurement) -> Tuple[np.ndarray, np.ndarray]:
        d = self.d
        T = np.eye(d + 1)
        T[:d, :d] = m.R
        T[:d, d] = m.t
        W = np.diag(np.concatenate([np.full(d, m.kappa), [m.tau]])) * m.weight
        return T, W

    def _construct_Q(self) -> sp.csr_matrix:
        d, dh, n = self.d, self.d + 1, self._n
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        vals: List[np.ndarray] = []

        def put(bi: int, bj: int, block: np.ndarray) -> None:
            ii, jj = np.meshgrid(np.arange(bi * dh, (bi + 1) * dh), np.arange(bj * dh, (bj + 1) * dh), indexing="ij")
            rows.append(ii.ravel())
            cols.append(jj.ravel())
            vals.append(block.ravel())

        for m in self.local_measurements():
            T, W = self._edge_blocks(m)
            i, j = m.p1, m.p2
            put(i, i, T @ W @ T.T)
            put(j, j, W)
            put(i, j, -T @ W)
            put(j, i, -W @ T.T)
        for m in self._shared_lcs:
            T, W = self._edge_blocks(m)
            if m.r1 == self.robot_id:
                put(m.p1, m.p1, T @ W @ T.T)
            else:
                put(m.p2, m.p2, W)

        size = n * dh
        if not vals:
            return sp.csr_matrix((size, size))
        Q = sp.coo_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(size, size))
        return Q.tocsr()

    def _construct_G(self) -> Optional[np.ndarray]:
        d, dh = self.d, self.d + 1
        G = np.zeros((self.r, self._n * dh))
        for m in self._shared_lcs:
            T, W = self._edge_blocks(m)
            if m.r1 == self.robot_id:
                neighbor = self._neighbor_poses.get(m.dst)
                if neighbor is None:
                    logger.debug("[robot %d] Missing neighbor pose (%d,%d)", self.robot_id, m.r2, m.p2)
                    return None
                Xj = neighbor.matrix
                G[:, m.p1 * dh:(m.p1 + 1) * dh] += -Xj @ W @ T.T
            else:
                neighbor = self._neighbor_poses.get(m.src)
                if neighbor is None:
                    logger.debug("[robot %d] Missing neighbor pose (%d,%d)", self.robot_id, m.r1, m.p1)
                    return None
                Xi = neighbor.matrix
                G[:, m.p2 * dh:(m.p2 + 1) * dh] += -Xi @ T @ W
        return G

    def construct_data_matrices(self) -> bool:
        """Build Q (if stale) and G from the current neighbour poses; False if any is missing."""
        if self._Q is None:
            self._Q = self._construct_Q()
        if self._G is None:
            G = self._construct_G()
            if G is None:
                return False
            self._G = G
        return True

    def cost(self, X: np.ndarray) -> float:
        """Sum of 0.5 * weighted squared residuals evaluated edge by edge."""
        dh = self.d + 1
        d = self.d

        def block(pid: PoseID) -> Optional[np.ndarray]:
            if pid.robot_id == self.robot_id:
                return X[:, pid.frame_id * dh:(pid.frame_id + 1) * dh]
            pose: Optional[LiftedPose] = self._neighbor_poses.get(pid)
            return pose.matrix if pose is not None else None

        total = 0.0
        for m in self.measurements:
            Xi, Xj = block(m.src), block(m.dst)
            ensure(Xi is not None and Xj is not None, "Cost evaluation requires every neighbor pose")
            rot_err = Xi[:, :d] @ m.R - Xj[:, :d]
            tr_err = Xj[:, d] - Xi[:, d] - Xi[:, :d] @ m.t
            total += 0.5 * m.weight * (m.kappa * float(np.sum(rot_err**2)) + m.tau * float(np.sum(tr_err**2)))
        return total
