"""Synthetic pose graphs shared by the test modules.

Ground truth trajectories always start at the identity so that single-robot
initialisers (which pin pose 0) reproduce them exactly on noiseless data.
"""
from typing import List, Sequence, Tuple

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from dpgo_common.geometry import Pose, PoseArray
from dpgo_common.models import RelativeSEMeasurement


def _small_rotation(d: int, rng: np.random.Generator, scale: float) -> np.ndarray:
    if d == 2:
        theta = rng.normal(scale=scale)
        c, s = np.cos(theta), np.sin(theta)
        return np.array([[c, -s], [s, c]])
    return Rotation.from_rotvec(rng.normal(scale=scale, size=3)).as_matrix()


def ground_truth(n: int, d: int, seed: int = 0) -> PoseArray:
    rng = np.random.default_rng(seed)
    T = PoseArray(d, n)
    for i in range(1, n):
        step_t = np.zeros(d)
        step_t[0] = 1.0
        step_t[1:] = rng.normal(scale=0.2, size=d - 1)
        step = Pose.from_rt(_small_rotation(d, rng, 0.3), step_t)
        T.set_pose(i, (Pose(T.pose(i - 1)) * step).matrix)
    return T


def relative_measurement(T: PoseArray, i: int, j: int, *, sigma: float = 0.0,
                         rng: np.random.Generator = None, kappa: float = 1.0, tau: float = 1.0,
                         **kwargs) -> RelativeSEMeasurement:
    rel = Pose(T.pose(i)).inverse() * Pose(T.pose(j))
    R, t = rel.rotation, rel.translation
    if sigma > 0:
        rng = rng if rng is not None else np.random.default_rng()
        R = R @ _small_rotation(T.d, rng, sigma)
        t = t + rng.normal(scale=sigma, size=T.d)
    kwargs.setdefault("fixed_weight", i + 1 == j)
    return RelativeSEMeasurement(0, i, 0, j, R, t, kappa, tau, **kwargs)


def build_dataset(n: int, d: int, loop_closures: Sequence[Tuple[int, int]] = (),
                  sigma: float = 0.0, seed: int = 0) -> Tuple[PoseArray, List[RelativeSEMeasurement]]:
    """Odometry chain over `n` poses plus the given loop closures."""
    gt = ground_truth(n, d, seed)
    rng = np.random.default_rng(seed + 100)
    measurements = [relative_measurement(gt, i, i + 1, sigma=sigma, rng=rng) for i in range(n - 1)]
    measurements += [relative_measurement(gt, i, j, sigma=sigma, rng=rng) for i, j in loop_closures]
    return gt, measurements


def outlier_measurement(T: PoseArray, i: int, j: int) -> RelativeSEMeasurement:
    """Loop closure rotated by 90 degrees and shifted by 10 m from the truth."""
    m = relative_measurement(T, i, j)
    d = T.d
    if d == 2:
        R_err = np.array([[0.0, -1.0], [1.0, 0.0]])
    else:
        R_err = Rotation.from_rotvec([0.0, 0.0, np.pi / 2]).as_matrix()
    return RelativeSEMeasurement(0, i, 0, j, m.R @ R_err, m.t + 10.0, m.kappa, m.tau)


def block(T: np.ndarray, d: int, start: int, end: int) -> np.ndarray:
    return T[:, start * (d + 1):end * (d + 1)]


@pytest.fixture
def make_dataset():
    return build_dataset


@pytest.fixture
def make_outlier():
    return outlier_measurement


@pytest.fixture
def trajectory_block():
    return block


@pytest.fixture
def two_robot_dataset():
    """10 poses in 2D split 0-4 / 5-9, three cross loop closures and one private each."""
    return build_dataset(10, 2, loop_closures=[(0, 3), (5, 9), (1, 7), (2, 8), (3, 9)])


@pytest.fixture
def g2o_2d(tmp_path):
    path = tmp_path / "chain.g2o"
    path.write_text(
        "VERTEX_SE2 0 0 0 0\n"
        "VERTEX_SE2 1 1 0 0\n"
        "EDGE_SE2 0 1 1.0 0.0 0.0 1 0 0 1 0 1\n"
        "EDGE_SE2 1 2 1.0 0.0 1.5707963267948966 1 0 0 1 0 1\n"
        "EDGE_SE2 2 3 1.0 0.0 1.5707963267948966 1 0 0 1 0 1\n"
        "EDGE_SE2 3 4 1.0 0.0 1.5707963267948966 1 0 0 1 0 1\n"
        "EDGE_SE2 0 3 2.0 1.0 3.141592653589793 4 0 0 4 0 2\n"
    )
    return path
