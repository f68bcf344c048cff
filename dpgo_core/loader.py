"""g2o pose-graph reader.

Only ``EDGE_SE2`` and ``EDGE_SE3:QUAT`` lines become measurements; vertex
lines carry initial guesses and are skipped. Information matrices are reduced
to the isotropic precisions (kappa, tau) used by the relaxed cost.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple
import logging
import math

import numpy as np
from scipy.spatial.transform import Rotation

from dpgo_common.models import RelativeSEMeasurement

logger = logging.getLogger("dpgo.core.loader")

_SKIPPED_TOKENS = {"VERTEX_SE2", "VERTEX_SE3:QUAT", "FIX"}


@dataclass
class LoaderConfig:
    reindex_from_zero: bool = True
    require_consecutive_ids: bool = True


def _upper_to_symmetric(values: List[float], size: int) -> np.ndarray:
    M = np.zeros((size, size))
    idx = 0
    for i in range(size):
        for j in range(i, size):
            M[i, j] = M[j, i] = values[idx]
            idx += 1
    return M


def _parse_se2(tokens: List[str]) -> RelativeSEMeasurement:
    if len(tokens) != 12:
        raise ValueError(f"EDGE_SE2 expects 11 fields, got {len(tokens) - 1}")
    i, j = int(tokens[1]), int(tokens[2])
    dx, dy, dtheta = (float(v) for v in tokens[3:6])
    info = _upper_to_symmetric([float(v) for v in tokens[6:12]], 3)
    c, s = math.cos(dtheta), math.sin(dtheta)
    R = np.array([[c, -s], [s, c]])
    tau = 2.0 / float(np.trace(np.linalg.inv(info[:2, :2])))
    kappa = float(info[2, 2])
    return RelativeSEMeasurement(0, i, 0, j, R, [dx, dy], kappa, tau, fixed_weight=(i + 1 == j))


def _parse_se3(tokens: List[str]) -> RelativeSEMeasurement:
    if len(tokens) != 31:
        raise ValueError(f"EDGE_SE3:QUAT expects 30 fields, got {len(tokens) - 1}")
    i, j = int(tokens[1]), int(tokens[2])
    t = [float(v) for v in tokens[3:6]]
    qx, qy, qz, qw = (float(v) for v in tokens[6:10])
    R = Rotation.from_quat([qx, qy, qz, qw]).as_matrix()
    info = _upper_to_symmetric([float(v) for v in tokens[10:31]], 6)
    tau = 3.0 / float(np.trace(np.linalg.inv(info[:3, :3])))
    kappa = 3.0 / (2.0 * float(np.trace(np.linalg.inv(info[3:, 3:]))))
    return RelativeSEMeasurement(0, i, 0, j, R, t, kappa, tau, fixed_weight=(i + 1 == j))


def read_g2o(path: str, cfg: LoaderConfig = None) -> Tuple[List[RelativeSEMeasurement], int]:
    """Read a single-robot g2o file. Returns (measurements, num_poses).

    Edges between consecutive pose ids are marked fixed-weight odometry.
    """
    cfg = cfg or LoaderConfig()
    measurements: List[RelativeSEMeasurement] = []
    pose_ids = set()
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            tokens = line.split()
            if not tokens:
                continue
            tag = tokens[0]
            if tag == "EDGE_SE2":
                m = _parse_se2(tokens)
            elif tag == "EDGE_SE3:QUAT":
                m = _parse_se3(tokens)
            elif tag in _SKIPPED_TOKENS:
                if tag == "FIX":
                    logger.warning("FIX lines are not supported; skipping line %d", lineno)
                continue
            else:
                raise ValueError(f"{path}:{lineno}: unrecognised g2o tag {tag!r}")
            pose_ids.update((m.p1, m.p2))
            measurements.append(m)

    if not measurements:
        raise ValueError(f"No measurements found in {path}")

    ordered = sorted(pose_ids)
    first = ordered[0]
    if cfg.require_consecutive_ids and ordered != list(range(first, first + len(ordered))):
        raise ValueError(f"Pose ids in {path} are not consecutive")
    if cfg.reindex_from_zero and first != 0:
        logger.warning("First pose id is %d; re-indexing poses from zero", first)
        for m in measurements:
            m.p1 -= first
            m.p2 -= first

    dims = {m.d for m in measurements}
    if len(dims) != 1:
        raise ValueError(f"Mixed 2D/3D edges in {path}")
    logger.info("Loaded %d measurements over %d poses (d=%d) from %s",
                len(measurements), len(ordered), dims.pop(), path)
    return measurements, len(ordered)


def get_dimension_and_num_poses(measurements: List[RelativeSEMeasurement]) -> Tuple[int, int]:
    if not measurements:
        raise ValueError("Cannot infer dimension from an empty measurement list")
    d = measurements[0].d
    if d not in (2, 3):
        raise ValueError(f"Unsupported dimension {d}")
    num_poses = 0
    for m in measurements:
        num_poses = max(num_poses, m.p1 + 1, m.p2 + 1)
    return d, num_poses
