"""Single-robot trajectory initialisers (odometry chaining and chordal relaxation)."""
from __future__ import annotations

from typing import List, Sequence
import logging
import math

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from dpgo_common.geometry import Pose, PoseArray, project_to_rotation_group
from dpgo_common.models import RelativeSEMeasurement, ensure

logger = logging.getLogger("dpgo.core.initialization")


def odometry_initialization(odometry: Sequence[RelativeSEMeasurement], n: int, d: int) -> PoseArray:
    """Compose consecutive odometry edges starting from the identity."""
    T = PoseArray(d, n)
    chained = {0: Pose.identity(d)}
    for m in sorted(odometry, key=lambda e: e.p1):
        ensure(m.p1 + 1 == m.p2, f"Edge ({m.p1}->{m.p2}) is not odometry")
        prev = chained.get(m.p1)
        ensure(prev is not None, f"Odometry chain is broken before pose {m.p1}")
        chained[m.p2] = prev * Pose.from_rt(m.R, m.t)
    for i in range(n):
        pose = chained.get(i)
        ensure(pose is not None, f"Odometry does not reach pose {i}")
        T.set_pose(i, pose.matrix)
    return T


def chordal_initialization(measurements: Sequence[RelativeSEMeasurement], n: int, d: int) -> PoseArray:
    """Rotations from the chordal relaxation, then translations given the rotations.

    Pose 0 is pinned at the identity. Both stages are sparse linear least
    squares problems solved through their normal equations.
    """
    T = PoseArray(d, n)
    if n <= 1:
        return T
    measurements = list(measurements)
    ensure(len(measurements) > 0, "Chordal initialisation needs measurements")

    rotations = _chordal_rotations(measurements, n, d)
    translations = _translations_given_rotations(measurements, rotations, n, d)
    for i in range(n):
        T.set_rotation(i, rotations[i])
        T.set_translation(i, translations[i])
    return T


def _chordal_rotations(measurements: List[RelativeSEMeasurement], n: int, d: int) -> List[np.ndarray]:
    m = len(measurements)
    rows, cols, vals = [], [], []
    for e, meas in enumerate(measurements):
        s = math.sqrt(meas.weight * meas.kappa)
        i, j = meas.p1, meas.p2
        for a in range(d):
            for b in range(d):
                rows.append(i * d + a)
                cols.append(e * d + b)
                vals.append(s * meas.R[a, b])
            rows.append(j * d + a)
            cols.append(e * d + a)
            vals.append(-s)
    B = sp.coo_matrix((vals, (rows, cols)), shape=(n * d, m * d)).tocsr()
    B0 = B[:d, :]
    Br = B[d:, :]
    lhs = (Br @ Br.T).tocsc()
    rhs = -(Br @ B0.T).toarray()
    RrT = np.asarray(spla.spsolve(lhs, rhs)).reshape((n - 1) * d, d)

    rotations = [np.eye(d)]
    for i in range(1, n):
        block = RrT[(i - 1) * d:i * d, :].T
        rotations.append(project_to_rotation_group(block))
    return rotations


def _translations_given_rotations(measurements: List[RelativeSEMeasurement], rotations: List[np.ndarray],
                                  n: int, d: int) -> List[np.ndarray]:
    m = len(measurements)
    rows, cols, vals = [], [], []
    D = np.zeros((d, m))
    for e, meas in enumerate(measurements):
        s = math.sqrt(meas.weight * meas.tau)
        rows.extend([meas.p1, meas.p2])
        cols.extend([e, e])
        vals.extend([-s, s])
        D[:, e] = s * (rotations[meas.p1] @ meas.t)
    C = sp.coo_matrix((vals, (rows, cols)), shape=(n, m)).tocsr()
    Cr = C[1:, :]
    lhs = (Cr @ Cr.T).tocsc()
    rhs = Cr @ D.T
    PrT = np.asarray(spla.spsolve(lhs, rhs)).reshape(n - 1, d)

    translations = [np.zeros(d)]
    translations.extend(PrT[i, :] for i in range(n - 1))
    return translations
