"""Centralised reference solution with GTSAM Levenberg-Marquardt.

Used to score distributed runs: every measurement becomes a between factor
with an isotropic noise model matching its (kappa, tau) precisions, pose 0 is
anchored by a tight prior.
"""
from typing import Optional, Sequence
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from dpgo_common.geometry import PoseArray
from dpgo_common.models import RelativeSEMeasurement

logger = logging.getLogger("dpgo.core.reference")


# kernel name -> (mEstimator class name, default tuning constant)
_KERNELS = {
    "huber": ("Huber", 1.345),
    "cauchy": ("Cauchy", 1.0),
}


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap `base` in a Huber or Cauchy kernel; `kind=None` returns it untouched."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot wrap the noise model")
    if not kind:
        return base
    try:
        estimator, default_k = _KERNELS[kind.lower()]
    except KeyError:
        raise ValueError(f"Unknown robust kernel {kind!r}; expected one of {sorted(_KERNELS)}") from None
    loss = getattr(gtsam.noiseModel.mEstimator, estimator)(default_k if k is None else k)
    return gtsam.noiseModel.Robust.Create(loss, base)


def _noise_model(m: RelativeSEMeasurement, robust_kind: Optional[str]):
    # Small-angle chordal error is 2|theta|^2, hence the factor 2 on kappa.
    rot_prec = 2.0 * m.kappa * m.weight
    tran_prec = m.tau * m.weight
    if m.d == 3:
        precisions = np.array([rot_prec] * 3 + [tran_prec] * 3)
    else:
        precisions = np.array([tran_prec, tran_prec, rot_prec])
    base = gtsam.noiseModel.Diagonal.Precisions(np.maximum(precisions, 1e-12))
    if m.fixed_weight or m.is_known_inlier:
        return base
    return robustify(base, robust_kind)


def _to_gtsam_pose(R: np.ndarray, t: np.ndarray):
    if R.shape[0] == 3:
        return gtsam.Pose3(gtsam.Rot3(R), np.asarray(t, dtype=float))
    return gtsam.Pose2(float(t[0]), float(t[1]), float(np.arctan2(R[1, 0], R[0, 0])))


def solve_centralised_reference(measurements: Sequence[RelativeSEMeasurement], initial: PoseArray,
                                robust_kind: Optional[str] = None, max_iterations: int = 100) -> PoseArray:
    """Optimise a single-robot pose graph (frame ids 0..n-1) from `initial`."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot compute the centralised reference")
    d, n = initial.d, initial.n
    graph = gtsam.NonlinearFactorGraph()
    values = gtsam.Values()
    for i in range(n):
        values.insert(i, _to_gtsam_pose(initial.rotation(i), initial.translation(i)))

    for m in measurements:
        rel = _to_gtsam_pose(m.R, m.t)
        noise = _noise_model(m, robust_kind)
        if d == 3:
            graph.add(gtsam.BetweenFactorPose3(m.p1, m.p2, rel, noise))
        else:
            graph.add(gtsam.BetweenFactorPose2(m.p1, m.p2, rel, noise))

    anchor_noise = gtsam.noiseModel.Isotropic.Sigma(3 if d == 2 else 6, 1e-6)
    if d == 3:
        graph.add(gtsam.PriorFactorPose3(0, values.atPose3(0), anchor_noise))
    else:
        graph.add(gtsam.PriorFactorPose2(0, values.atPose2(0), anchor_noise))

    params = gtsam.LevenbergMarquardtParams()
    params.setMaxIterations(max_iterations)
    result = gtsam.LevenbergMarquardtOptimizer(graph, values, params).optimize()
    logger.info("Reference solve: error %.6g -> %.6g", graph.error(values), graph.error(result))

    out = PoseArray(d, n)
    for i in range(n):
        pose = result.atPose3(i) if d == 3 else result.atPose2(i)
        M = pose.matrix()
        out.set_rotation(i, M[:d, :d])
        out.set_translation(i, M[:d, d])
    return out
