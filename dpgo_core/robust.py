"""Graduated non-convexity robust cost and robust single rotation/pose averaging."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import logging
import math

import numpy as np
from scipy.stats import chi2

from dpgo_common.geometry import project_to_rotation_group
from dpgo_common.models import ensure

logger = logging.getLogger("dpgo.core.robust")

# A weight within this distance of 0 or 1 counts as decided.
BINARY_WEIGHT_TOL = 1e-8


class RobustCostType(Enum):
    L2 = "L2"
    TLS = "TLS"
    GNC_TLS = "GNC_TLS"


def error_threshold_at_quantile(quantile: float, dof: int) -> float:
    """Residual magnitude below which a Gaussian inlier falls with probability `quantile`."""
    ensure(0.0 < quantile < 1.0, f"Quantile must be in (0, 1), got {quantile}")
    ensure(dof > 0, f"Degrees of freedom must be positive, got {dof}")
    return math.sqrt(float(chi2.ppf(quantile, dof)))


@dataclass
class RobustCostParameters:
    """Configuration of the robust cost.

    ``gnc_barc`` is the maximum admissible residual c. ``gnc_init_mu`` is the
    starting GNC shape, multiplied by ``gnc_mu_step`` at each update, at most
    ``gnc_max_num_iters`` times.
    """

    cost_type: RobustCostType = RobustCostType.L2
    gnc_max_num_iters: int = 100
    gnc_barc: float = 5.0
    gnc_mu_step: float = 1.4
    gnc_init_mu: float = 1e-5

    def __post_init__(self):
        if isinstance(self.cost_type, str):
            self.cost_type = RobustCostType(self.cost_type.upper())
        ensure(self.gnc_barc > 0, "gnc_barc must be positive")
        ensure(self.gnc_mu_step > 1, "gnc_mu_step must exceed 1")
        ensure(self.gnc_init_mu > 0, "gnc_init_mu must be positive")


class RobustCost:
    """Maps a residual to a weight in [0, 1]; GNC_TLS anneals toward plain truncation."""

    def __init__(self, params: Optional[RobustCostParameters] = None):
        self.params = params or RobustCostParameters()
        self.mu = self.params.gnc_init_mu
        self.num_updates = 0

    @property
    def cost_type(self) -> RobustCostType:
        return self.params.cost_type

    def weight(self, residual: float) -> float:
        ctype = self.params.cost_type
        if ctype is RobustCostType.L2:
            return 1.0
        c = self.params.gnc_barc
        r_sq = float(residual) ** 2
        c_sq = c * c
        if ctype is RobustCostType.TLS:
            return 1.0 if r_sq <= c_sq else 0.0
        mu = self.mu
        upper = (mu + 1.0) / mu * c_sq
        lower = mu / (mu + 1.0) * c_sq
        if r_sq >= upper:
            return 0.0
        if r_sq <= lower:
            return 1.0
        return math.sqrt(c_sq * mu * (mu + 1.0) / r_sq) - mu

    @property
    def threshold(self) -> float:
        """Residual beyond which the weight is zero under the current shape."""
        ctype = self.params.cost_type
        if ctype is RobustCostType.L2:
            return math.inf
        if ctype is RobustCostType.TLS:
            return self.params.gnc_barc
        return math.sqrt((self.mu + 1.0) / self.mu) * self.params.gnc_barc

    def update(self) -> None:
        if self.params.cost_type is not RobustCostType.GNC_TLS:
            return
        if self.num_updates >= self.params.gnc_max_num_iters:
            return
        self.mu *= self.params.gnc_mu_step
        self.num_updates += 1

    def set_gnc_mu(self, mu: float) -> None:
        ensure(mu > 0, f"GNC shape must be positive, got {mu}")
        self.mu = float(mu)

    def reset(self) -> None:
        self.mu = self.params.gnc_init_mu
        self.num_updates = 0

    def __repr__(self) -> str:
        return f"RobustCost({self.params.cost_type.value}, mu={self.mu:.3g}, barc={self.params.gnc_barc})"


# ---------------------------------------------------------------------------
# Averaging
# ---------------------------------------------------------------------------

def _default_weights(n: int, weights: Optional[Sequence[float]]) -> np.ndarray:
    if weights is None:
        return np.ones(n)
    w = np.asarray(weights, dtype=float).reshape(-1)
    ensure(w.size == n, f"Expected {n} weights, got {w.size}")
    return w


def single_rotation_averaging(rotations: Sequence[np.ndarray],
                              kappa: Optional[Sequence[float]] = None) -> np.ndarray:
    """Chordal L2 mean of rotations: project the weighted sum onto SO(d)."""
    ensure(len(rotations) > 0, "Rotation averaging needs at least one rotation")
    k = _default_weights(len(rotations), kappa)
    M = np.zeros_like(np.asarray(rotations[0], dtype=float))
    for Ri, ki in zip(rotations, k):
        M += ki * np.asarray(Ri, dtype=float)
    return project_to_rotation_group(M)


def single_translation_averaging(translations: Sequence[np.ndarray],
                                 tau: Optional[Sequence[float]] = None) -> np.ndarray:
    ensure(len(translations) > 0, "Translation averaging needs at least one translation")
    w = _default_weights(len(translations), tau)
    ensure(w.sum() > 0, "Translation averaging needs a positive total weight")
    stacked = np.stack([np.asarray(t, dtype=float).reshape(-1) for t in translations])
    return (w[:, None] * stacked).sum(axis=0) / w.sum()


def single_pose_averaging(rotations: Sequence[np.ndarray], translations: Sequence[np.ndarray],
                          kappa: Optional[Sequence[float]] = None,
                          tau: Optional[Sequence[float]] = None) -> Tuple[np.ndarray, np.ndarray]:
    ensure(len(rotations) == len(translations), "Rotation and translation counts differ")
    return single_rotation_averaging(rotations, kappa), single_translation_averaging(translations, tau)


def _robust_loop(residual_fn, average_fn, n: int, barc: float,
                 max_iters: int) -> Tuple[object, List[int]]:
    """GNC-TLS over a closed-form average. Returns (estimate, inlier indices)."""
    estimate = average_fn(np.ones(n))
    residuals = np.array([residual_fn(estimate, i) for i in range(n)])
    if np.all(residuals <= barc):
        return estimate, list(range(n))

    params = RobustCostParameters(cost_type=RobustCostType.GNC_TLS, gnc_barc=barc,
                                  gnc_max_num_iters=max_iters)
    cost = RobustCost(params)
    r_max = float(residuals.max())
    mu0 = barc ** 2 / (2.0 * r_max ** 2 - barc ** 2)
    cost.set_gnc_mu(max(mu0, 1e-12))

    weights = np.ones(n)
    for it in range(max_iters):
        weights = np.array([cost.weight(r) for r in residuals])
        if np.all((weights < BINARY_WEIGHT_TOL) | (weights > 1.0 - BINARY_WEIGHT_TOL)):
            logger.debug("Robust averaging converged after %d iterations", it)
            break
        if weights.sum() <= 0:
            break
        estimate = average_fn(weights)
        residuals = np.array([residual_fn(estimate, i) for i in range(n)])
        cost.update()
    inliers = [i for i in range(n) if weights[i] > 1.0 - BINARY_WEIGHT_TOL]
    if inliers:
        # Final estimate over the inlier set only.
        mask = np.zeros(n)
        mask[inliers] = 1.0
        estimate = average_fn(mask)
    return estimate, inliers


def robust_single_rotation_averaging(rotations: Sequence[np.ndarray],
                                     kappa: Optional[Sequence[float]] = None,
                                     error_threshold: float = 0.1,
                                     max_iters: int = 1000) -> Tuple[np.ndarray, List[int]]:
    """Rotation mean resistant to outliers; inliers are within `error_threshold` chordal distance."""
    n = len(rotations)
    ensure(n > 0, "Rotation averaging needs at least one rotation")
    k = _default_weights(n, kappa)
    Rs = [np.asarray(R, dtype=float) for R in rotations]

    def residual(R, i):
        return math.sqrt(k[i]) * float(np.linalg.norm(R - Rs[i]))

    def average(w):
        return single_rotation_averaging(Rs, w * k)

    return _robust_loop(residual, average, n, error_threshold, max_iters)


def robust_single_pose_averaging(rotations: Sequence[np.ndarray], translations: Sequence[np.ndarray],
                                 kappa: Optional[Sequence[float]] = None,
                                 tau: Optional[Sequence[float]] = None,
                                 error_threshold: float = 0.1,
                                 max_iters: int = 1000) -> Tuple[np.ndarray, np.ndarray, List[int]]:
    """Joint rotation/translation mean; residual is sqrt(kappa |R - Ri|^2 + tau |t - ti|^2)."""
    n = len(rotations)
    ensure(n > 0 and len(translations) == n, "Pose averaging needs matching non-empty inputs")
    k = _default_weights(n, kappa)
    tw = _default_weights(n, tau)
    Rs = [np.asarray(R, dtype=float) for R in rotations]
    ts = [np.asarray(t, dtype=float).reshape(-1) for t in translations]

    def residual(pose, i):
        R, t = pose
        return math.sqrt(k[i] * float(np.sum((R - Rs[i]) ** 2)) + tw[i] * float(np.sum((t - ts[i]) ** 2)))

    def average(w):
        return single_pose_averaging(Rs, ts, w * k, w * tw)

    (R, t), inliers = _robust_loop(residual, average, n, error_threshold, max_iters)
    return R, t, inliers
