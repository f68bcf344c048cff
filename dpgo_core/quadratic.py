"""Local quadratic problem over the lifted trajectory and its Riemannian solver."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging
import math
import time

import numpy as np

from dpgo_common.geometry import LiftedSEManifold
from dpgo_common.models import ensure
from .pose_graph import PoseGraph

logger = logging.getLogger("dpgo.core.quadratic")


class QuadraticProblem:
    """f(X) = 0.5 tr(X Q X^T) + tr(X G^T) on the product of Stiefel x Euclidean blocks.

    The pose graph must have constructed its data matrices before any
    evaluation.
    """

    def __init__(self, pose_graph: PoseGraph):
        self.pose_graph = pose_graph
        self.manifold = LiftedSEManifold(pose_graph.r, pose_graph.d, pose_graph.n)

    def _matrices(self):
        Q, G = self.pose_graph.Q, self.pose_graph.G
        ensure(Q is not None and G is not None, "Data matrices have not been constructed")
        return Q, G

    def f(self, X: np.ndarray) -> float:
        Q, G = self._matrices()
        XQ = (Q @ X.T).T
        return 0.5 * float(np.sum(XQ * X)) + float(np.sum(X * G))

    def euclidean_gradient(self, X: np.ndarray) -> np.ndarray:
        Q, G = self._matrices()
        return (Q @ X.T).T + G

    def riemannian_gradient(self, X: np.ndarray) -> np.ndarray:
        return self.manifold.tangent_projection(X, self.euclidean_gradient(X))

    def grad_norm(self, X: np.ndarray) -> float:
        return float(np.linalg.norm(self.riemannian_gradient(X)))

    def lipschitz_bound(self) -> float:
        """Gershgorin bound on the largest eigenvalue of Q."""
        Q, _ = self._matrices()
        if Q.nnz == 0:
            return 1.0
        return max(float(abs(Q).sum(axis=1).max()), 1e-12)


@dataclass
class OptimizerConfig:
    """Riemannian gradient descent settings.

    ``max_iterations`` bounds the inner iterations of one local solve; the
    solve also stops once the Riemannian gradient norm drops below
    ``gradnorm_tol``. Steps start at ``initial_step_scale / L`` (L a bound on
    the largest eigenvalue of Q) and backtrack by ``backtrack_factor`` until
    the Armijo condition with constant ``armijo_c`` holds.
    """

    max_iterations: int = 10
    gradnorm_tol: float = 1e-2
    initial_step_scale: float = 2.0
    backtrack_factor: float = 0.5
    max_backtracks: int = 30
    armijo_c: float = 1e-4
    verbose: bool = False


@dataclass
class OptResult:
    success: bool = False
    f_init: float = math.nan
    f_opt: float = math.nan
    grad_norm_init: float = math.nan
    grad_norm_opt: float = math.nan
    elapsed_ms: float = 0.0
    iterations: int = 0


class QuadraticOptimizer:
    """Riemannian gradient descent with Armijo backtracking."""

    def __init__(self, problem: QuadraticProblem, config: Optional[OptimizerConfig] = None):
        self.problem = problem
        self.config = config or OptimizerConfig()
        self.result = OptResult()

    def optimize(self, X0: np.ndarray) -> np.ndarray:
        cfg = self.config
        problem = self.problem
        manifold = problem.manifold
        start = time.perf_counter()

        X = manifold.project(np.asarray(X0, dtype=float))
        f = problem.f(X)
        grad = problem.riemannian_gradient(X)
        grad_norm = float(np.linalg.norm(grad))
        result = OptResult(success=True, f_init=f, grad_norm_init=grad_norm)
        step0 = cfg.initial_step_scale / problem.lipschitz_bound()

        iterations = 0
        while iterations < cfg.max_iterations and grad_norm > cfg.gradnorm_tol:
            step = step0
            accepted = False
            for _ in range(cfg.max_backtracks):
                X_new = manifold.retract(X, -step * grad)
                f_new = problem.f(X_new)
                if f_new <= f - cfg.armijo_c * step * grad_norm**2:
                    accepted = True
                    break
                step *= cfg.backtrack_factor
            if not accepted:
                logger.debug("Line search failed at iteration %d (f=%.6g, |grad|=%.3g)", iterations, f, grad_norm)
                break
            X, f = X_new, f_new
            grad = problem.riemannian_gradient(X)
            grad_norm = float(np.linalg.norm(grad))
            iterations += 1
            if cfg.verbose:
                logger.info("RGD iter %d: f=%.6g |grad|=%.3g step=%.3g", iterations, f, grad_norm, step)

        result.f_opt = f
        result.grad_norm_opt = grad_norm
        result.iterations = iterations
        result.elapsed_ms = (time.perf_counter() - start) * 1e3
        self.result = result
        return X
