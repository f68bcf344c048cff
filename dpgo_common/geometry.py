"""Rigid and rank-lifted pose containers plus the manifold helpers used by the solver.

Layout conventions:
- A rank-d pose is a d x (d+1) matrix ``[R | t]``.
- A lifted pose is an r x (d+1) matrix ``[Y | p]`` where Y has orthonormal
  columns (Stiefel manifold St(d, r)).
- Arrays of n poses are packed side by side, pose i occupying columns
  ``i*(d+1) .. (i+1)*(d+1)``.
"""
from __future__ import annotations

from typing import Dict, Optional
import logging
import math
import numpy as np

from .models import PoseID, RelativeSEMeasurement, ensure

logger = logging.getLogger("dpgo.geometry")

ROTATION_TOLERANCE = 1e-5


def project_to_rotation_group(M: np.ndarray) -> np.ndarray:
    """Closest rotation (determinant +1) to a square matrix in Frobenius norm."""
    U, _, Vt = np.linalg.svd(M)
    if np.linalg.det(U) * np.linalg.det(Vt) > 0:
        return U @ Vt
    U = U.copy()
    U[:, -1] *= -1
    return U @ Vt


def project_to_stiefel_manifold(M: np.ndarray) -> np.ndarray:
    r, d = M.shape
    ensure(r >= d, f"Cannot project a {r}x{d} matrix to the Stiefel manifold")
    U, _, Vt = np.linalg.svd(M, full_matrices=False)
    return U @ Vt


def random_stiefel_variable(d: int, r: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    rng = rng if rng is not None else np.random.default_rng()
    return project_to_stiefel_manifold(rng.standard_normal((r, d)))


def fixed_stiefel_variable(d: int, r: int) -> np.ndarray:
    """Deterministic r x d lifting matrix; every agent derives the same one."""
    return random_stiefel_variable(d, r, np.random.default_rng(1))


def check_rotation_matrix(R: np.ndarray) -> bool:
    d = R.shape[0]
    ensure(R.shape == (d, d), f"Rotation must be square, got {R.shape}")
    err_det = abs(np.linalg.det(R) - 1.0)
    err_norm = np.linalg.norm(R.T @ R - np.eye(d))
    if err_det > ROTATION_TOLERANCE or err_norm > ROTATION_TOLERANCE:
        logger.warning("Invalid rotation: err_det=%.3e, err_norm=%.3e", err_det, err_norm)
        return False
    return True


def check_stiefel_matrix(Y: np.ndarray) -> bool:
    d = Y.shape[1]
    err_norm = np.linalg.norm(Y.T @ Y - np.eye(d))
    if err_norm > ROTATION_TOLERANCE:
        logger.warning("Invalid Stiefel element: err_norm=%.3e", err_norm)
        return False
    return True


def angular_to_chordal_so3(rad: float) -> float:
    return 2.0 * math.sqrt(2.0) * math.sin(rad / 2.0)


def compute_measurement_error(m: RelativeSEMeasurement, R1: np.ndarray, t1: np.ndarray,
                              R2: np.ndarray, t2: np.ndarray) -> float:
    """Squared weighted residual of `m` evaluated at (possibly lifted) endpoint poses."""
    rotation_error_sq = float(np.sum((R1 @ m.R - R2) ** 2))
    translation_error_sq = float(np.sum((t2 - t1 - R1 @ m.t) ** 2))
    return m.kappa * rotation_error_sq + m.tau * translation_error_sq


class Pose:
    """Element of SE(d) stored as ``[R | t]``."""

    def __init__(self, matrix: np.ndarray):
        matrix = np.array(matrix, dtype=float)
        d = matrix.shape[0]
        ensure(matrix.shape == (d, d + 1), f"Pose matrix must be d x (d+1), got {matrix.shape}")
        self._data = matrix

    @classmethod
    def identity(cls, d: int) -> "Pose":
        return cls(np.hstack([np.eye(d), np.zeros((d, 1))]))

    @classmethod
    def from_rt(cls, R: np.ndarray, t: np.ndarray) -> "Pose":
        R = np.asarray(R, dtype=float)
        return cls(np.hstack([R, np.asarray(t, dtype=float).reshape(-1, 1)]))

    @property
    def d(self) -> int:
        return self._data.shape[0]

    @property
    def rotation(self) -> np.ndarray:
        return self._data[:, : self.d].copy()

    @property
    def translation(self) -> np.ndarray:
        return self._data[:, self.d].copy()

    @property
    def matrix(self) -> np.ndarray:
        return self._data.copy()

    def homogeneous(self) -> np.ndarray:
        T = np.eye(self.d + 1)
        T[: self.d, :] = self._data
        return T

    def compose(self, other: "Pose") -> "Pose":
        ensure(other.d == self.d, "Cannot compose poses of different dimension")
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return Pose.from_rt(R, t)

    def __mul__(self, other: "Pose") -> "Pose":
        return self.compose(other)

    def inverse(self) -> "Pose":
        Rt = self.rotation.T
        return Pose.from_rt(Rt, -Rt @ self.translation)

    def __repr__(self) -> str:
        return f"Pose(d={self.d}, t={self.translation.tolist()})"


class PoseArray:
    """n rank-d poses packed into a d x n(d+1) matrix."""

    def __init__(self, d: int, n: int):
        self._d = int(d)
        self._n = int(n)
        self._data = np.zeros((self._d, self._n * (self._d + 1)))
        for i in range(self._n):
            self.set_rotation(i, np.eye(self._d))

    def _cols(self, index: int) -> slice:
        ensure(0 <= index < self._n, f"Pose index {index} out of range [0, {self._n})")
        return slice(index * (self._d + 1), (index + 1) * (self._d + 1))

    @property
    def d(self) -> int:
        return self._d

    @property
    def n(self) -> int:
        return self._n

    def get_data(self) -> np.ndarray:
        return self._data.copy()

    def set_data(self, data: np.ndarray) -> None:
        data = np.asarray(data, dtype=float)
        ensure(data.shape == self._data.shape,
               f"Expected trajectory of shape {self._data.shape}, got {data.shape}")
        self._data = data.copy()

    def pose(self, index: int) -> np.ndarray:
        return self._data[:, self._cols(index)].copy()

    def set_pose(self, index: int, matrix: np.ndarray) -> None:
        self._data[:, self._cols(index)] = matrix

    def rotation(self, index: int) -> np.ndarray:
        return self.pose(index)[:, : self._d]

    def translation(self, index: int) -> np.ndarray:
        return self.pose(index)[:, self._d]

    def set_rotation(self, index: int, R: np.ndarray) -> None:
        start = index * (self._d + 1)
        self._cols(index)
        self._data[:, start:start + self._d] = R

    def set_translation(self, index: int, t: np.ndarray) -> None:
        start = index * (self._d + 1)
        self._cols(index)
        self._data[:, start + self._d] = np.asarray(t, dtype=float).reshape(-1)

    def copy(self) -> "PoseArray":
        out = PoseArray(self._d, self._n)
        out._data = self._data.copy()
        return out


class LiftedPose:
    """Immutable r x (d+1) lifted pose ``[Y | p]``."""

    def __init__(self, matrix: np.ndarray):
        data = np.array(matrix, dtype=float)
        ensure(data.ndim == 2 and data.shape[1] >= 2,
               f"Lifted pose must be a r x (d+1) matrix, got shape {data.shape}")
        data.flags.writeable = False
        self._data = data

    @classmethod
    def identity(cls, r: int, d: int, lifting: Optional[np.ndarray] = None) -> "LiftedPose":
        Y = lifting if lifting is not None else np.eye(r, d)
        return cls(np.hstack([Y, np.zeros((r, 1))]))

    @property
    def r(self) -> int:
        return self._data.shape[0]

    @property
    def d(self) -> int:
        return self._data.shape[1] - 1

    @property
    def rotation(self) -> np.ndarray:
        return self._data[:, : self.d]

    @property
    def translation(self) -> np.ndarray:
        return self._data[:, self.d]

    @property
    def matrix(self) -> np.ndarray:
        return self._data

    def __eq__(self, other) -> bool:
        if not isinstance(other, LiftedPose):
            return NotImplemented
        return self._data.shape == other._data.shape and bool(np.array_equal(self._data, other._data))

    def __repr__(self) -> str:
        return f"LiftedPose(r={self.r}, d={self.d})"


PoseDict = Dict[PoseID, LiftedPose]


class LiftedPoseArray:
    """n lifted poses packed into an r x n(d+1) matrix; r and d never change."""

    def __init__(self, r: int, d: int, n: int):
        ensure(r >= d, f"Relaxation rank {r} must be at least the dimension {d}")
        self._r = int(r)
        self._d = int(d)
        self._n = int(n)
        self._data = np.zeros((self._r, self._n * (self._d + 1)))
        block = np.eye(self._r, self._d)
        for i in range(self._n):
            start = i * (self._d + 1)
            self._data[:, start:start + self._d] = block

    @property
    def r(self) -> int:
        return self._r

    @property
    def d(self) -> int:
        return self._d

    @property
    def n(self) -> int:
        return self._n

    def _cols(self, index: int) -> slice:
        ensure(0 <= index < self._n, f"Pose index {index} out of range [0, {self._n})")
        return slice(index * (self._d + 1), (index + 1) * (self._d + 1))

    def get_data(self) -> np.ndarray:
        return self._data.copy()

    def set_data(self, data: np.ndarray) -> None:
        data = np.asarray(data, dtype=float)
        ensure(data.shape == self._data.shape,
               f"Expected lifted trajectory of shape {self._data.shape}, got {data.shape}")
        self._data = data.copy()

    def pose(self, index: int) -> LiftedPose:
        return LiftedPose(self._data[:, self._cols(index)])

    def set_pose(self, index: int, pose: LiftedPose) -> None:
        ensure(pose.r == self._r and pose.d == self._d, "Lifted pose dimensions do not match the array")
        self._data[:, self._cols(index)] = pose.matrix

    def rotation(self, index: int) -> np.ndarray:
        return self._data[:, self._cols(index)][:, : self._d].copy()

    def translation(self, index: int) -> np.ndarray:
        return self._data[:, self._cols(index)][:, self._d].copy()

    def copy(self) -> "LiftedPoseArray":
        out = LiftedPoseArray(self._r, self._d, self._n)
        out._data = self._data.copy()
        return out

    @staticmethod
    def average_translation_distance(a: "LiftedPoseArray", b: "LiftedPoseArray") -> float:
        ensure(a.r == b.r and a.d == b.d and a.n == b.n, "Cannot compare lifted arrays of different shape")
        if a.n == 0:
            return 0.0
        total = 0.0
        for i in range(a.n):
            total += float(np.linalg.norm(a.translation(i) - b.translation(i)))
        return total / a.n


class LiftedSEManifold:
    """Product of n copies of St(d, r) x R^r, acting on packed r x n(d+1) matrices."""

    def __init__(self, r: int, d: int, n: int):
        self.r = int(r)
        self.d = int(d)
        self.n = int(n)

    def _check(self, M: np.ndarray) -> None:
        ensure(M.shape == (self.r, self.n * (self.d + 1)),
               f"Expected packed matrix of shape {(self.r, self.n * (self.d + 1))}, got {M.shape}")

    def project(self, M: np.ndarray) -> np.ndarray:
        """Nearest point on the manifold: Stiefel-project every rotation block."""
        self._check(M)
        out = np.array(M, dtype=float)
        dh = self.d + 1
        for i in range(self.n):
            start = i * dh
            out[:, start:start + self.d] = project_to_stiefel_manifold(out[:, start:start + self.d])
        return out

    def tangent_projection(self, X: np.ndarray, V: np.ndarray) -> np.ndarray:
        """Orthogonal projection of an ambient direction V onto the tangent space at X."""
        self._check(X)
        self._check(V)
        out = np.array(V, dtype=float)
        dh = self.d + 1
        for i in range(self.n):
            start = i * dh
            Y = X[:, start:start + self.d]
            W = V[:, start:start + self.d]
            YtW = Y.T @ W
            out[:, start:start + self.d] = W - Y @ (0.5 * (YtW + YtW.T))
        return out

    def retract(self, X: np.ndarray, V: np.ndarray) -> np.ndarray:
        return self.project(X + V)
