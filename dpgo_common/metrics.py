from typing import Dict, Sequence
import math
import numpy as np


def trajectory_positions(T: np.ndarray, d: int) -> np.ndarray:
    """Positions (n x d) of a packed d x n(d+1) trajectory matrix."""
    T = np.asarray(T, dtype=float)
    if T.shape[0] != d or T.shape[1] % (d + 1) != 0:
        raise ValueError(f"Trajectory of shape {T.shape} is not a packed d={d} trajectory")
    return T[:, d::d + 1].T.copy()


def _umeyama(A: np.ndarray, B: np.ndarray, with_scale: bool = False):
    """Rigid (optionally similarity) alignment from A->B (Nxd). Returns R(dxd), t(d), s."""
    assert A.shape == B.shape and A.ndim == 2
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = BB.T @ AA / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    D = np.eye(A.shape[1])
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        D[-1, -1] = -1.0
    R = U @ D @ Vt
    if with_scale:
        varA = (AA**2).sum() / A.shape[0]
        s = (float(np.trace(np.diag(S) @ D)) / varA) if varA > 0 else 1.0
    else:
        s = 1.0
    t = muB - s * (R @ muA)
    return R, t, s


def align_and_ate(estimate: np.ndarray, reference: np.ndarray, with_scale: bool = False) -> Dict[str, object]:
    """Align two position sets (N x d) and report ATE-RMSE after alignment."""
    estimate = np.asarray(estimate, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if estimate.shape != reference.shape:
        raise ValueError(f"Shape mismatch: {estimate.shape} vs {reference.shape}")
    if estimate.shape[0] < 2:
        return {"matches": int(estimate.shape[0]), "rmse": None}
    R, t, s = _umeyama(estimate, reference, with_scale=with_scale)
    aligned = s * (estimate @ R.T) + t
    err = aligned - reference
    rmse = math.sqrt((err**2).sum(axis=1).mean())
    return {
        "matches": int(estimate.shape[0]),
        "rmse": rmse,
        "R": R.tolist(),
        "t": t.tolist(),
        "s": s,
    }


def align_and_ate_per_robot(estimates: Dict[int, np.ndarray],
                            references: Dict[int, np.ndarray],
                            d: int) -> Dict[int, Dict[str, object]]:
    """ATE per robot for packed d x n(d+1) trajectories keyed by robot id."""
    metrics = {}
    for rid, T in estimates.items():
        if rid not in references:
            continue
        metrics[rid] = align_and_ate(trajectory_positions(T, d), trajectory_positions(references[rid], d))
    return metrics


def relative_position_error(estimate: np.ndarray, reference: np.ndarray,
                            window_sizes: Sequence[int] = (1, 10)) -> Dict[str, Dict[str, float]]:
    """Translation RPE over fixed index windows (frame invariant, no alignment needed)."""
    estimate = np.asarray(estimate, dtype=float)
    reference = np.asarray(reference, dtype=float)
    stats: Dict[str, Dict[str, float]] = {}
    for window in window_sizes:
        window = int(window)
        if window <= 0 or window >= len(estimate):
            continue
        d_est = estimate[window:] - estimate[:-window]
        d_ref = reference[window:] - reference[:-window]
        errors = np.abs(np.linalg.norm(d_est, axis=1) - np.linalg.norm(d_ref, axis=1))
        stats[str(window)] = {
            "count": float(len(errors)),
            "rmse": float(math.sqrt(np.mean(errors**2))),
            "mean": float(np.mean(errors)),
        }
    return stats
