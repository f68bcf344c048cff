from typing import Dict, Optional
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt

from .metrics import trajectory_positions


def extract_xyz_per_robot(trajectories: Dict[int, np.ndarray], d: int) -> Dict[int, np.ndarray]:
    out = {}
    for rid in sorted(trajectories):
        xyz = trajectory_positions(trajectories[rid], d)
        if len(xyz):
            out[rid] = xyz
    return out


def plot_trajectories_2d(trajectories: Dict[int, np.ndarray], d: int, path_png: str,
                         title: Optional[str] = None):
    traj = extract_xyz_per_robot(trajectories, d)
    plt.figure(figsize=(8, 6))
    for rid, xyz in traj.items():
        plt.plot(xyz[:, 0], xyz[:, 1], label=f"robot {rid}")
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title(title or "Trajectories (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_trajectories_3d(trajectories: Dict[int, np.ndarray], d: int, path_png: str,
                         title: Optional[str] = None):
    if d != 3:
        raise ValueError("3D plot requires d == 3")
    traj = extract_xyz_per_robot(trajectories, d)
    from mpl_toolkits.mplot3d import Axes3D  # noqa
    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(111, projection='3d')
    for rid, xyz in traj.items():
        ax.plot(xyz[:, 0], xyz[:, 1], xyz[:, 2], label=f"robot {rid}")
    ax.set_xlabel("x [m]"); ax.set_ylabel("y [m]"); ax.set_zlabel("z [m]")
    ax.legend()
    ax.set_title(title or "Trajectories (3D)")
    fig.tight_layout()
    fig.savefig(path_png, dpi=150)
    plt.close(fig)


def plot_convergence(history: Dict[str, list], out_path: str):
    """Plot per-round scalar series (e.g. max relative change) on a log scale."""
    plt.figure(figsize=(8, 5))
    for label, values in history.items():
        if values:
            plt.semilogy(np.arange(len(values)), np.maximum(np.asarray(values, dtype=float), 1e-16), label=label)
    plt.xlabel("round"); plt.ylabel("value"); plt.title("Convergence")
    plt.legend(); plt.tight_layout()
    plt.savefig(out_path, dpi=150); plt.close()
