"""CSV persistence for trajectories and measurement lists."""
from __future__ import annotations

import csv
import logging
import os
from typing import Iterable, List, Optional

import numpy as np

from .models import RelativeSEMeasurement

logger = logging.getLogger("dpgo.data_logging")

MEASUREMENT_HEADER_2D = [
    "robot_src", "pose_src", "robot_dst", "pose_dst",
    "R11", "R12", "R21", "R22", "t1", "t2",
    "kappa", "tau", "is_known_inlier", "weight",
]
MEASUREMENT_HEADER_3D = [
    "robot_src", "pose_src", "robot_dst", "pose_dst",
    "R11", "R12", "R13", "R21", "R22", "R23", "R31", "R32", "R33", "t1", "t2", "t3",
    "kappa", "tau", "is_known_inlier", "weight",
]


class PGOLogger:
    """Write and read back dense trajectories and per-edge measurement rows.

    Trajectories are stored as the packed d x (d+1)n matrix, one matrix row per
    CSV line. Measurements are one edge per line with a header row; the
    ``fixed_weight`` flag is written after ``is_known_inlier`` as an extra column.
    """

    def __init__(self, log_directory: str):
        self.log_directory = log_directory
        os.makedirs(log_directory, exist_ok=True)

    def _path(self, filename: str) -> str:
        return os.path.join(self.log_directory, filename)

    def log_matrix(self, M: np.ndarray, filename: str) -> str:
        path = self._path(filename)
        np.savetxt(path, np.atleast_2d(np.asarray(M, dtype=float)), delimiter=",", fmt="%.17g")
        return path

    def log_trajectory(self, d: int, n: int, T: np.ndarray, filename: str) -> str:
        T = np.asarray(T, dtype=float)
        if T.shape != (d, (d + 1) * n):
            raise ValueError(f"Trajectory shape {T.shape} does not match d={d}, n={n}")
        path = self.log_matrix(T, filename)
        logger.debug("Wrote trajectory (%d poses) to %s", n, path)
        return path

    def load_trajectory(self, filename: str) -> np.ndarray:
        path = self._path(filename)
        T = np.loadtxt(path, delimiter=",", ndmin=2)
        return T

    def log_measurements(self, measurements: Iterable[RelativeSEMeasurement], filename: str) -> Optional[str]:
        measurements = list(measurements)
        if not measurements:
            logger.debug("No measurements to write to %s", filename)
            return None
        d = measurements[0].d
        header = list(MEASUREMENT_HEADER_2D if d == 2 else MEASUREMENT_HEADER_3D) + ["fixed_weight"]
        path = self._path(filename)
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(header)
            for m in measurements:
                row: List[object] = [m.r1, m.p1, m.r2, m.p2]
                row.extend(repr(float(v)) for v in m.R.reshape(-1))
                row.extend(repr(float(v)) for v in m.t)
                row.extend([repr(m.kappa), repr(m.tau), int(m.is_known_inlier), repr(m.weight), int(m.fixed_weight)])
                writer.writerow(row)
        logger.debug("Wrote %d measurements to %s", len(measurements), path)
        return path

    def load_measurements(self, filename: str) -> List[RelativeSEMeasurement]:
        path = self._path(filename)
        out: List[RelativeSEMeasurement] = []
        with open(path, newline="", encoding="utf-8") as fh:
            reader = csv.DictReader(fh)
            for row in reader:
                d = 3 if "R33" in row else 2
                R = np.array([[float(row[f"R{i + 1}{j + 1}"]) for j in range(d)] for i in range(d)])
                t = np.array([float(row[f"t{i + 1}"]) for i in range(d)])
                out.append(RelativeSEMeasurement(
                    int(row["robot_src"]), int(row["pose_src"]),
                    int(row["robot_dst"]), int(row["pose_dst"]),
                    R, t, float(row["kappa"]), float(row["tau"]),
                    weight=float(row["weight"]),
                    fixed_weight=bool(int(row.get("fixed_weight", 0) or 0)),
                    is_known_inlier=bool(int(row["is_known_inlier"])),
                ))
        return out
