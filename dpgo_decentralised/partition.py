from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from dpgo_common.models import RelativeSEMeasurement


@dataclass
class RobotMeasurementBundle:
    """Container grouping measurements relevant to a single robot.

    Attributes
    ----------
    odometry:
        Edges between consecutive poses of this robot.
    private_loop_closures:
        Non-consecutive edges where both endpoints belong to this robot.
    shared_loop_closures:
        Edges where exactly one endpoint belongs to this robot and the other
        belongs to a different robot. Both robots receive the same edge.
    """

    robot_id: int
    num_poses: int = 0
    odometry: List[RelativeSEMeasurement] = field(default_factory=list)
    private_loop_closures: List[RelativeSEMeasurement] = field(default_factory=list)
    shared_loop_closures: List[RelativeSEMeasurement] = field(default_factory=list)

    def all_measurements(self) -> List[RelativeSEMeasurement]:
        return [*self.odometry, *self.private_loop_closures, *self.shared_loop_closures]


def contiguous_assignment(num_poses: int, num_robots: int) -> List[Tuple[int, int]]:
    """Split poses 0..num_poses-1 into `num_robots` contiguous [start, end) blocks.

    The last robot takes the remainder when the split is uneven.
    """
    if num_robots <= 0:
        raise ValueError("num_robots must be positive")
    if num_poses < num_robots:
        raise ValueError(f"Cannot split {num_poses} poses among {num_robots} robots")
    block = num_poses // num_robots
    ranges = []
    for rid in range(num_robots):
        start = rid * block
        end = num_poses if rid == num_robots - 1 else start + block
        ranges.append((start, end))
    return ranges


def partition_measurements(
    measurements: Iterable[RelativeSEMeasurement],
    num_poses: int,
    num_robots: int,
) -> Dict[int, RobotMeasurementBundle]:
    """Split a single-robot graph into per-robot bundles with robot-local frame ids.

    Parameters
    ----------
    measurements:
        Edges of one graph, all with r1 == r2 == 0 and frame ids in
        [0, num_poses).
    num_poses, num_robots:
        Poses are assigned to robots in contiguous blocks (see
        :func:`contiguous_assignment`).

    Returns
    -------
    Dict[int, RobotMeasurementBundle]
        Bundles keyed by robot id. Every robot gets a bundle, even one with
        no shared loop closures.
    """

    ranges = contiguous_assignment(num_poses, num_robots)
    owner: Dict[int, Tuple[int, int]] = {}
    for rid, (start, end) in enumerate(ranges):
        for p in range(start, end):
            owner[p] = (rid, p - start)

    bundles = {rid: RobotMeasurementBundle(robot_id=rid, num_poses=end - start)
               for rid, (start, end) in enumerate(ranges)}

    for m in measurements:
        if m.p1 not in owner or m.p2 not in owner:
            raise ValueError(f"Measurement ({m.p1}->{m.p2}) references a pose outside [0, {num_poses})")
        r1, p1 = owner[m.p1]
        r2, p2 = owner[m.p2]
        edge = RelativeSEMeasurement(
            r1, p1, r2, p2, m.R, m.t, m.kappa, m.tau,
            weight=m.weight, fixed_weight=m.fixed_weight, is_known_inlier=m.is_known_inlier,
        )
        if r1 == r2:
            if p1 + 1 == p2:
                bundles[r1].odometry.append(edge)
            else:
                bundles[r1].private_loop_closures.append(edge)
        else:
            # Each robot holds its own copy; weights are reconciled by the owner.
            bundles[r1].shared_loop_closures.append(edge)
            bundles[r2].shared_loop_closures.append(RelativeSEMeasurement(
                r1, p1, r2, p2, m.R, m.t, m.kappa, m.tau,
                weight=m.weight, fixed_weight=m.fixed_weight, is_known_inlier=m.is_known_inlier,
            ))
    return bundles
