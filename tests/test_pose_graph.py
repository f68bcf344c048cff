import numpy as np
import pytest

from dpgo_common.geometry import LiftedPose, LiftedSEManifold
from dpgo_common.models import PoseID, PreconditionError, RelativeSEMeasurement
from dpgo_core.pose_graph import PoseGraph
from dpgo_core.quadratic import OptimizerConfig, QuadraticOptimizer, QuadraticProblem
from dpgo_decentralised.partition import partition_measurements


def _random_point(r, d, n, seed):
    rng = np.random.default_rng(seed)
    return LiftedSEManifold(r, d, n).project(rng.standard_normal((r, n * (d + 1))))


def test_measurements_are_classified(two_robot_dataset):
    _, measurements = two_robot_dataset
    bundles = partition_measurements(measurements, 10, 2)
    graph = PoseGraph(1, 3, 2)
    b = bundles[1]
    graph.set_measurements(b.odometry, b.private_loop_closures, b.shared_loop_closures)

    assert graph.n == 5
    assert len(graph.odometry) == 4
    assert len(graph.private_loop_closures()) == 1
    assert len(graph.shared_loop_closures()) == 4
    assert graph.neighbor_ids() == {0}
    assert graph.my_public_pose_ids() == {PoseID(1, 0), PoseID(1, 2), PoseID(1, 3), PoseID(1, 4)}
    assert graph.neighbor_public_pose_ids() == {PoseID(0, 1), PoseID(0, 2), PoseID(0, 3), PoseID(0, 4)}
    assert graph.has_neighbor_pose(PoseID(0, 4))
    assert not graph.has_neighbor_pose(PoseID(0, 0))


def test_duplicate_and_foreign_measurements(make_dataset):
    _, measurements = make_dataset(4, 2)
    graph = PoseGraph(0, 2, 2)
    graph.add_measurement(measurements[0])
    graph.add_measurement(measurements[0])
    assert len(graph.measurements) == 1

    foreign = RelativeSEMeasurement(3, 0, 3, 1, np.eye(2), [1.0, 0.0], 1.0, 1.0)
    with pytest.raises(PreconditionError):
        graph.add_measurement(foreign)


def test_quadratic_form_matches_edge_cost_without_neighbors(make_dataset):
    _, measurements = make_dataset(6, 3, loop_closures=[(0, 4), (1, 5)], sigma=0.05)
    graph = PoseGraph(0, 4, 3)
    graph.set_measurements(measurements[:5], measurements[5:], [])
    assert graph.construct_data_matrices()
    Q = graph.Q.toarray()
    assert np.allclose(Q, Q.T)

    problem = QuadraticProblem(graph)
    for seed in range(3):
        X = _random_point(4, 3, 6, seed)
        assert problem.f(X) == pytest.approx(graph.cost(X), rel=1e-9)


def test_shared_edges_shift_cost_by_constant(two_robot_dataset):
    _, measurements = two_robot_dataset
    bundles = partition_measurements(measurements, 10, 2)
    graph = PoseGraph(0, 3, 2)
    b = bundles[0]
    graph.set_measurements(b.odometry, b.private_loop_closures, b.shared_loop_closures)
    assert not graph.construct_data_matrices()

    rng = np.random.default_rng(5)
    neighbor_poses = {
        pid: LiftedPose(_random_point(3, 2, 1, int(rng.integers(1000))))
        for pid in graph.neighbor_public_pose_ids()
    }
    graph.set_neighbor_poses(neighbor_poses)
    assert graph.num_available_neighbor_poses() == 4
    assert graph.construct_data_matrices()

    problem = QuadraticProblem(graph)
    offsets = []
    for seed in range(3):
        X = _random_point(3, 2, 5, seed)
        offsets.append(graph.cost(X) - problem.f(X))
    assert offsets[0] == pytest.approx(offsets[1])
    assert offsets[0] == pytest.approx(offsets[2])


def test_statistics_classify_weights(make_dataset):
    _, measurements = make_dataset(8, 2, loop_closures=[(0, 4), (1, 5), (2, 6), (3, 7)])
    lcs = measurements[7:]
    lcs[1].weight = 0.0
    lcs[2].weight = 0.5
    lcs[3].weight = 0.5
    lcs[3].is_known_inlier = True
    graph = PoseGraph(0, 2, 2)
    graph.set_measurements(measurements[:7], lcs, [])
    stats = graph.statistics()
    assert stats.total_loop_closures == 4
    assert stats.accept_loop_closures == 2
    assert stats.reject_loop_closures == 1
    assert stats.undecided_loop_closures == 1
    assert stats.decided_ratio() == pytest.approx(0.75)


def test_no_loop_closures_counts_as_decided(make_dataset):
    _, measurements = make_dataset(3, 2)
    graph = PoseGraph(0, 2, 2)
    graph.set_measurements(measurements, [], [])
    assert graph.statistics().decided_ratio() == 1.0


def test_solver_decreases_cost(make_dataset):
    _, measurements = make_dataset(5, 2, loop_closures=[(0, 4)], sigma=0.1)
    graph = PoseGraph(0, 3, 2)
    graph.set_measurements(measurements[:4], measurements[4:], [])
    graph.construct_data_matrices()
    problem = QuadraticProblem(graph)
    X0 = _random_point(3, 2, 5, 11)
    optimizer = QuadraticOptimizer(problem, OptimizerConfig(max_iterations=50))
    X = optimizer.optimize(X0)
    result = optimizer.result
    assert result.success
    assert result.f_opt <= result.f_init
    assert problem.f(X) == pytest.approx(result.f_opt)
    assert result.iterations > 0
