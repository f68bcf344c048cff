import logging
import time

import numpy as np
import pytest

from dpgo_common.geometry import Pose, PoseArray, fixed_stiefel_variable
from dpgo_common.metrics import align_and_ate, trajectory_positions
from dpgo_common.models import AgentState, AgentStatus, PoseID, PreconditionError, RelativeSEMeasurement
from dpgo_core.quadratic import OptimizerConfig
from dpgo_core.robust import RobustCostParameters, RobustCostType
from dpgo_decentralised.agents import PGOAgent, PGOAgentParameters
from dpgo_decentralised.partition import partition_measurements


def _single_robot_agent(measurements, n_odom, **kwargs):
    params = PGOAgentParameters(d=measurements[0].d, r=kwargs.pop("r", 3), **kwargs)
    agent = PGOAgent(0, params)
    agent.set_measurements(measurements[:n_odom], measurements[n_odom:], [])
    return agent


def _two_agents(measurements, num_poses, **kwargs):
    params = PGOAgentParameters(d=measurements[0].d, r=3, num_robots=2, **kwargs)
    bundles = partition_measurements(measurements, num_poses, 2)
    agents = [PGOAgent(rid, params) for rid in range(2)]
    for agent in agents:
        b = bundles[agent.id]
        agent.set_measurements(b.odometry, b.private_loop_closures, b.shared_loop_closures)
    agents[1].set_lifting_matrix(agents[0].get_lifting_matrix())
    return agents


def test_agent_gates_on_state():
    agent = PGOAgent(0, PGOAgentParameters(d=2, r=2))
    assert agent.state is AgentState.WAIT_FOR_DATA
    assert not agent.iterate()
    assert agent.iteration_number == 0
    assert agent.status.iteration_number == 0
    assert agent.get_shared_pose(0) is None
    assert agent.get_trajectory_in_local_frame() is None
    with pytest.raises(PreconditionError):
        agent.set_x(np.zeros((2, 3)))

    agent.set_measurements([], [], [])
    assert agent.num_poses == 0
    agent.initialize()
    assert agent.state is AgentState.WAIT_FOR_DATA


def test_parameters_are_validated():
    with pytest.raises(PreconditionError):
        PGOAgentParameters(d=3, r=2)
    with pytest.raises(PreconditionError):
        PGOAgentParameters(d=2, r=2, algorithm="RTR")
    with pytest.raises(PreconditionError):
        PGOAgentParameters(d=2, r=2, log_data=True)


def test_lifting_matrix_is_held_by_anchor():
    params = PGOAgentParameters(d=3, r=5, num_robots=2)
    a0, a1 = PGOAgent(0, params), PGOAgent(1, params)
    assert np.array_equal(a0.get_lifting_matrix(), fixed_stiefel_variable(3, 5))
    with pytest.raises(PreconditionError):
        a1.get_lifting_matrix()
    with pytest.raises(PreconditionError):
        a1.set_lifting_matrix(np.zeros((3, 3)))


def test_single_robot_chain_end_to_end(make_dataset):
    gt, measurements = make_dataset(5, 2, loop_closures=[(0, 4)])
    agent = _single_robot_agent(measurements, 4)
    agent.initialize()
    assert agent.state is AgentState.INITIALIZED
    assert agent.num_poses == 5
    assert np.allclose(agent.get_trajectory_in_local_frame(), gt.get_data(), atol=1e-8)
    assert agent.get_trajectory_in_global_frame() is None

    assert agent.iterate(True)
    status = agent.status
    assert status.iteration_number == 1
    assert status.ready_to_terminate
    assert status.relative_change == pytest.approx(0.0, abs=1e-9)
    assert agent.should_terminate()

    agent.set_global_anchor(agent.get_shared_pose(0).matrix)
    assert np.allclose(agent.get_trajectory_in_global_frame(), gt.get_data(), atol=1e-8)
    assert np.allclose(agent.get_pose_in_global_frame(3), gt.pose(3), atol=1e-8)
    assert agent.get_pose_in_global_frame(7) is None


def test_noisy_chain_cost_decreases(make_dataset):
    _, measurements = make_dataset(5, 3, loop_closures=[(0, 4), (1, 3)], sigma=0.05)
    agent = _single_robot_agent(measurements, 4)
    agent.initialize()
    graph = agent.pose_graph
    agent.iterate(True)
    start = graph.cost(agent.get_x())
    for _ in range(20):
        assert agent.iterate(True)
    assert graph.cost(agent.get_x()) <= start + 1e-12
    result = agent.optimization_result
    assert result is not None and result.f_opt <= result.f_init


def test_set_and_get_x(make_dataset):
    _, measurements = make_dataset(4, 2)
    agent = _single_robot_agent(measurements, 3)
    agent.initialize()
    X = agent.get_x()
    assert X.shape == (3, 12)
    X[:, 2] += 1.0
    agent.set_x(X)
    assert np.array_equal(agent.get_x(), X)
    with pytest.raises(PreconditionError):
        agent.set_x(np.zeros((3, 9)))


def test_neighbor_alignment(two_robot_dataset, trajectory_block):
    gt, measurements = two_robot_dataset
    a0, a1 = _two_agents(measurements, 10)
    a0.initialize()
    a1.initialize()
    assert a0.state is AgentState.INITIALIZED
    assert a1.state is AgentState.WAIT_FOR_INITIALIZATION
    assert a0.get_neighbors() == [1]
    assert a1.get_neighbor_public_poses(0) == [1, 2, 3, 4]

    poses = a0.get_shared_pose_dict()
    assert set(poses) == {PoseID(0, 1), PoseID(0, 2), PoseID(0, 3), PoseID(0, 4)}

    T1 = a1.compute_robust_neighbor_transform_two_stage(0, poses)
    T2 = a1.compute_robust_neighbor_transform_two_stage(0, poses)
    assert np.array_equal(T1.matrix, T2.matrix)
    assert np.allclose(T1.matrix, gt.pose(5), atol=1e-8)
    T3 = a1.compute_robust_neighbor_transform(0, poses)
    assert np.allclose(T3.matrix, gt.pose(5), atol=1e-8)
    assert a1.compute_robust_neighbor_transform_two_stage(0, {}) is None

    assert not a1.iterate()
    assert a1.iteration_number == 0

    # Unknown sender status: poses are dropped.
    a1.update_neighbor_poses(0, poses)
    assert a1.state is AgentState.WAIT_FOR_INITIALIZATION

    a1.set_neighbor_status(a0.status)
    a1.update_neighbor_poses(0, poses)
    assert a1.state is AgentState.INITIALIZED
    assert a1.pose_graph.num_available_neighbor_poses() == 0
    a1.update_neighbor_poses(0, poses)
    assert a1.num_poses_received == 8

    anchor = a0.get_shared_pose(0).matrix
    a0.set_global_anchor(anchor)
    a1.set_global_anchor(anchor)
    assert np.allclose(a0.get_trajectory_in_global_frame(), trajectory_block(gt.get_data(), 2, 0, 5), atol=1e-8)
    assert np.allclose(a1.get_trajectory_in_global_frame(), trajectory_block(gt.get_data(), 2, 5, 10), atol=1e-8)


def test_alignment_requires_enough_inliers(two_robot_dataset):
    _, measurements = two_robot_dataset
    a0, a1 = _two_agents(measurements, 10, robust_init_min_inliers=5)
    a0.initialize()
    a1.initialize()
    assert a1.compute_robust_neighbor_transform_two_stage(0, a0.get_shared_pose_dict()) is None


def test_incoming_poses_are_checked(two_robot_dataset):
    _, measurements = two_robot_dataset
    a0, a1 = _two_agents(measurements, 10)
    a0.initialize()
    poses = a0.get_shared_pose_dict()
    with pytest.raises(PreconditionError):
        a0.update_neighbor_poses(0, poses)
    with pytest.raises(PreconditionError):
        a1.update_neighbor_poses(1, poses)
    with pytest.raises(PreconditionError):
        a1.update_aux_neighbor_poses(0, poses)


def test_shared_weights_are_decided_by_lower_id(two_robot_dataset):
    _, measurements = two_robot_dataset
    a0, a1 = _two_agents(measurements, 10)
    weights = a0.get_shared_loop_closure_weights(1)
    assert len(weights) == 3
    assert a1.get_shared_loop_closure_weights(0) == {}

    key = next(iter(weights))
    assert a1.set_measurement_weight(*key, 0.0)
    assert a1.pose_graph.find_measurement(*key).weight == 0.0
    assert not a1.set_measurement_weight(PoseID(0, 4), PoseID(1, 0), 0.0)
    assert not a1.set_measurement_weight(PoseID(0, 0), PoseID(1, 1), 0.5)
    with pytest.raises(PreconditionError):
        a1.set_measurement_weight(*key, 1.5)


def test_gnc_rejects_private_outlier(make_dataset, make_outlier):
    gt, measurements = make_dataset(6, 2, loop_closures=[(0, 4), (1, 5)])
    outlier = make_outlier(gt, 0, 3)
    params = RobustCostParameters(RobustCostType.GNC_TLS)
    agent = _single_robot_agent(measurements + [outlier], 5, robust_cost_params=params,
                                robust_opt_inner_iters=1)
    agent.initialize()
    for _ in range(60):
        agent.iterate(True)
    assert outlier.weight == 0.0
    assert all(m.weight > 1.0 - 1e-6 for m in measurements[5:])
    stats = agent.pose_graph.statistics()
    assert stats.reject_loop_closures == 1
    assert stats.accept_loop_closures == 2
    assert all(m.weight == 1.0 for m in agent.pose_graph.odometry)


def test_weight_update_skips_fixed_edges(make_dataset):
    gt, measurements = make_dataset(5, 2, loop_closures=[(0, 3)])
    bad = measurements[-1]
    bad.t = bad.t + 50.0
    bad.fixed_weight = True
    params = RobustCostParameters(RobustCostType.TLS, gnc_barc=1.0)
    agent = _single_robot_agent(measurements, 4, robust_cost_params=params)
    agent.initialize()
    agent.update_loop_closure_weights()
    assert bad.weight == 1.0
    assert agent.publish_weights_requested


def test_acceleration_restarts(make_dataset):
    _, measurements = make_dataset(5, 2, loop_closures=[(0, 4)], sigma=0.05)
    agent = _single_robot_agent(measurements, 4, acceleration=True, restart_interval=3)
    agent.initialize()
    assert agent.gamma == 0.0
    agent.iterate(True)
    assert agent.gamma == pytest.approx(1.0)
    assert agent.alpha == pytest.approx(1.0)
    agent.iterate(False)
    assert agent.gamma == pytest.approx((1.0 + np.sqrt(5.0)) / 2.0)
    agent.iterate(True)
    assert agent.gamma == 0.0 and agent.alpha == 0.0
    assert np.array_equal(agent.Y.get_data(), agent.X.get_data())
    assert len(agent.get_aux_shared_pose_dict()) == 0
    with pytest.raises(PreconditionError):
        agent.start_optimization_loop()


def test_termination_requires_every_robot(two_robot_dataset):
    _, measurements = two_robot_dataset
    a0, _ = _two_agents(measurements, 10, max_num_iters=5)
    ready = dict(state=AgentState.INITIALIZED, ready_to_terminate=True)
    team = {0: AgentStatus(agent_id=0, **ready), 1: AgentStatus(agent_id=1, **ready)}
    assert a0.should_terminate(team)
    team[1] = AgentStatus(agent_id=1, state=AgentState.INITIALIZED, ready_to_terminate=False)
    assert not a0.should_terminate(team)
    assert not a0.should_terminate({0: team[0]})
    team[1] = AgentStatus(agent_id=1, state=AgentState.WAIT_FOR_INITIALIZATION, ready_to_terminate=True)
    assert not a0.should_terminate(team)
    with pytest.raises(PreconditionError):
        a0.should_terminate({0: team[0], 1: AgentStatus(agent_id=0, **ready)})


def test_termination_after_iteration_cap(make_dataset):
    _, measurements = make_dataset(4, 2, sigma=0.05)
    agent = _single_robot_agent(measurements, 3, max_num_iters=2, rel_change_tol=0.0)
    agent.initialize()
    for _ in range(3):
        agent.iterate(True)
    assert agent.should_terminate({})


def test_reset_keeps_lifting_matrix(tmp_path, make_dataset):
    _, measurements = make_dataset(4, 2)
    agent = _single_robot_agent(measurements, 3, log_data=True, log_directory=str(tmp_path))
    agent.initialize()
    agent.set_global_anchor(agent.get_shared_pose(0).matrix)
    agent.iterate(True)
    agent.reset()
    assert agent.state is AgentState.WAIT_FOR_DATA
    assert agent.instance_number == 1
    assert agent.iteration_number == 0
    assert agent.num_poses == 0
    assert agent.get_lifting_matrix() is not None
    for name in ("trajectory_initial.csv", "trajectory_optimized.csv", "measurements.csv", "X.csv"):
        assert (tmp_path / name).exists()


def test_local_pose_graph_optimization(make_dataset):
    gt, measurements = make_dataset(5, 3, loop_closures=[(0, 3)])
    agent = _single_robot_agent(measurements, 4)
    T = agent.local_pose_graph_optimization()
    assert T.shape == (3, 20)
    assert np.allclose(T, gt.get_data(), atol=1e-6)


def test_initialize_with_provided_trajectory(make_dataset):
    gt, measurements = make_dataset(4, 2)
    agent = _single_robot_agent(measurements, 3, r=2)
    agent.initialize(gt)
    assert np.allclose(agent.get_trajectory_in_local_frame(), gt.get_data())
    agent.initialize_in_global_frame(Pose.identity(2))
    assert agent.state is AgentState.INITIALIZED


def test_async_loop_start_and_stop(make_dataset):
    _, measurements = make_dataset(4, 2, sigma=0.01)
    agent = _single_robot_agent(measurements, 3)
    agent.initialize()
    agent.start_optimization_loop(rate=200.0)
    assert agent.is_optimization_running()
    agent.start_optimization_loop(rate=200.0)
    time.sleep(0.2)
    agent.end_optimization_loop()
    assert not agent.is_optimization_running()
    assert agent.iteration_number > 0
    with pytest.raises(PreconditionError):
        agent.start_optimization_loop(rate=0.0)


def test_chain_converges_from_perturbed_start():
    rng = np.random.default_rng(4)
    steps = rng.standard_normal((4, 2))
    steps /= np.linalg.norm(steps, axis=1, keepdims=True)
    odometry = [RelativeSEMeasurement(0, i, 0, i + 1, np.eye(2), steps[i], 1.0, 1.0, fixed_weight=True)
                for i in range(4)]
    positions = np.vstack([np.zeros(2), np.cumsum(steps, axis=0)])

    params = PGOAgentParameters(d=2, r=2, optimizer=OptimizerConfig(max_iterations=50, gradnorm_tol=1e-8))
    agent = PGOAgent(0, params)
    agent.set_measurements(odometry, [], [])
    agent.initialize()
    X = agent.get_x()
    X[:, 2::3] += 0.5 * rng.standard_normal((2, 5))
    agent.set_x(X)

    for _ in range(100):
        assert agent.iterate(True)
        if agent.optimization_result.grad_norm_opt < 1e-5:
            break
    assert agent.optimization_result.grad_norm_opt < 0.1

    estimate = trajectory_positions(agent.get_trajectory_in_local_frame(), 2)
    assert align_and_ate(estimate, positions)["rmse"] < 1e-3


def test_shared_weights_wait_for_neighbor_poses(two_robot_dataset):
    _, measurements = two_robot_dataset
    a0, _ = _two_agents(measurements, 10,
                        robust_cost_params=RobustCostParameters(RobustCostType.GNC_TLS))
    a0.initialize()
    shared = [m for m in a0.pose_graph.shared_loop_closures() if not m.fixed_weight]
    for m in shared:
        m.weight = 0.37

    a0.update_loop_closure_weights()
    assert [m.weight for m in shared] == [0.37] * len(shared)
    assert len(shared) == 3


def test_alignment_of_consistent_frames_is_identity(two_robot_dataset, trajectory_block):
    gt, measurements = two_robot_dataset
    a0, a1 = _two_agents(measurements, 10)
    a0.initialize()
    T_global = PoseArray(2, 5)
    T_global.set_data(trajectory_block(gt.get_data(), 2, 5, 10))
    a1.initialize(T_global)

    T = a1.compute_robust_neighbor_transform_two_stage(0, a0.get_shared_pose_dict())
    assert np.allclose(T.matrix, Pose.identity(2).matrix, atol=1e-8)


def test_failing_loop_is_logged_and_stopped(make_dataset, monkeypatch, caplog):
    _, measurements = make_dataset(4, 2)
    agent = _single_robot_agent(measurements, 3)
    agent.initialize()

    def broken_iterate(do_optimization=True):
        raise PreconditionError("broken")

    monkeypatch.setattr(agent, "iterate", broken_iterate)
    with caplog.at_level(logging.ERROR, logger="dpgo.decentralised.agent"):
        agent.start_optimization_loop(rate=200.0)
        deadline = time.time() + 5.0
        while agent.is_optimization_running() and time.time() < deadline:
            time.sleep(0.01)
    assert not agent.is_optimization_running()
    assert "Optimization loop failed" in caplog.text
    agent.end_optimization_loop()
