import math

import numpy as np
import pytest

from dpgo_common.metrics import (
    align_and_ate,
    align_and_ate_per_robot,
    relative_position_error,
    trajectory_positions,
)


def test_trajectory_positions(make_dataset):
    gt, _ = make_dataset(4, 2)
    P = trajectory_positions(gt.get_data(), 2)
    assert P.shape == (4, 2)
    assert np.allclose(P[2], gt.translation(2))
    with pytest.raises(ValueError):
        trajectory_positions(np.zeros((2, 5)), 2)


def test_ate_is_zero_after_rigid_motion():
    rng = np.random.default_rng(0)
    ref = rng.standard_normal((20, 3))
    c, s = math.cos(0.7), math.sin(0.7)
    R = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    est = ref @ R.T + np.array([1.0, -2.0, 0.5])
    out = align_and_ate(est, ref)
    assert out["matches"] == 20
    assert out["rmse"] == pytest.approx(0.0, abs=1e-9)


def test_ate_needs_two_points():
    assert align_and_ate(np.zeros((1, 2)), np.zeros((1, 2)))["rmse"] is None


def test_ate_per_robot_skips_missing_reference(make_dataset):
    gt, _ = make_dataset(5, 2)
    T = gt.get_data()
    metrics = align_and_ate_per_robot({0: T, 1: T}, {0: T}, 2)
    assert list(metrics) == [0]
    assert metrics[0]["rmse"] == pytest.approx(0.0, abs=1e-9)


def test_relative_position_error():
    ref = np.cumsum(np.ones((6, 2)), axis=0)
    est = ref.copy()
    est[3:] += 1.0
    stats = relative_position_error(est, ref, window_sizes=(1, 10))
    assert list(stats) == ["1"]
    assert stats["1"]["count"] == 5.0
    assert stats["1"]["mean"] > 0.0
    assert relative_position_error(ref, ref, (2,))["2"]["rmse"] == 0.0
