import numpy as np
import pytest

from dpgo_common.data_logging import PGOLogger


def test_trajectory_round_trip(tmp_path, make_dataset):
    gt, _ = make_dataset(4, 3)
    writer = PGOLogger(str(tmp_path / "logs"))
    path = writer.log_trajectory(3, 4, gt.get_data(), "traj.csv")
    assert path.endswith("traj.csv")
    assert np.array_equal(writer.load_trajectory("traj.csv"), gt.get_data())


def test_trajectory_shape_is_checked(tmp_path):
    writer = PGOLogger(str(tmp_path))
    with pytest.raises(ValueError):
        writer.log_trajectory(2, 3, np.zeros((2, 6)), "bad.csv")


def test_measurement_rows(tmp_path, make_dataset):
    _, measurements = make_dataset(5, 2, loop_closures=[(0, 4)])
    measurements[-1].weight = 0.25
    writer = PGOLogger(str(tmp_path))
    assert writer.log_measurements([], "none.csv") is None
    path = writer.log_measurements(measurements, "measurements.csv")

    with open(path, encoding="utf-8") as fh:
        header = fh.readline().strip().split(",")
    assert header[:4] == ["robot_src", "pose_src", "robot_dst", "pose_dst"]
    assert header[-1] == "fixed_weight"

    loaded = writer.load_measurements("measurements.csv")
    assert len(loaded) == 5
    lc = loaded[-1]
    assert (lc.p1, lc.p2) == (0, 4)
    assert lc.weight == 0.25
    assert not lc.fixed_weight
    assert loaded[0].fixed_weight
    assert np.array_equal(lc.R, measurements[-1].R)
