import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from dpgo_core.initialization import odometry_initialization
from dpgo_core.reference import robustify, solve_centralised_reference


@pytest.mark.parametrize("d", [2, 3])
def test_reference_recovers_consistent_graph(make_dataset, d):
    gt, measurements = make_dataset(6, d, loop_closures=[(0, 4), (1, 5)])
    initial = odometry_initialization(measurements[:5], 6, d)
    for i in range(1, 6):
        initial.set_translation(i, initial.translation(i) + 0.05)
    T = solve_centralised_reference(measurements, initial, robust_kind="huber")
    assert np.allclose(T.get_data(), gt.get_data(), atol=1e-4)


def test_robustify_rejects_unknown_kernel():
    base = gtsam.noiseModel.Isotropic.Sigma(3, 1.0)
    assert robustify(base, None) is base
    with pytest.raises(ValueError):
        robustify(base, "tukey-ish")
