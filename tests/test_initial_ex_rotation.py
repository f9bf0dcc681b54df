import numpy as np
import pytest

from lvio.initial_ex_rotation import InitialExRotation
from lvio.rotation import matrix_to_quat, quat_to_matrix


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    return quat_to_matrix(np.concatenate([[np.cos(angle / 2)], np.sin(angle / 2) * axis]))


TRUE_RIC = _rotation((1, 1, 0), np.radians(10.0))
IMU_ROTATIONS = [
    _rotation((0, 1, 0), 0.7),
    _rotation((1, 0, 0), 0.7),
    _rotation((0, 0, 1), 0.7),
    _rotation((1, 1, 1), 0.7),
]


def _correspondences(rc, seed, n=30):
    rng = np.random.default_rng(seed)
    pts = np.column_stack(
        [rng.uniform(-1.0, 1.0, n), rng.uniform(-1.0, 1.0, n), rng.uniform(4.0, 8.0, n)]
    )
    t = np.array([0.5, 0.1, 0.05])
    pts_j = (pts - t) @ rc
    return [(a / a[2], b / b[2]) for a, b in zip(pts, pts_j)]


def _feed(calib):
    results = []
    for k, r_imu in enumerate(IMU_ROTATIONS):
        rc = TRUE_RIC.T @ r_imu @ TRUE_RIC
        results.append(calib.calibrate(_correspondences(rc, seed=k), matrix_to_quat(r_imu)))
    return results


def test_calibration_recovers_extrinsic_rotation():
    results = _feed(InitialExRotation(window_size=4))
    assert results[:3] == [None, None, None]
    assert np.allclose(results[3], TRUE_RIC, atol=1e-6)


def test_result_is_a_rotation():
    ric = _feed(InitialExRotation(window_size=4))[3]
    assert np.allclose(ric @ ric.T, np.eye(3), atol=1e-9)
    assert np.isclose(np.linalg.det(ric), 1.0)


def test_larger_window_waits_for_more_frames():
    results = _feed(InitialExRotation(window_size=10))
    assert all(r is None for r in results)


def test_no_rotation_never_calibrates():
    calib = InitialExRotation(window_size=2)
    results = [calib.calibrate([], np.array([1.0, 0.0, 0.0, 0.0])) for _ in range(4)]
    assert all(r is None for r in results)


def test_rejects_malformed_quaternion():
    with pytest.raises(ValueError):
        InitialExRotation(window_size=2).calibrate([], np.zeros(3))