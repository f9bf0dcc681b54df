from collections import deque

import numpy as np
import pytest

from lvio.initial_alignment import (
    ImageFrame,
    Odometry,
    OdometryRegister,
    linear_alignment,
    refine_gravity,
    solve_gyroscope_bias,
    tangent_basis,
    visual_imu_alignment,
)
from lvio.rotation import matrix_to_quat, quat_inverse, quat_multiply, quat_to_matrix

GRAVITY = np.array([0.0, 0.0, 9.81])
GRAVITY_NORM = 9.81
SCALE = 2.0
DT = 0.1


class FakePreIntegration:
    def __init__(self, sum_dt, delta_p, delta_v, delta_q=(1.0, 0.0, 0.0, 0.0), jacobian=None):
        self.sum_dt = sum_dt
        self.delta_p = np.asarray(delta_p, dtype=float)
        self.delta_v = np.asarray(delta_v, dtype=float)
        self.delta_q = np.asarray(delta_q, dtype=float)
        self.jacobian = np.eye(15) if jacobian is None else jacobian
        self.repropagated = []

    def repropagate(self, ba, bg):
        self.repropagated.append((np.array(ba), np.array(bg)))


def make_frames(n=6, seed=3):
    rng = np.random.default_rng(seed)
    vel = rng.normal(size=(n, 3))
    pos = rng.normal(size=(n, 3))
    frames = {}
    for k in range(n):
        pre = None
        if k > 0:
            pre = FakePreIntegration(
                DT,
                delta_p=-DT * vel[k - 1] + DT * DT / 2 * GRAVITY + SCALE * (pos[k] - pos[k - 1]),
                delta_v=vel[k] - vel[k - 1] + DT * GRAVITY,
            )
        frames[k * DT] = ImageFrame(points={}, t=k * DT, T=pos[k], pre_integration=pre)
    return frames, vel


def test_image_frame_from_lidar_info_reads_fields():
    info = [2.0, 1.0, 2.0, 3.0, 0.0, 0.0, 0.0, 1.0, 4.0, 5.0, 6.0,
            0.1, 0.2, 0.3, 0.01, 0.02, 0.03, 9.8]
    frame = ImageFrame.from_lidar_info({7: []}, info, 1.5)
    assert frame.reset_id == 2
    assert frame.t == 1.5
    np.testing.assert_allclose(frame.T, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(frame.R, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(frame.V, [4.0, 5.0, 6.0])
    np.testing.assert_allclose(frame.Ba, [0.1, 0.2, 0.3])
    np.testing.assert_allclose(frame.Bg, [0.01, 0.02, 0.03])
    assert frame.gravity == pytest.approx(9.8)
    assert frame.is_key_frame is False
    assert 7 in frame.points


def test_image_frame_default_record_has_invalid_reset_id():
    frame = ImageFrame.from_lidar_info({}, [-1.0] * 18, 0.0)
    assert frame.reset_id == -1
    np.testing.assert_allclose(frame.R @ frame.R.T, np.eye(3), atol=1e-12)


def test_image_frame_rejects_short_record():
    with pytest.raises(ValueError):
        ImageFrame.from_lidar_info({}, [0.0] * 5, 0.0)


def test_get_odometry_empty_queue_gives_invalid_record():
    reg = OdometryRegister(500)
    channel = reg.get_odometry(deque(), 1.0, np.eye(3), np.zeros(3))
    assert channel == [-1.0] * 18


def test_get_odometry_pops_old_messages_and_rejects_far_ones():
    reg = OdometryRegister(500)
    queue = deque([Odometry(stamp=0.0), Odometry(stamp=0.5), Odometry(stamp=2.0)])
    channel = reg.get_odometry(queue, 1.0, np.eye(3), np.zeros(3))
    assert channel == [-1.0] * 18
    assert [o.stamp for o in queue] == [2.0]


def test_get_odometry_converts_to_world_frame():
    reg = OdometryRegister(500)
    position = np.array([1.0, 2.0, 3.0])
    velocity = np.array([1.0, 0.5, -0.25])
    cov = np.arange(36, dtype=float)
    queue = deque([
        Odometry(stamp=1.0, position=position, linear_velocity=velocity, covariance=cov)
    ])
    channel = reg.get_odometry(queue, 1.0, np.eye(3), np.zeros(3))
    assert len(channel) == 18
    assert channel[0] == cov[0]
    np.testing.assert_allclose(channel[1:4], [-position[0], -position[1], position[2]], atol=1e-12)
    np.testing.assert_allclose(channel[8:11], [-velocity[0], -velocity[1], velocity[2]], atol=1e-12)
    np.testing.assert_allclose(channel[11:18], cov[1:8])
    quat = np.array(channel[4:8])
    assert np.linalg.norm(quat) == pytest.approx(1.0)
    assert abs(quat[2]) == pytest.approx(1.0)


def test_get_odometry_applies_extrinsic_translation():
    reg = OdometryRegister(500)
    trans = np.array([0.5, 0.0, 0.0])
    queue = deque([Odometry(stamp=1.0)])
    channel = reg.get_odometry(queue, 1.0, np.eye(3), trans)
    np.testing.assert_allclose(channel[1:4], [-trans[0], -trans[1], trans[2]], atol=1e-12)


def test_odometry_register_rejects_bad_rate():
    with pytest.raises(ValueError):
        OdometryRegister(0)


def test_tangent_basis_for_vertical_gravity():
    basis = tangent_basis([0.0, 0.0, 9.81])
    np.testing.assert_allclose(basis[:, 0], [1.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(basis[:, 1], [0.0, 1.0, 0.0], atol=1e-12)


@pytest.mark.parametrize("g", [[0.3, -1.0, 9.7], [1.0, 2.0, 3.0], [0.0, 9.8, 0.0]])
def test_tangent_basis_is_orthonormal_and_perpendicular(g):
    basis = tangent_basis(g)
    assert basis.shape == (3, 2)
    np.testing.assert_allclose(basis.T @ basis, np.eye(2), atol=1e-12)
    np.testing.assert_allclose(np.asarray(g) @ basis, np.zeros(2), atol=1e-12)


def test_tangent_basis_rejects_zero():
    with pytest.raises(ValueError):
        tangent_basis([0.0, 0.0, 0.0])


def test_solve_gyroscope_bias_recovers_correction():
    rng = np.random.default_rng(1)
    delta_true = np.array([0.01, -0.02, 0.015])
    rotations = [quat_to_matrix(q / np.linalg.norm(q)) for q in rng.normal(size=(4, 4))]
    frames = {}
    for k, rot in enumerate(rotations):
        pre = None
        if k > 0:
            q_ij = matrix_to_quat(rotations[k - 1].T @ rot)
            h = delta_true / 2
            err = np.array([np.sqrt(1.0 - h @ h), *h])
            pre = FakePreIntegration(DT, np.zeros(3), np.zeros(3),
                                     delta_q=quat_multiply(q_ij, quat_inverse(err)))
        frames[float(k)] = ImageFrame(t=float(k), R=rot, pre_integration=pre)
    bgs = [np.zeros(3) for _ in range(3)]
    delta = solve_gyroscope_bias(frames, bgs)
    np.testing.assert_allclose(delta, delta_true, atol=1e-9)
    for bg in bgs:
        np.testing.assert_allclose(bg, delta_true, atol=1e-9)
    assert frames[0.0].pre_integration is None
    for key in (1.0, 2.0, 3.0):
        calls = frames[key].pre_integration.repropagated
        assert len(calls) == 1
        np.testing.assert_allclose(calls[0][0], np.zeros(3))
        np.testing.assert_allclose(calls[0][1], bgs[0])


def test_solve_gyroscope_bias_needs_two_frames():
    with pytest.raises(ValueError):
        solve_gyroscope_bias({0.0: ImageFrame()}, [np.zeros(3)])


def test_linear_alignment_recovers_state():
    frames, vel = make_frames()
    result = linear_alignment(frames, np.zeros(3), GRAVITY_NORM)
    assert result is not None
    g, x = result
    assert x.shape == (len(frames) * 3 + 3,)
    np.testing.assert_allclose(g, GRAVITY, atol=1e-6)
    assert x[-1] == pytest.approx(SCALE, abs=1e-6)
    np.testing.assert_allclose(x[:len(frames) * 3].reshape(-1, 3), vel, atol=1e-6)


def test_linear_alignment_fails_on_wrong_gravity_norm():
    frames, _ = make_frames()
    assert linear_alignment(frames, np.zeros(3), 20.0) is None


def test_refine_gravity_keeps_exact_gravity():
    frames, vel = make_frames()
    g, x = refine_gravity(frames, GRAVITY, np.zeros(3), GRAVITY_NORM)
    np.testing.assert_allclose(g, GRAVITY, atol=1e-6)
    assert x[-1] / 100.0 == pytest.approx(SCALE, abs=1e-6)
    np.testing.assert_allclose(x[:len(frames) * 3].reshape(-1, 3), vel, atol=1e-6)


def test_refine_gravity_stays_on_sphere():
    frames, _ = make_frames()
    g, x = refine_gravity(frames, [0.5, 0.0, 9.8], np.zeros(3), GRAVITY_NORM)
    assert np.linalg.norm(g) == pytest.approx(GRAVITY_NORM)
    assert x.shape == (len(frames) * 3 + 3,)


def test_visual_imu_alignment_without_bias():
    frames, vel = make_frames()
    bgs = [np.zeros(3) for _ in range(4)]
    result = visual_imu_alignment(frames, bgs, np.zeros(3), GRAVITY_NORM)
    assert result is not None
    g, x = result
    np.testing.assert_allclose(g, GRAVITY, atol=1e-6)
    assert x[-1] == pytest.approx(SCALE, abs=1e-6)
    for bg in bgs:
        np.testing.assert_allclose(bg, np.zeros(3), atol=1e-12)


def test_visual_imu_alignment_rejects_missing_preintegration():
    frames, _ = make_frames()
    frames[DT].pre_integration = None
    with pytest.raises(ValueError):
        visual_imu_alignment(frames, [np.zeros(3)], np.zeros(3), GRAVITY_NORM)