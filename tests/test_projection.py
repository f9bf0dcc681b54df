import numpy as np
import pytest

from lvio.projection import ProjectionFactor, ProjectionTdFactor
from lvio.rotation import PoseLocalParameterization, quat_to_matrix

EPS = 1e-6


def _axis_quat(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    return np.r_[np.cos(angle / 2), np.sin(angle / 2) * axis]


def _block(p, q):
    return np.r_[p, q[1:], q[0]]


def _scene():
    qi = _axis_quat([0.2, 1.0, 0.1], 0.15)
    qj = _axis_quat([1.0, 0.3, -0.2], -0.1)
    qic = _axis_quat([0.0, 0.5, 1.0], 0.05)
    pi = np.array([0.1, -0.2, 0.3])
    pj = np.array([0.5, 0.1, -0.1])
    tic = np.array([0.05, 0.02, -0.01])
    world = np.array([0.3, 0.4, 5.0])

    def observe(p, q):
        imu = quat_to_matrix(q).T @ (world - p)
        return quat_to_matrix(qic).T @ (imu - tic)

    cam_i = observe(pi, qi)
    cam_j = observe(pj, qj)
    params = [
        _block(pi, qi),
        _block(pj, qj),
        _block(tic, qic),
        np.array([1.0 / cam_i[2]]),
    ]
    return params, cam_i / cam_i[2], cam_j / cam_j[2]


def _numeric(factor, params, block):
    local = PoseLocalParameterization()
    is_pose = params[block].shape == (7,)
    size = 6 if is_pose else 1
    cols = []
    for k in range(size):
        d = np.zeros(size)
        d[k] = EPS
        plus = [p.copy() for p in params]
        minus = [p.copy() for p in params]
        if is_pose:
            plus[block] = local.plus(params[block], d)
            minus[block] = local.plus(params[block], -d)
        else:
            plus[block] = params[block] + d
            minus[block] = params[block] - d
        rp, _ = factor.evaluate(plus, False)
        rm, _ = factor.evaluate(minus, False)
        cols.append((rp - rm) / (2 * EPS))
    return np.column_stack(cols)


def test_consistent_geometry_gives_zero_residual():
    params, pts_i, pts_j = _scene()
    factor = ProjectionFactor(pts_i, pts_j, np.eye(2))
    residual, _ = factor.evaluate(params, False)
    np.testing.assert_allclose(residual, np.zeros(2), atol=1e-9)


def test_identity_poses_hand_value():
    identity = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0])
    factor = ProjectionFactor([0.1, 0.2, 1.0], [0.0, 0.0, 1.0], np.eye(2))
    residual, _ = factor.evaluate([identity, identity, identity, [0.5]], False)
    np.testing.assert_allclose(residual, [0.1, 0.2], atol=1e-12)


def test_sqrt_info_scales_residual():
    params, pts_i, pts_j = _scene()
    pts_j = pts_j + np.array([0.01, -0.02, 0.0])
    r1, _ = ProjectionFactor(pts_i, pts_j, np.eye(2)).evaluate(params, False)
    r2, _ = ProjectionFactor(pts_i, pts_j, 3.0 * np.eye(2)).evaluate(params, False)
    np.testing.assert_allclose(r2, 3.0 * r1, rtol=1e-12)


def test_jacobians_match_numeric_derivatives():
    params, pts_i, pts_j = _scene()
    pts_j = pts_j + np.array([0.02, 0.01, 0.0])
    factor = ProjectionFactor(pts_i, pts_j, np.eye(2))
    _, jacobians = factor.evaluate(params)
    assert [j.shape for j in jacobians] == [(2, 7), (2, 7), (2, 7), (2, 1)]
    for block in range(3):
        np.testing.assert_allclose(jacobians[block][:, 6], np.zeros(2))
        np.testing.assert_allclose(
            jacobians[block][:, :6], _numeric(factor, params, block), atol=1e-5
        )
    np.testing.assert_allclose(jacobians[3], _numeric(factor, params, 3), atol=1e-5)


def test_no_jacobians_when_not_requested():
    params, pts_i, pts_j = _scene()
    residual, jacobians = ProjectionFactor(pts_i, pts_j, np.eye(2)).evaluate(params, False)
    assert jacobians is None
    assert residual.shape == (2,)


def test_wrong_block_size_raises():
    params, pts_i, pts_j = _scene()
    params[0] = params[0][:6]
    with pytest.raises(ValueError):
        ProjectionFactor(pts_i, pts_j, np.eye(2)).evaluate(params)


def test_zero_inverse_depth_raises():
    params, pts_i, pts_j = _scene()
    params[3] = np.array([0.0])
    with pytest.raises(ValueError):
        ProjectionFactor(pts_i, pts_j, np.eye(2)).evaluate(params)


def test_td_factor_without_motion_matches_plain_factor():
    params, pts_i, pts_j = _scene()
    pts_j = pts_j + np.array([0.01, 0.0, 0.0])
    plain, _ = ProjectionFactor(pts_i, pts_j, np.eye(2)).evaluate(params, False)
    td_factor = ProjectionTdFactor(
        pts_i, pts_j, [0.0, 0.0], [0.0, 0.0], 0.0, 0.0, 100.0, 200.0, np.eye(2), 480, 0.03
    )
    shifted, _ = td_factor.evaluate([*params, [0.01]], False)
    np.testing.assert_allclose(shifted, plain, atol=1e-12)


def test_td_factor_zero_residual_when_offsets_agree():
    params, pts_i, pts_j = _scene()
    td_factor = ProjectionTdFactor(
        pts_i, pts_j, [0.3, -0.1], [0.2, 0.4], 0.005, 0.005, 10.0, 20.0, np.eye(2), 480, 0.0
    )
    residual, _ = td_factor.evaluate([*params, [0.005]], False)
    np.testing.assert_allclose(residual, np.zeros(2), atol=1e-9)


def test_td_factor_jacobians_match_numeric_derivatives():
    params, pts_i, pts_j = _scene()
    td_factor = ProjectionTdFactor(
        pts_i, pts_j, [0.3, -0.1], [0.2, 0.4], 0.001, 0.002, 100.0, 300.0, np.eye(2), 480, 0.02
    )
    full = [*params, np.array([0.004])]
    _, jacobians = td_factor.evaluate(full)
    assert len(jacobians) == 5
    for block in range(3):
        np.testing.assert_allclose(
            jacobians[block][:, :6], _numeric(td_factor, full, block), atol=1e-5
        )
    for block in (3, 4):
        np.testing.assert_allclose(
            jacobians[block], _numeric(td_factor, full, block), atol=1e-5
        )


def test_td_factor_needs_five_blocks():
    params, pts_i, pts_j = _scene()
    td_factor = ProjectionTdFactor(
        pts_i, pts_j, [0.0, 0.0], [0.0, 0.0], 0.0, 0.0, 0.0, 0.0, np.eye(2), 480, 0.0
    )
    with pytest.raises(ValueError):
        td_factor.evaluate(params)