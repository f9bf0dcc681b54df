import numpy as np
import pytest

from lvio.imu_factor import ImuFactor
from lvio.integration import ImuNoise, IntegrationBase
from lvio.rotation import PoseLocalParameterization, quat_multiply, quat_normalize, quat_rotate

NOISE = ImuNoise(acc_n=0.5, gyr_n=0.5, acc_w=0.5, gyr_w=0.5)
GRAVITY = np.array([0.0, 0.0, 9.81])


def _integration():
    acc0 = np.array([0.0, 0.2, 9.9])
    gyr0 = np.array([0.1, -0.2, 0.3])
    integ = IntegrationBase(acc0, gyr0, np.zeros(3), np.zeros(3), NOISE, GRAVITY)
    for k in range(20):
        acc = np.array([0.3 * np.sin(0.2 * k), 0.2, 9.8 + 0.1 * np.cos(0.3 * k)])
        gyr = np.array([0.1, -0.2, 0.3 + 0.01 * k])
        integ.push_back(0.01, acc, gyr)
    return integ


def _pose(p, q):
    return np.array([p[0], p[1], p[2], q[1], q[2], q[3], q[0]])


def _consistent_parameters(integ):
    pi = np.array([1.0, -2.0, 0.3])
    qi = quat_normalize([0.9, 0.1, 0.2, -0.3])
    vi = np.array([0.5, 0.1, -0.2])
    t = integ.sum_dt
    pj = pi + vi * t - 0.5 * GRAVITY * t * t + quat_rotate(qi, integ.delta_p)
    vj = vi - GRAVITY * t + quat_rotate(qi, integ.delta_v)
    qj = quat_multiply(qi, integ.delta_q)
    zero = np.zeros(6)
    return [
        _pose(pi, qi),
        np.concatenate([vi, zero]),
        _pose(pj, qj),
        np.concatenate([vj, zero]),
    ]


def _perturbed(params):
    out = [p.copy() for p in params]
    out[0][:3] += [0.01, -0.02, 0.015]
    out[1][:3] += [0.03, 0.0, -0.01]
    out[2] = PoseLocalParameterization().plus(out[2], np.array([0.0, 0.01, 0.0, 0.01, -0.02, 0.01]))
    out[3][:3] += [-0.02, 0.01, 0.0]
    return out


def test_residual_zero_at_consistent_state():
    integ = _integration()
    residual, jacobians = ImuFactor(integ).evaluate(_consistent_parameters(integ), False)
    assert jacobians is None
    np.testing.assert_allclose(residual, np.zeros(15), atol=1e-8)


def test_jacobian_shapes_and_free_quaternion_column():
    integ = _integration()
    _, jacobians = ImuFactor(integ).evaluate(_consistent_parameters(integ), True)
    assert [j.shape for j in jacobians] == [(15, 7), (15, 9), (15, 7), (15, 9)]
    np.testing.assert_array_equal(jacobians[0][:, 6], np.zeros(15))
    np.testing.assert_array_equal(jacobians[2][:, 6], np.zeros(15))


def _numeric_jacobian(factor, params, block, eps=1e-6):
    param = PoseLocalParameterization()
    size = 6 if params[block].size == 7 else params[block].size
    cols = []
    for k in range(size):
        step = np.zeros(size)
        step[k] = eps
        plus = [p.copy() for p in params]
        minus = [p.copy() for p in params]
        if params[block].size == 7:
            plus[block] = param.plus(params[block], step)
            minus[block] = param.plus(params[block], -step)
        else:
            plus[block] = params[block] + step
            minus[block] = params[block] - step
        r_plus, _ = factor.evaluate(plus, False)
        r_minus, _ = factor.evaluate(minus, False)
        cols.append((r_plus - r_minus) / (2 * eps))
    return np.stack(cols, axis=1)


@pytest.mark.parametrize("block", [0, 1, 2, 3])
def test_analytic_jacobians_match_finite_differences(block):
    integ = _integration()
    factor = ImuFactor(integ)
    params = _perturbed(_consistent_parameters(integ))
    _, jacobians = factor.evaluate(params, True)
    analytic = jacobians[block]
    if params[block].size == 7:
        analytic = analytic[:, :6]
    numeric = _numeric_jacobian(factor, params, block)
    scale = max(1.0, np.abs(analytic).max())
    np.testing.assert_allclose(analytic, numeric, atol=2e-3 * scale)


def test_empty_integration_has_no_information():
    integ = IntegrationBase(np.zeros(3), np.zeros(3), np.zeros(3), np.zeros(3), NOISE, GRAVITY)
    params = [_pose(np.zeros(3), [1.0, 0.0, 0.0, 0.0]), np.zeros(9),
              _pose(np.zeros(3), [1.0, 0.0, 0.0, 0.0]), np.zeros(9)]
    with pytest.raises(ValueError):
        ImuFactor(integ).evaluate(params, True)


def test_wrong_block_count_raises():
    with pytest.raises(ValueError):
        ImuFactor(_integration()).evaluate([np.zeros(7)], True)