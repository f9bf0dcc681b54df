"""IMU pre-integration between two image frames using mid-point integration."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .rotation import (
    delta_q,
    quat_inverse,
    quat_multiply,
    quat_normalize,
    quat_rotate,
    quat_to_matrix,
    skew_symmetric,
)

O_P = 0
O_R = 3
O_V = 6
O_BA = 9
O_BG = 12

_IDENTITY_Q = np.array([1.0, 0.0, 0.0, 0.0])


@dataclass(frozen=True)
class ImuNoise:
    """Measurement noise and bias random-walk densities of an IMU."""

    acc_n: float
    gyr_n: float
    acc_w: float
    gyr_w: float


def _noise_matrix(noise: ImuNoise) -> np.ndarray:
    diag = [
        noise.acc_n**2,
        noise.gyr_n**2,
        noise.acc_n**2,
        noise.gyr_n**2,
        noise.acc_w**2,
        noise.gyr_w**2,
    ]
    return np.diag(np.repeat(diag, 3))


def _vec3(v) -> np.ndarray:
    arr = np.array(v, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"expected a 3-vector, got shape {arr.shape}")
    return arr


class IntegrationBase:
    """Pre-integrated IMU motion with its Jacobian and covariance."""

    def __init__(self, acc_0, gyr_0, linearized_ba, linearized_bg, noise: ImuNoise, gravity):
        self.acc_0 = _vec3(acc_0)
        self.gyr_0 = _vec3(gyr_0)
        self.acc_1 = self.acc_0.copy()
        self.gyr_1 = self.gyr_0.copy()
        self.linearized_acc = self.acc_0.copy()
        self.linearized_gyr = self.gyr_0.copy()
        self.linearized_ba = _vec3(linearized_ba)
        self.linearized_bg = _vec3(linearized_bg)
        self.gravity = _vec3(gravity)
        self.noise = _noise_matrix(noise)
        self.dt = 0.0
        self.jacobian = np.eye(15)
        self.covariance = np.zeros((15, 15))
        self.sum_dt = 0.0
        self.delta_p = np.zeros(3)
        self.delta_q = _IDENTITY_Q.copy()
        self.delta_v = np.zeros(3)
        self.dt_buf: list[float] = []
        self.acc_buf: list[np.ndarray] = []
        self.gyr_buf: list[np.ndarray] = []

    def push_back(self, dt, acc, gyr) -> None:
        """Store a measurement and integrate it."""
        acc = _vec3(acc)
        gyr = _vec3(gyr)
        self.dt_buf.append(float(dt))
        self.acc_buf.append(acc)
        self.gyr_buf.append(gyr)
        self.propagate(dt, acc, gyr)

    def repropagate(self, linearized_ba, linearized_bg) -> None:
        """Re-integrate all stored measurements around new biases."""
        self.sum_dt = 0.0
        self.acc_0 = self.linearized_acc.copy()
        self.gyr_0 = self.linearized_gyr.copy()
        self.delta_p = np.zeros(3)
        self.delta_q = _IDENTITY_Q.copy()
        self.delta_v = np.zeros(3)
        self.linearized_ba = _vec3(linearized_ba)
        self.linearized_bg = _vec3(linearized_bg)
        self.jacobian = np.eye(15)
        self.covariance = np.zeros((15, 15))
        for dt, acc, gyr in zip(self.dt_buf, self.acc_buf, self.gyr_buf):
            self.propagate(dt, acc, gyr)

    def propagate(self, dt, acc_1, gyr_1) -> None:
        """Integrate one measurement, updating deltas, Jacobian and covariance."""
        dt = float(dt)
        acc_1 = _vec3(acc_1)
        gyr_1 = _vec3(gyr_1)
        self.dt = dt
        self.acc_1 = acc_1
        self.gyr_1 = gyr_1
        p, q, v = self._mid_point_integration(dt, self.acc_0, self.gyr_0, acc_1, gyr_1)
        self.delta_p = p
        self.delta_q = quat_normalize(q)
        self.delta_v = v
        self.sum_dt += dt
        self.acc_0 = acc_1
        self.gyr_0 = gyr_1

    def _mid_point_integration(self, dt, acc_0, gyr_0, acc_1, gyr_1):
        ba, bg = self.linearized_ba, self.linearized_bg
        dq = self.delta_q
        un_acc_0 = quat_rotate(dq, acc_0 - ba)
        un_gyr = 0.5 * (gyr_0 + gyr_1) - bg
        result_q = quat_multiply(dq, delta_q(un_gyr * dt))
        un_acc_1 = quat_rotate(result_q, acc_1 - ba)
        un_acc = 0.5 * (un_acc_0 + un_acc_1)
        result_p = self.delta_p + self.delta_v * dt + 0.5 * un_acc * dt * dt
        result_v = self.delta_v + un_acc * dt

        eye = np.eye(3)
        r_w_x = skew_symmetric(un_gyr)
        r_a_0_x = skew_symmetric(acc_0 - ba)
        r_a_1_x = skew_symmetric(acc_1 - ba)
        rot_0 = quat_to_matrix(dq)
        rot_1 = quat_to_matrix(result_q)
        damp = eye - r_w_x * dt

        f = np.zeros((15, 15))
        f[0:3, 0:3] = eye
        f[0:3, 3:6] = (
            -0.25 * rot_0 @ r_a_0_x * dt * dt
            - 0.25 * rot_1 @ r_a_1_x @ damp * dt * dt
        )
        f[0:3, 6:9] = eye * dt
        f[0:3, 9:12] = -0.25 * (rot_0 + rot_1) * dt * dt
        f[0:3, 12:15] = -0.25 * rot_1 @ r_a_1_x * dt * dt * -dt
        f[3:6, 3:6] = damp
        f[3:6, 12:15] = -1.0 * eye * dt
        f[6:9, 3:6] = -0.5 * rot_0 @ r_a_0_x * dt - 0.5 * rot_1 @ r_a_1_x @ damp * dt
        f[6:9, 6:9] = eye
        f[6:9, 9:12] = -0.5 * (rot_0 + rot_1) * dt
        f[6:9, 12:15] = -0.5 * rot_1 @ r_a_1_x * dt * -dt
        f[9:12, 9:12] = eye
        f[12:15, 12:15] = eye

        g = np.zeros((15, 18))
        g[0:3, 0:3] = 0.25 * rot_0 * dt * dt
        g[0:3, 3:6] = 0.25 * -rot_1 @ r_a_1_x * dt * dt * 0.5 * dt
        g[0:3, 6:9] = 0.25 * rot_1 * dt * dt
        g[0:3, 9:12] = g[0:3, 3:6]
        g[3:6, 3:6] = 0.5 * eye * dt
        g[3:6, 9:12] = 0.5 * eye * dt
        g[6:9, 0:3] = 0.5 * rot_0 * dt
        g[6:9, 3:6] = 0.5 * -rot_1 @ r_a_1_x * dt * 0.5 * dt
        g[6:9, 6:9] = 0.5 * rot_1 * dt
        g[6:9, 9:12] = g[6:9, 3:6]
        g[9:12, 12:15] = eye * dt
        g[12:15, 15:18] = eye * dt

        self.jacobian = f @ self.jacobian
        self.covariance = f @ self.covariance @ f.T + g @ self.noise @ g.T
        return result_p, result_q, result_v

    def evaluate(self, pi, qi, vi, bai, bgi, pj, qj, vj, baj, bgj) -> np.ndarray:
        """15-D residual between two states and the pre-integrated motion."""
        pi, vi, bai, bgi = map(_vec3, (pi, vi, bai, bgi))
        pj, vj, baj, bgj = map(_vec3, (pj, vj, baj, bgj))
        qi = np.asarray(qi, dtype=float)
        qj = np.asarray(qj, dtype=float)
        jac = self.jacobian
        dp_dba = jac[O_P:O_P + 3, O_BA:O_BA + 3]
        dp_dbg = jac[O_P:O_P + 3, O_BG:O_BG + 3]
        dq_dbg = jac[O_R:O_R + 3, O_BG:O_BG + 3]
        dv_dba = jac[O_V:O_V + 3, O_BA:O_BA + 3]
        dv_dbg = jac[O_V:O_V + 3, O_BG:O_BG + 3]

        dba = bai - self.linearized_ba
        dbg = bgi - self.linearized_bg
        corrected_q = quat_multiply(self.delta_q, delta_q(dq_dbg @ dbg))
        corrected_v = self.delta_v + dv_dba @ dba + dv_dbg @ dbg
        corrected_p = self.delta_p + dp_dba @ dba + dp_dbg @ dbg

        qi_inv = quat_inverse(qi)
        t = self.sum_dt
        g = self.gravity
        residuals = np.empty(15)
        residuals[O_P:O_P + 3] = (
            quat_rotate(qi_inv, 0.5 * g * t * t + pj - pi - vi * t) - corrected_p
        )
        rot_err = quat_multiply(quat_inverse(corrected_q), quat_multiply(qi_inv, qj))
        residuals[O_R:O_R + 3] = 2.0 * rot_err[1:]
        residuals[O_V:O_V + 3] = quat_rotate(qi_inv, g * t + vj - vi) - corrected_v
        residuals[O_BA:O_BA + 3] = baj - bai
        residuals[O_BG:O_BG + 3] = bgj - bgi
        return residuals