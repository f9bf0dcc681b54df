"""IMU pre-integration residual with analytic Jacobians."""

from __future__ import annotations

import logging

import numpy as np

from .integration import O_BA, O_BG, O_P, O_R, O_V, IntegrationBase
from .rotation import (
    delta_q,
    quat_inverse,
    quat_left,
    quat_multiply,
    quat_right,
    quat_rotate,
    quat_to_matrix,
    skew_symmetric,
)

logger = logging.getLogger(__name__)

_UNSTABLE = 1e8


def _pose(block) -> tuple[np.ndarray, np.ndarray]:
    b = np.asarray(block, dtype=float)
    if b.shape != (7,):
        raise ValueError(f"pose block must have 7 values, got shape {b.shape}")
    return b[:3], np.array([b[6], b[3], b[4], b[5]])


def _speed_bias(block) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    b = np.asarray(block, dtype=float)
    if b.shape != (9,):
        raise ValueError(f"speed-bias block must have 9 values, got shape {b.shape}")
    return b[:3], b[3:6], b[6:9]


def _unstable(m: np.ndarray) -> bool:
    return bool(m.max() > _UNSTABLE or m.min() < -_UNSTABLE)


class ImuFactor:
    """Residual linking two poses and speed-bias blocks through one pre-integration.

    Parameter blocks: pose_i (7), speed_bias_i (9), pose_j (7), speed_bias_j (9).
    """

    num_residuals = 15
    parameter_block_sizes = (7, 9, 7, 9)

    def __init__(self, pre_integration: IntegrationBase):
        self.pre_integration = pre_integration

    def _sqrt_info(self) -> np.ndarray:
        try:
            information = np.linalg.inv(self.pre_integration.covariance)
            return np.linalg.cholesky(information).T
        except np.linalg.LinAlgError as exc:
            raise ValueError("pre-integration covariance is not positive definite") from exc

    def evaluate(self, parameters, compute_jacobians=True):
        """Return ``(residuals, jacobians)``; jacobians is ``None`` when not requested."""
        if len(parameters) != 4:
            raise ValueError("IMU factor takes four parameter blocks")
        pi, qi = _pose(parameters[0])
        vi, bai, bgi = _speed_bias(parameters[1])
        pj, qj = _pose(parameters[2])
        vj, baj, bgj = _speed_bias(parameters[3])

        pre = self.pre_integration
        sqrt_info = self._sqrt_info()
        residuals = sqrt_info @ pre.evaluate(pi, qi, vi, bai, bgi, pj, qj, vj, baj, bgj)
        if not compute_jacobians:
            return residuals, None

        sum_dt = pre.sum_dt
        g = pre.gravity
        jac = pre.jacobian
        dp_dba = jac[O_P:O_P + 3, O_BA:O_BA + 3]
        dp_dbg = jac[O_P:O_P + 3, O_BG:O_BG + 3]
        dq_dbg = jac[O_R:O_R + 3, O_BG:O_BG + 3]
        dv_dba = jac[O_V:O_V + 3, O_BA:O_BA + 3]
        dv_dbg = jac[O_V:O_V + 3, O_BG:O_BG + 3]
        if _unstable(jac):
            logger.warning("numerical unstable in preintegration")

        qi_inv = quat_inverse(qi)
        qj_inv = quat_inverse(qj)
        r_i_inv = quat_to_matrix(qi_inv)
        corrected_q = quat_multiply(
            pre.delta_q, delta_q(dq_dbg @ (bgi - pre.linearized_bg))
        )
        eye = np.eye(3)

        pose_i = np.zeros((15, 7))
        pose_i[O_P:O_P + 3, O_P:O_P + 3] = -r_i_inv
        pose_i[O_P:O_P + 3, O_R:O_R + 3] = skew_symmetric(
            quat_rotate(qi_inv, 0.5 * g * sum_dt * sum_dt + pj - pi - vi * sum_dt)
        )
        pose_i[O_R:O_R + 3, O_R:O_R + 3] = -(
            quat_left(quat_multiply(qj_inv, qi)) @ quat_right(corrected_q)
        )[1:, 1:]
        pose_i[O_V:O_V + 3, O_R:O_R + 3] = skew_symmetric(
            quat_rotate(qi_inv, g * sum_dt + vj - vi)
        )
        pose_i = sqrt_info @ pose_i
        if _unstable(pose_i):
            logger.warning("numerical unstable in preintegration")

        sb_i = np.zeros((15, 9))
        sb_i[O_P:O_P + 3, 0:3] = -r_i_inv * sum_dt
        sb_i[O_P:O_P + 3, 3:6] = -dp_dba
        sb_i[O_P:O_P + 3, 6:9] = -dp_dbg
        sb_i[O_R:O_R + 3, 6:9] = -quat_left(
            quat_multiply(quat_multiply(qj_inv, qi), pre.delta_q)
        )[1:, 1:] @ dq_dbg
        sb_i[O_V:O_V + 3, 0:3] = -r_i_inv
        sb_i[O_V:O_V + 3, 3:6] = -dv_dba
        sb_i[O_V:O_V + 3, 6:9] = -dv_dbg
        sb_i[O_BA:O_BA + 3, 3:6] = -eye
        sb_i[O_BG:O_BG + 3, 6:9] = -eye
        sb_i = sqrt_info @ sb_i

        pose_j = np.zeros((15, 7))
        pose_j[O_P:O_P + 3, O_P:O_P + 3] = r_i_inv
        pose_j[O_R:O_R + 3, O_R:O_R + 3] = quat_left(
            quat_multiply(quat_multiply(quat_inverse(corrected_q), qi_inv), qj)
        )[1:, 1:]
        pose_j = sqrt_info @ pose_j

        sb_j = np.zeros((15, 9))
        sb_j[O_V:O_V + 3, 0:3] = r_i_inv
        sb_j[O_BA:O_BA + 3, 3:6] = eye
        sb_j[O_BG:O_BG + 3, 6:9] = eye
        sb_j = sqrt_info @ sb_j

        return residuals, [pose_i, sb_i, pose_j, sb_j]