"""Visual reprojection residuals between two keyframes.

Parameter blocks follow the solver layout: two IMU poses and the
camera-to-IMU extrinsic pose as 7-vectors ``(px, py, pz, qx, qy, qz, qw)``,
then the inverse depth of the feature in its first observing frame. The
time-offset variant takes one more block holding the camera/IMU clock offset.
Jacobians are returned as 2x7 matrices for pose blocks, whose last column is
zero because the optimiser works in the 6-D tangent space, and 2x1 for scalars.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .rotation import quat_inverse, quat_rotate, quat_to_matrix, skew_symmetric


def _pose(block) -> tuple[np.ndarray, np.ndarray]:
    b = np.asarray(block, dtype=float)
    if b.shape != (7,):
        raise ValueError(f"pose block must have 7 values, got shape {b.shape}")
    return b[:3], np.array([b[6], b[3], b[4], b[5]])


def _scalar(block, name: str) -> float:
    b = np.asarray(block, dtype=float).reshape(-1)
    if b.shape != (1,):
        raise ValueError(f"{name} block must hold one value, got {b.size}")
    return float(b[0])


def _vec(v, size: int, name: str) -> np.ndarray:
    arr = np.array(v, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have {size} components, got shape {arr.shape}")
    return arr


def _matrix2(m) -> np.ndarray:
    arr = np.array(m, dtype=float)
    if arr.shape != (2, 2):
        raise ValueError(f"sqrt_info must be 2x2, got shape {arr.shape}")
    return arr


@dataclass
class _Projection:
    residual: np.ndarray
    jacobians: list[np.ndarray] | None
    chain: np.ndarray | None
    inv_dep: float


def _reproject(parameters, pts_i, pts_j, sqrt_info, compute_jacobians) -> _Projection:
    pi, qi = _pose(parameters[0])
    pj, qj = _pose(parameters[1])
    tic, qic = _pose(parameters[2])
    inv_dep = _scalar(parameters[3], "inverse depth")
    if inv_dep == 0.0:
        raise ValueError("inverse depth must be non-zero")

    pts_camera_i = pts_i / inv_dep
    pts_imu_i = quat_rotate(qic, pts_camera_i) + tic
    pts_w = quat_rotate(qi, pts_imu_i) + pi
    pts_imu_j = quat_rotate(quat_inverse(qj), pts_w - pj)
    pts_camera_j = quat_rotate(quat_inverse(qic), pts_imu_j - tic)
    dep_j = pts_camera_j[2]
    residual = sqrt_info @ (pts_camera_j[:2] / dep_j - pts_j[:2])
    if not compute_jacobians:
        return _Projection(residual, None, None, inv_dep)

    ri = quat_to_matrix(qi)
    rj = quat_to_matrix(qj)
    ric = quat_to_matrix(qic)
    reduce = sqrt_info @ np.array(
        [
            [1.0 / dep_j, 0.0, -pts_camera_j[0] / (dep_j * dep_j)],
            [0.0, 1.0 / dep_j, -pts_camera_j[1] / (dep_j * dep_j)],
        ]
    )

    jac_pose_i = np.zeros((2, 7))
    jaco_i = np.hstack(
        [ric.T @ rj.T, ric.T @ rj.T @ ri @ -skew_symmetric(pts_imu_i)]
    )
    jac_pose_i[:, :6] = reduce @ jaco_i

    jac_pose_j = np.zeros((2, 7))
    jaco_j = np.hstack([ric.T @ -rj.T, ric.T @ skew_symmetric(pts_imu_j)])
    jac_pose_j[:, :6] = reduce @ jaco_j

    jac_ex = np.zeros((2, 7))
    tmp_r = ric.T @ rj.T @ ri @ ric
    jaco_ex = np.hstack(
        [
            ric.T @ (rj.T @ ri - np.eye(3)),
            -tmp_r @ skew_symmetric(pts_camera_i)
            + skew_symmetric(tmp_r @ pts_camera_i)
            + skew_symmetric(ric.T @ (rj.T @ (ri @ tic + pi - pj) - tic)),
        ]
    )
    jac_ex[:, :6] = reduce @ jaco_ex

    chain = reduce @ tmp_r
    jac_feature = (chain @ pts_i * -1.0 / (inv_dep * inv_dep)).reshape(2, 1)
    return _Projection(
        residual, [jac_pose_i, jac_pose_j, jac_ex, jac_feature], chain, inv_dep
    )


class ProjectionFactor:
    """Reprojection error of one feature seen in frames i and j."""

    num_residuals = 2
    parameter_block_sizes = (7, 7, 7, 1)

    def __init__(self, pts_i, pts_j, sqrt_info):
        self.pts_i = _vec(pts_i, 3, "pts_i")
        self.pts_j = _vec(pts_j, 3, "pts_j")
        self.sqrt_info = _matrix2(sqrt_info)

    def evaluate(self, parameters, compute_jacobians=True):
        """Return ``(residuals, jacobians)``; jacobians is ``None`` when not requested."""
        if len(parameters) != 4:
            raise ValueError("projection factor takes four parameter blocks")
        proj = _reproject(
            parameters, self.pts_i, self.pts_j, self.sqrt_info, compute_jacobians
        )
        return proj.residual, proj.jacobians


class ProjectionTdFactor:
    """Reprojection error that also estimates the camera/IMU time offset.

    Feature positions are shifted along their image-plane velocity by the
    time offset and, for rolling-shutter cameras, by the row readout delay.
    """

    num_residuals = 2
    parameter_block_sizes = (7, 7, 7, 1, 1)

    def __init__(
        self, pts_i, pts_j, velocity_i, velocity_j, td_i, td_j, row_i, row_j, sqrt_info, row, tr
    ):
        self.pts_i = _vec(pts_i, 3, "pts_i")
        self.pts_j = _vec(pts_j, 3, "pts_j")
        vi = _vec(velocity_i, 2, "velocity_i")
        vj = _vec(velocity_j, 2, "velocity_j")
        self.velocity_i = np.array([vi[0], vi[1], 0.0])
        self.velocity_j = np.array([vj[0], vj[1], 0.0])
        self.td_i = float(td_i)
        self.td_j = float(td_j)
        self.row = int(row)
        if self.row <= 0:
            raise ValueError("image row count must be positive")
        self.tr = float(tr)
        half = self.row // 2
        self.row_i = float(row_i) - half
        self.row_j = float(row_j) - half
        self.sqrt_info = _matrix2(sqrt_info)

    def evaluate(self, parameters, compute_jacobians=True):
        """Return ``(residuals, jacobians)``; jacobians is ``None`` when not requested."""
        if len(parameters) != 5:
            raise ValueError("time-offset projection factor takes five parameter blocks")
        td = _scalar(parameters[4], "time offset")
        readout = self.tr / self.row
        pts_i_td = self.pts_i - (td - self.td_i + readout * self.row_i) * self.velocity_i
        pts_j_td = self.pts_j - (td - self.td_j + readout * self.row_j) * self.velocity_j
        proj = _reproject(
            parameters[:4], pts_i_td, pts_j_td, self.sqrt_info, compute_jacobians
        )
        if not compute_jacobians:
            return proj.residual, None
        jac_td = (
            proj.chain @ self.velocity_i / proj.inv_dep * -1.0
            + self.sqrt_info @ self.velocity_j[:2]
        ).reshape(2, 1)
        return proj.residual, [*proj.jacobians, jac_td]