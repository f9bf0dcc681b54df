"""Online calibration of the camera-to-IMU rotation from rotational motion."""

from __future__ import annotations

import logging
import math

import numpy as np

from .epipolar import find_fundamental_mat, triangulate_points
from .rotation import (
    matrix_to_quat,
    quat_inverse,
    quat_multiply,
    quat_to_matrix,
    skew_symmetric,
)

logger = logging.getLogger(__name__)

_MIN_CORRESPONDENCES = 9
_HUBER_DEGREES = 5.0
_MIN_SINGULAR = 0.25
_W = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])


def _angular_distance(a: np.ndarray, b: np.ndarray) -> float:
    d = quat_multiply(quat_inverse(a), b)
    return 2.0 * math.atan2(float(np.linalg.norm(d[1:])), abs(float(d[0])))


def _left(q: np.ndarray) -> np.ndarray:
    w, v = q[0], q[1:]
    m = np.empty((4, 4))
    m[:3, :3] = w * np.eye(3) + skew_symmetric(v)
    m[:3, 3] = v
    m[3, :3] = -v
    m[3, 3] = w
    return m


def _right(q: np.ndarray) -> np.ndarray:
    w, v = q[0], q[1:]
    m = np.empty((4, 4))
    m[:3, :3] = w * np.eye(3) - skew_symmetric(v)
    m[:3, 3] = v
    m[3, :3] = -v
    m[3, 3] = w
    return m


def _decompose_e(e: np.ndarray):
    u, _, vt = np.linalg.svd(e)
    return u @ _W @ vt, u @ _W.T @ vt, u[:, 2].copy(), -u[:, 2]


def _test_triangulation(ll: np.ndarray, rr: np.ndarray, r: np.ndarray, t: np.ndarray) -> float:
    p0 = np.eye(3, 4)
    p1 = np.hstack([r, t.reshape(3, 1)])
    cloud = triangulate_points(p0, p1, ll, rr)
    with np.errstate(divide="ignore", invalid="ignore"):
        pts = cloud / cloud[3]
        front = ((p0 @ pts)[2] > 0) & ((p1 @ pts)[2] > 0)
    ratio = float(front.sum()) / cloud.shape[1]
    logger.debug("MotionEstimator: %f", ratio)
    return ratio


class InitialExRotation:
    """Estimates the camera-to-IMU rotation from paired camera and IMU rotations."""

    def __init__(self, window_size):
        self.window_size = int(window_size)
        self.frame_count = 0
        self.rc = [np.eye(3)]
        self.rimu = [np.eye(3)]
        self.rc_g = [np.eye(3)]
        self.ric = np.eye(3)

    def calibrate(self, corres, delta_q_imu):
        """Add one frame pair; return the rotation once it is well observed, else ``None``.

        ``corres`` holds pairs of normalised 3-D points in the previous and the
        current frame; ``delta_q_imu`` is the IMU rotation between them.
        """
        q_imu = np.asarray(delta_q_imu, dtype=float)
        if q_imu.shape != (4,):
            raise ValueError(f"IMU rotation must be a quaternion, got shape {q_imu.shape}")
        self.frame_count += 1
        self.rc.append(self._solve_relative_r(list(corres)))
        r_imu = quat_to_matrix(q_imu)
        self.rimu.append(r_imu)
        self.rc_g.append(np.linalg.inv(self.ric) @ r_imu @ self.ric)

        blocks = []
        for k, (rc, rc_g, rimu) in enumerate(
            zip(self.rc[1:], self.rc_g[1:], self.rimu[1:]), start=1
        ):
            qc = matrix_to_quat(rc)
            angular = math.degrees(_angular_distance(qc, matrix_to_quat(rc_g)))
            logger.debug("%d %f", k, angular)
            huber = _HUBER_DEGREES / angular if angular > _HUBER_DEGREES else 1.0
            blocks.append(huber * (_left(qc) - _right(matrix_to_quat(rimu))))

        _, singular, vt = np.linalg.svd(np.vstack(blocks))
        x = vt[3]
        estimated = np.array([x[3], x[0], x[1], x[2]])
        self.ric = quat_to_matrix(estimated).T
        if self.frame_count >= self.window_size and singular[2] > _MIN_SINGULAR:
            return self.ric.copy()
        return None

    @staticmethod
    def _solve_relative_r(corres) -> np.ndarray:
        if len(corres) < _MIN_CORRESPONDENCES:
            return np.eye(3)
        ll = np.array([[a[0], a[1]] for a, _ in corres], dtype=float)
        rr = np.array([[b[0], b[1]] for _, b in corres], dtype=float)
        e, _ = find_fundamental_mat(ll, rr, 3.0, 0.99)
        r1, r2, t1, t2 = _decompose_e(e)
        if np.linalg.det(r1) + 1.0 < 1e-9:
            r1, r2, t1, t2 = _decompose_e(-e)
        ratio1 = max(_test_triangulation(ll, rr, r1, t1), _test_triangulation(ll, rr, r1, t2))
        ratio2 = max(_test_triangulation(ll, rr, r2, t1), _test_triangulation(ll, rr, r2, t2))
        best = r1 if ratio1 > ratio2 else r2
        return best.T.copy()