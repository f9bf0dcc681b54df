"""Visual-inertial alignment for initialisation, and lidar odometry registration.

Frames of the initial window are ``ImageFrame`` objects held in a mapping
keyed by timestamp and processed in timestamp order. Every frame after the
first carries the IMU pre-integration from its predecessor. That object must
expose ``sum_dt``, ``delta_p``, ``delta_v``, ``delta_q`` as ``(w, x, y, z)``,
a 15x15 ``jacobian`` and ``repropagate(linearized_ba, linearized_bg)``.
Quaternions are ``(w, x, y, z)`` numpy arrays.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from .rotation import (
    matrix_to_quat,
    quat_inverse,
    quat_multiply,
    quat_normalize,
    quat_rotate,
    quat_to_matrix,
)

logger = logging.getLogger(__name__)

_O_R = 3
_O_BG = 12
_LIDAR_INFO_SIZE = 18
_ODOM_MAX_AGE = 0.05
_SCALE_FACTOR = 100.0
_SYSTEM_WEIGHT = 1000.0
_GRAVITY_TOLERANCE = 1.0
_REFINE_ITERATIONS = 4

# Rotation by pi about z, built from roll-pitch-yaw (0, 0, pi).
_TF_WORLD_Q_ODOM = np.array([math.cos(math.pi / 2), 0.0, 0.0, math.sin(math.pi / 2)])
# The same rotation given directly as (w, x, y, z) = (0, 0, 0, 1).
_VINS_WORLD_Q_ODOM = np.array([0.0, 0.0, 0.0, 1.0])


def _vec(v, size: int, name: str) -> np.ndarray:
    arr = np.array(v, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have {size} components, got shape {arr.shape}")
    return arr


def _round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


def _solve(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(a, b)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(a, b, rcond=None)[0]


@dataclass
class ImageFrame:
    """A camera frame with its features, pose and the lidar odometry guess."""

    points: dict = field(default_factory=dict)
    t: float = 0.0
    pre_integration: object = None
    is_key_frame: bool = False
    reset_id: int = -1
    T: np.ndarray = field(default_factory=lambda: np.zeros(3))
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    V: np.ndarray = field(default_factory=lambda: np.zeros(3))
    Ba: np.ndarray = field(default_factory=lambda: np.zeros(3))
    Bg: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gravity: float = 9.805

    @classmethod
    def from_lidar_info(cls, points, lidar_initialization_info, t):
        """Build a frame from the 18-value lidar initialisation record.

        The record holds reset id, position (3), orientation ``(x, y, z, w)``,
        velocity (3), accelerometer bias (3), gyroscope bias (3) and gravity.
        """
        info = [float(v) for v in lidar_initialization_info]
        if len(info) < _LIDAR_INFO_SIZE:
            raise ValueError(
                f"lidar initialisation info needs {_LIDAR_INFO_SIZE} values, got {len(info)}"
            )
        q = quat_normalize(np.array([info[7], info[4], info[5], info[6]]))
        return cls(
            points=dict(points),
            t=float(t),
            reset_id=_round_half_away(info[0]),
            T=np.array(info[1:4]),
            R=quat_to_matrix(q),
            V=np.array(info[8:11]),
            Ba=np.array(info[11:14]),
            Bg=np.array(info[14:17]),
            gravity=info[17],
        )


@dataclass
class Odometry:
    """A lidar odometry message; ``orientation`` is ``(w, x, y, z)``."""

    stamp: float
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))
    linear_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    covariance: np.ndarray = field(default_factory=lambda: np.zeros(36))


class OdometryRegister:
    """Converts lidar odometry into the visual-inertial world frame."""

    def __init__(self, imu_hz):
        imu_hz = float(imu_hz)
        if imu_hz <= 0.0:
            raise ValueError("IMU rate must be positive")
        self.imu_hz = imu_hz
        self.vins_world_q_odom = _VINS_WORLD_Q_ODOM.copy()
        self.vins_world_tf_odom = _TF_WORLD_Q_ODOM.copy()

    def get_odometry(self, odom_queue, img_time, lidar_rot_imu, lidar_trans_imu):
        """Return the 18-value initialisation record for an image time.

        Messages older than the image by more than 0.05 s are removed from the
        front of ``odom_queue`` (a ``collections.deque``). All values are -1
        when no message lies close enough to the image time.
        """
        channel = [-1.0] * _LIDAR_INFO_SIZE
        img_time = float(img_time)
        if not isinstance(odom_queue, deque):
            raise TypeError("odometry queue must be a collections.deque")
        while odom_queue and odom_queue[0].stamp < img_time - _ODOM_MAX_AGE:
            odom_queue.popleft()
        if not odom_queue:
            return channel

        imu_step = 1.0 / self.imu_hz
        cur = next((o for o in odom_queue if o.stamp >= img_time - imu_step), odom_queue[-1])
        if abs(cur.stamp - img_time) > _ODOM_MAX_AGE:
            logger.info("time stamp difference still too large")
            return channel

        rot = np.asarray(lidar_rot_imu, dtype=float)
        if rot.shape != (3, 3):
            raise ValueError(f"extrinsic rotation must be 3x3, got shape {rot.shape}")
        trans = _vec(lidar_trans_imu, 3, "extrinsic translation")

        q_odom = quat_normalize(_vec(cur.orientation, 4, "orientation"))
        q_ext = quat_normalize(matrix_to_quat(rot))
        q_imu = quat_normalize(quat_multiply(q_odom, q_ext))
        p_imu = _vec(cur.position, 3, "position") + quat_rotate(q_odom, trans)
        world_q_imu = quat_multiply(self.vins_world_tf_odom, q_imu)

        p = quat_rotate(self.vins_world_q_odom, p_imu)
        v = quat_rotate(self.vins_world_q_odom, _vec(cur.linear_velocity, 3, "velocity"))
        cov = np.asarray(cur.covariance, dtype=float).reshape(-1)
        if cov.size < 8:
            raise ValueError("covariance needs at least 8 values")

        w, x, y, z = world_q_imu
        return [
            float(cov[0]),
            *map(float, p),
            float(x), float(y), float(z), float(w),
            *map(float, v),
            *map(float, cov[1:8]),
        ]


def _ordered(all_image_frame) -> list[ImageFrame]:
    frames = [all_image_frame[k] for k in sorted(all_image_frame)]
    if len(frames) < 2:
        raise ValueError("at least two frames are needed for alignment")
    for frame in frames[1:]:
        if frame.pre_integration is None:
            raise ValueError(f"frame at {frame.t} has no pre-integration")
    return frames


def solve_gyroscope_bias(all_image_frame, bgs):
    """Estimate the gyroscope bias correction, add it to ``bgs`` and repropagate.

    ``bgs`` is a list of bias vectors updated in place. Returns the correction.
    """
    frames = _ordered(all_image_frame)
    a = np.zeros((3, 3))
    b = np.zeros(3)
    for fi, fj in zip(frames, frames[1:]):
        pre = fj.pre_integration
        q_ij = matrix_to_quat(fi.R.T @ fj.R)
        tmp_a = np.asarray(pre.jacobian, dtype=float)[_O_R:_O_R + 3, _O_BG:_O_BG + 3]
        tmp_b = 2.0 * quat_multiply(quat_inverse(pre.delta_q), q_ij)[1:]
        a += tmp_a.T @ tmp_a
        b += tmp_a.T @ tmp_b
    delta_bg = _solve(a, b)
    logger.info("gyroscope bias initial calibration %s", delta_bg)

    bgs[:] = [np.asarray(bg, dtype=float) + delta_bg for bg in bgs]
    if not bgs:
        raise ValueError("no gyroscope bias to update")
    for frame in frames[1:]:
        frame.pre_integration.repropagate(np.zeros(3), bgs[0])
    return delta_bg


def tangent_basis(g0):
    """Two orthonormal vectors spanning the plane perpendicular to ``g0``, as 3x2."""
    a = _vec(g0, 3, "gravity")
    norm = np.linalg.norm(a)
    if norm == 0.0:
        raise ValueError("gravity direction must be non-zero")
    a = a / norm
    tmp = np.array([0.0, 0.0, 1.0])
    if np.array_equal(a, tmp):
        tmp = np.array([1.0, 0.0, 0.0])
    b = tmp - a * (a @ tmp)
    b = b / np.linalg.norm(b)
    c = np.cross(a, b)
    return np.column_stack([b, c])


def refine_gravity(all_image_frame, g, tic, gravity_norm):
    """Refine gravity on the sphere of radius ``gravity_norm``; returns ``(g, x)``."""
    frames = _ordered(all_image_frame)
    tic = _vec(tic, 3, "tic")
    g0 = _vec(g, 3, "gravity")
    g0 = g0 / np.linalg.norm(g0) * gravity_norm
    n_state = len(frames) * 3 + 2 + 1

    a = np.zeros((n_state, n_state))
    b = np.zeros(n_state)
    x = np.zeros(n_state)
    for _ in range(_REFINE_ITERATIONS):
        lxly = tangent_basis(g0)
        for i, (fi, fj) in enumerate(zip(frames, frames[1:])):
            pre = fj.pre_integration
            dt = float(pre.sum_dt)
            ri_t = fi.R.T
            tmp_a = np.zeros((6, 9))
            tmp_b = np.zeros(6)
            tmp_a[0:3, 0:3] = -dt * np.eye(3)
            tmp_a[0:3, 6:8] = ri_t * dt * dt / 2 @ lxly
            tmp_a[0:3, 8] = ri_t @ (fj.T - fi.T) / _SCALE_FACTOR
            tmp_b[0:3] = (
                pre.delta_p + ri_t @ fj.R @ tic - tic - ri_t * dt * dt / 2 @ g0
            )
            tmp_a[3:6, 0:3] = -np.eye(3)
            tmp_a[3:6, 3:6] = ri_t @ fj.R
            tmp_a[3:6, 6:8] = ri_t * dt @ lxly
            tmp_b[3:6] = pre.delta_v - ri_t * dt @ g0

            r_a = tmp_a.T @ tmp_a
            r_b = tmp_a.T @ tmp_b
            s = i * 3
            a[s:s + 6, s:s + 6] += r_a[:6, :6]
            b[s:s + 6] += r_b[:6]
            a[-3:, -3:] += r_a[-3:, -3:]
            b[-3:] += r_b[-3:]
            a[s:s + 6, -3:] += r_a[:6, -3:]
            a[-3:, s:s + 6] += r_a[-3:, :6]
        a = a * _SYSTEM_WEIGHT
        b = b * _SYSTEM_WEIGHT
        x = _solve(a, b)
        dg = x[n_state - 3:n_state - 1]
        g0 = g0 + lxly @ dg
        g0 = g0 / np.linalg.norm(g0) * gravity_norm
    return g0, x


def linear_alignment(all_image_frame, tic, gravity_norm):
    """Solve velocities, gravity and scale; returns ``(g, x)`` or ``None`` on failure.

    ``x`` holds one body velocity per frame, then two gravity tangent
    coordinates, then the metric scale.
    """
    frames = _ordered(all_image_frame)
    tic = _vec(tic, 3, "tic")
    n_state = len(frames) * 3 + 3 + 1
    a = np.zeros((n_state, n_state))
    b = np.zeros(n_state)
    for i, (fi, fj) in enumerate(zip(frames, frames[1:])):
        pre = fj.pre_integration
        dt = float(pre.sum_dt)
        ri_t = fi.R.T
        tmp_a = np.zeros((6, 10))
        tmp_b = np.zeros(6)
        tmp_a[0:3, 0:3] = -dt * np.eye(3)
        tmp_a[0:3, 6:9] = ri_t * dt * dt / 2
        tmp_a[0:3, 9] = ri_t @ (fj.T - fi.T) / _SCALE_FACTOR
        tmp_b[0:3] = pre.delta_p + ri_t @ fj.R @ tic - tic
        tmp_a[3:6, 0:3] = -np.eye(3)
        tmp_a[3:6, 3:6] = ri_t @ fj.R
        tmp_a[3:6, 6:9] = ri_t * dt
        tmp_b[3:6] = pre.delta_v

        r_a = tmp_a.T @ tmp_a
        r_b = tmp_a.T @ tmp_b
        s = i * 3
        a[s:s + 6, s:s + 6] += r_a[:6, :6]
        b[s:s + 6] += r_b[:6]
        a[-4:, -4:] += r_a[-4:, -4:]
        b[-4:] += r_b[-4:]
        a[s:s + 6, -4:] += r_a[:6, -4:]
        a[-4:, s:s + 6] += r_a[-4:, :6]
    a = a * _SYSTEM_WEIGHT
    b = b * _SYSTEM_WEIGHT
    x = _solve(a, b)
    scale = x[-1] / _SCALE_FACTOR
    logger.info("estimated scale: %f", scale)
    g = x[n_state - 4:n_state - 1].copy()
    logger.info("result g %f %s", np.linalg.norm(g), g)
    if abs(np.linalg.norm(g) - gravity_norm) > _GRAVITY_TOLERANCE or scale < 0:
        return None

    g, x = refine_gravity(all_image_frame, g, tic, gravity_norm)
    x = x.copy()
    x[-1] = x[-1] / _SCALE_FACTOR
    logger.info("refine %f %s", np.linalg.norm(g), g)
    if x[-1] < 0.0:
        return None
    return g, x


def visual_imu_alignment(all_image_frame, bgs, tic, gravity_norm):
    """Calibrate the gyroscope bias, then align; returns ``(g, x)`` or ``None``."""
    solve_gyroscope_bias(all_image_frame, bgs)
    return linear_alignment(all_image_frame, tic, gravity_norm)