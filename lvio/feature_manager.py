"""Bookkeeping of tracked features across the frames of the sliding window.

An image is a mapping from feature id to a list of ``(camera_id, measurement)``
pairs. Each measurement is an 8-vector
``(x, y, z, u, v, velocity_x, velocity_y, depth)``. Here ``(x, y, z)`` is the
normalised camera point, ``(u, v)`` the pixel position, and ``depth`` the
lidar depth, or a non-positive value when none is known.
"""

from __future__ import annotations

import logging
import math
from dataclasses import InitVar, dataclass, field

import numpy as np

logger = logging.getLogger(__name__)

_MIN_TRACKED_FOR_PARALLAX = 20


def _vec(v, size: int, name: str) -> np.ndarray:
    arr = np.array(v, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have {size} components, got shape {arr.shape}")
    return arr


@dataclass
class FeaturePerFrame:
    """One observation of a feature in one frame."""

    point: np.ndarray
    uv: np.ndarray
    velocity: np.ndarray
    depth: float
    cur_td: float

    @classmethod
    def from_measurement(cls, measurement, td):
        """Build an observation from an 8-vector measurement and the current time offset."""
        m = _vec(measurement, 8, "measurement")
        return cls(
            point=m[0:3].copy(),
            uv=m[3:5].copy(),
            velocity=m[5:7].copy(),
            depth=float(m[7]),
            cur_td=float(td),
        )


@dataclass
class FeaturePerId:
    """A feature and all its observations, starting at ``start_frame``."""

    feature_id: int
    start_frame: int
    measured_depth: InitVar[float] = -1.0
    feature_per_frame: list[FeaturePerFrame] = field(default_factory=list)
    used_num: int = 0
    is_outlier: bool = False
    estimated_depth: float = field(init=False, default=-1.0)
    lidar_depth_flag: bool = field(init=False, default=False)
    solve_flag: int = 0  # 0 not solved, 1 solved, 2 failed

    def __post_init__(self, measured_depth: float) -> None:
        if measured_depth > 0:
            self.estimated_depth = float(measured_depth)
            self.lidar_depth_flag = True
        else:
            self.estimated_depth = -1.0
            self.lidar_depth_flag = False

    def end_frame(self):
        """Index of the last frame that observes this feature."""
        return self.start_frame + len(self.feature_per_frame) - 1


class FeatureManager:
    """Features tracked in the sliding window and their depths.

    ``rs`` is the list of body rotations of the window; it is kept by
    reference so later changes by the owner are seen here.
    """

    def __init__(self, rs, window_size, min_parallax, init_depth):
        self.rs = rs
        self.window_size = int(window_size)
        self.min_parallax = float(min_parallax)
        self.init_depth = float(init_depth)
        self.ric = [np.eye(3)]
        self.feature: list[FeaturePerId] = []
        self.last_track_num = 0

    def _is_used(self, it: FeaturePerId) -> bool:
        it.used_num = len(it.feature_per_frame)
        return it.used_num >= 2 and it.start_frame < self.window_size - 2

    def _used_features(self):
        return (it for it in self.feature if self._is_used(it))

    def set_ric(self, ric):
        """Set the camera-to-body rotations."""
        self.ric = [np.array(r, dtype=float) for r in ric]

    def clear_state(self):
        """Forget every feature."""
        self.feature.clear()

    def get_feature_count(self):
        """Number of features with enough observations to be optimised."""
        return sum(1 for _ in self._used_features())

    def add_feature_check_parallax(self, frame_count, image, td):
        """Add an image's observations; return True if the second-newest frame is a keyframe."""
        self.last_track_num = 0
        for feature_id, observations in sorted(image.items()):
            if not observations:
                raise ValueError(f"feature {feature_id} has no observation")
            f_per_fra = FeaturePerFrame.from_measurement(observations[0][1], td)
            existing = next((f for f in self.feature if f.feature_id == feature_id), None)
            if existing is None:
                new = FeaturePerId(feature_id, frame_count, f_per_fra.depth)
                new.feature_per_frame.append(f_per_fra)
                self.feature.append(new)
            else:
                existing.feature_per_frame.append(f_per_fra)
                self.last_track_num += 1
                if f_per_fra.depth > 0 and not existing.lidar_depth_flag:
                    existing.estimated_depth = f_per_fra.depth
                    existing.lidar_depth_flag = True
                    existing.feature_per_frame[0].depth = f_per_fra.depth

        if frame_count < 2 or self.last_track_num < _MIN_TRACKED_FOR_PARALLAX:
            return True

        parallax_sum = 0.0
        parallax_num = 0
        for it in self.feature:
            if it.start_frame <= frame_count - 2 and it.end_frame() >= frame_count - 1:
                parallax_sum += self._compensated_parallax2(it, frame_count)
                parallax_num += 1
        if parallax_num == 0:
            return True
        logger.debug("parallax_sum: %f, parallax_num: %d", parallax_sum, parallax_num)
        return parallax_sum / parallax_num >= self.min_parallax

    @staticmethod
    def _compensated_parallax2(it: FeaturePerId, frame_count: int) -> float:
        frame_i = it.feature_per_frame[frame_count - 2 - it.start_frame]
        frame_j = it.feature_per_frame[frame_count - 1 - it.start_frame]
        p_i = frame_i.point
        p_j = frame_j.point
        du = p_i[0] / p_i[2] - p_j[0]
        dv = p_i[1] / p_i[2] - p_j[1]
        return max(0.0, math.sqrt(du * du + dv * dv))

    def get_corresponding(self, frame_count_l, frame_count_r):
        """Pairs of points of features seen in both frames."""
        corres = []
        for it in self.feature:
            if it.start_frame <= frame_count_l and it.end_frame() >= frame_count_r:
                a = it.feature_per_frame[frame_count_l - it.start_frame].point.copy()
                b = it.feature_per_frame[frame_count_r - it.start_frame].point.copy()
                corres.append((a, b))
        return corres

    def _check_length(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float).reshape(-1)
        count = self.get_feature_count()
        if len(x) < count:
            raise ValueError(f"depth vector has {len(x)} entries, {count} needed")
        return x

    def set_depth(self, x):
        """Set depths from a vector of inverse depths, flagging negative ones as failures."""
        x = self._check_length(x)
        for idx, it in enumerate(list(self._used_features())):
            it.estimated_depth = 1.0 / x[idx]
            it.solve_flag = 2 if it.estimated_depth < 0 else 1

    def remove_failures(self):
        """Drop features whose depth estimate failed."""
        self.feature = [it for it in self.feature if it.solve_flag != 2]

    def clear_depth(self, x):
        """Set depths from inverse depths and forget that they came from the lidar."""
        x = self._check_length(x)
        for idx, it in enumerate(list(self._used_features())):
            it.estimated_depth = 1.0 / x[idx]
            it.lidar_depth_flag = False

    def get_depth_vector(self):
        """Inverse depths of the used features; unknown depths use the initial depth."""
        return np.array(
            [
                1.0 / it.estimated_depth if it.estimated_depth > 0 else 1.0 / self.init_depth
                for it in self._used_features()
            ],
            dtype=float,
        )

    def triangulate(self, ps, tic, ric):
        """Triangulate the features that have no positive depth yet."""
        tic0 = _vec(tic[0], 3, "tic")
        ric0 = np.asarray(ric[0], dtype=float)
        for it in self._used_features():
            if it.estimated_depth > 0:
                continue
            imu_i = it.start_frame
            t0 = np.asarray(ps[imu_i], dtype=float) + self.rs[imu_i] @ tic0
            r0 = self.rs[imu_i] @ ric0
            rows = []
            for offset, obs in enumerate(it.feature_per_frame):
                imu_j = imu_i + offset
                t1 = np.asarray(ps[imu_j], dtype=float) + self.rs[imu_j] @ tic0
                r1 = self.rs[imu_j] @ ric0
                t = r0.T @ (t1 - t0)
                r = r0.T @ r1
                p = np.hstack([r.T, (-r.T @ t).reshape(3, 1)])
                f = obs.point / np.linalg.norm(obs.point)
                rows.append(f[0] * p[2] - f[2] * p[0])
                rows.append(f[1] * p[2] - f[2] * p[1])
            svd_v = np.linalg.svd(np.array(rows))[2][-1]
            if svd_v[3] == 0.0:
                it.estimated_depth = self.init_depth
                continue
            it.estimated_depth = float(svd_v[2] / svd_v[3])
            if it.estimated_depth < 0:
                it.estimated_depth = self.init_depth

    def remove_back_shift_depth(self, marg_r, marg_p, new_r, new_p):
        """Drop the oldest frame, moving depths into the new first observing frame."""
        marg_r = np.asarray(marg_r, dtype=float)
        marg_p = _vec(marg_p, 3, "marg_p")
        new_r = np.asarray(new_r, dtype=float)
        new_p = _vec(new_p, 3, "new_p")
        kept = []
        for it in self.feature:
            if it.start_frame != 0:
                it.start_frame -= 1
                kept.append(it)
                continue
            first = it.feature_per_frame[0]
            uv_i = first.point
            depth = -1.0
            if first.depth > 0:
                depth = first.depth
            elif it.estimated_depth > 0:
                depth = it.estimated_depth
            del it.feature_per_frame[0]
            if len(it.feature_per_frame) < 2:
                continue
            pts_i = uv_i * depth
            w_pts_i = marg_r @ pts_i + marg_p
            pts_j = new_r.T @ (w_pts_i - new_p)
            dep_j = float(pts_j[2])
            if it.feature_per_frame[0].depth > 0:
                it.estimated_depth = it.feature_per_frame[0].depth
                it.lidar_depth_flag = True
            elif dep_j > 0:
                it.estimated_depth = dep_j
                it.lidar_depth_flag = False
            else:
                it.estimated_depth = self.init_depth
                it.lidar_depth_flag = False
            kept.append(it)
        self.feature = kept

    def remove_back(self):
        """Drop the oldest frame without touching depths."""
        kept = []
        for it in self.feature:
            if it.start_frame != 0:
                it.start_frame -= 1
            else:
                del it.feature_per_frame[0]
                if not it.feature_per_frame:
                    continue
            kept.append(it)
        self.feature = kept

    def remove_front(self, frame_count):
        """Drop the second-newest frame."""
        kept = []
        for it in self.feature:
            if it.start_frame == frame_count:
                it.start_frame -= 1
            else:
                j = self.window_size - 1 - it.start_frame
                if it.end_frame() >= frame_count - 1:
                    del it.feature_per_frame[j]
                    if not it.feature_per_frame:
                        continue
            kept.append(it)
        self.feature = kept