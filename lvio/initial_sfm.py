"""Vision-only structure from motion over the frames of the initial window.

Frame poses in a result are camera-to-reference rotations ``q`` as
``(w, x, y, z)`` quaternions and camera positions ``t``. Frame ``l`` defines
the reference, and the translation to the newest frame fixes the scale.
Observations are normalised image points ``(x, y)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from .rotation import (
    matrix_to_quat,
    quat_inverse,
    quat_multiply,
    quat_normalize,
    quat_rotate,
    quat_to_matrix,
)

logger = logging.getLogger(__name__)

_PNP_WARN_POINTS = 15
_PNP_MIN_POINTS = 10
_CONVERGED_COST = 5e-3
_MAX_EVALUATIONS = 200
_IDENTITY_Q = np.array([1.0, 0.0, 0.0, 0.0])


class SfmError(RuntimeError):
    """Structure from motion could not recover the window."""


def _vec(v, size: int, name: str) -> np.ndarray:
    arr = np.array(v, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have {size} components, got shape {arr.shape}")
    return arr


def _mat(m, shape, name: str) -> np.ndarray:
    arr = np.array(m, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


@dataclass
class SfmFeature:
    """A feature with its observations as ``(frame, point2d)`` pairs."""

    id: int
    observation: list = field(default_factory=list)
    state: bool = False
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    depth: float = 0.0

    def __post_init__(self) -> None:
        self.observation = [
            (int(frame), _vec(point, 2, "observation")) for frame, point in self.observation
        ]
        self.position = _vec(self.position, 3, "position")


@dataclass
class SfmResult:
    """Recovered frame poses and triangulated points keyed by feature id."""

    q: list
    t: list
    tracked_points: dict


def triangulate_point(pose0, pose1, point0, point1) -> np.ndarray:
    """Linear triangulation of one point seen through two 3x4 projection matrices."""
    pose0 = _mat(pose0, (3, 4), "pose0")
    pose1 = _mat(pose1, (3, 4), "pose1")
    point0 = _vec(point0, 2, "point0")
    point1 = _vec(point1, 2, "point1")
    design = np.stack(
        [
            point0[0] * pose0[2] - pose0[0],
            point0[1] * pose0[2] - pose0[1],
            point1[0] * pose1[2] - pose1[0],
            point1[1] * pose1[2] - pose1[1],
        ]
    )
    v = np.linalg.svd(design)[2][-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        return v[:3] / v[3]


def solve_pnp(points_3d, points_2d, r_initial, t_initial):
    """Refine a world-to-camera pose from an initial guess; returns ``(R, t)``."""
    pts3 = np.asarray(points_3d, dtype=float)
    pts2 = np.asarray(points_2d, dtype=float)
    if pts3.ndim != 2 or pts3.shape[1] != 3:
        raise ValueError(f"points_3d must be an (N, 3) array, got shape {pts3.shape}")
    if pts2.shape != (len(pts3), 2):
        raise ValueError("points_2d must be an (N, 2) array matching points_3d")
    if len(pts3) < 3:
        raise ValueError(f"at least 3 points are needed, got {len(pts3)}")
    r_initial = _mat(r_initial, (3, 3), "r_initial")
    t_initial = _vec(t_initial, 3, "t_initial")

    def residual(x):
        rot = Rotation.from_rotvec(x[:3]).as_matrix()
        p = pts3 @ rot.T + x[3:]
        return (p[:, :2] / p[:, 2:3] - pts2).ravel()

    x0 = np.concatenate([Rotation.from_matrix(r_initial).as_rotvec(), t_initial])
    with np.errstate(divide="ignore", invalid="ignore"):
        if not np.all(np.isfinite(residual(x0))):
            raise SfmError("initial pose projects points onto the camera plane")
        result = least_squares(residual, x0, method="lm")
    if not np.all(np.isfinite(result.x)):
        raise SfmError("pose estimation diverged")
    return Rotation.from_rotvec(result.x[:3]).as_matrix(), result.x[3:].copy()


def _pose_matrix(r: np.ndarray, t: np.ndarray) -> np.ndarray:
    return np.hstack([r, t.reshape(3, 1)])


class GlobalSfm:
    """Incremental triangulation and PnP followed by a full bundle adjustment."""

    def construct(self, frame_num, l, relative_r, relative_t, sfm_f):
        """Recover all frame poses and feature positions; raises ``SfmError`` on failure.

        ``relative_r`` and ``relative_t`` give the pose of the newest frame in
        frame ``l``. Features in ``sfm_f`` are updated in place.
        """
        frame_num = int(frame_num)
        l = int(l)
        if frame_num < 2:
            raise ValueError("at least two frames are needed")
        if not 0 <= l < frame_num - 1:
            raise ValueError(f"reference frame {l} must lie before the newest frame")
        relative_r = _mat(relative_r, (3, 3), "relative_r")
        relative_t = _vec(relative_t, 3, "relative_t")
        for feat in sfm_f:
            for frame, _ in feat.observation:
                if not 0 <= frame < frame_num:
                    raise ValueError(f"observation in frame {frame} outside the window")

        last = frame_num - 1
        q = [None] * frame_num
        t = [None] * frame_num
        q[l] = _IDENTITY_Q.copy()
        t[l] = np.zeros(3)
        q[last] = quat_multiply(q[l], quat_normalize(matrix_to_quat(relative_r)))
        t[last] = relative_t

        c_rot = [None] * frame_num
        c_trans = [None] * frame_num
        poses = [None] * frame_num

        def set_camera(i, r, tr):
            c_rot[i] = r
            c_trans[i] = tr
            poses[i] = _pose_matrix(r, tr)

        for i in (l, last):
            r = quat_to_matrix(quat_inverse(q[i]))
            set_camera(i, r, -(r @ t[i]))

        for i in range(l, last):
            if i > l:
                set_camera(i, *self._solve_frame_by_pnp(c_rot[i - 1], c_trans[i - 1], i, sfm_f))
            self._triangulate_two_frames(i, poses[i], last, poses[last], sfm_f)
        for i in range(l + 1, last):
            self._triangulate_two_frames(l, poses[l], i, poses[i], sfm_f)
        for i in range(l - 1, -1, -1):
            set_camera(i, *self._solve_frame_by_pnp(c_rot[i + 1], c_trans[i + 1], i, sfm_f))
            self._triangulate_two_frames(i, poses[i], l, poses[l], sfm_f)

        for feat in sfm_f:
            if feat.state or len(feat.observation) < 2:
                continue
            frame_0, point0 = feat.observation[0]
            frame_1, point1 = feat.observation[-1]
            feat.position = triangulate_point(poses[frame_0], poses[frame_1], point0, point1)
            feat.state = True

        rotvecs, trans = self._bundle_adjust(frame_num, l, c_rot, c_trans, sfm_f)
        quats = Rotation.from_rotvec(rotvecs).as_quat()
        for i in range(frame_num):
            x, y, z, w = quats[i]
            q[i] = quat_inverse(np.array([w, x, y, z]))
            t[i] = -quat_rotate(q[i], trans[i])
        tracked = {feat.id: feat.position.copy() for feat in sfm_f if feat.state}
        return SfmResult(q=q, t=t, tracked_points=tracked)

    @staticmethod
    def _solve_frame_by_pnp(r_initial, t_initial, i, sfm_f):
        pts_2, pts_3 = [], []
        for feat in sfm_f:
            if not feat.state:
                continue
            for frame, point in feat.observation:
                if frame == i:
                    pts_2.append(point)
                    pts_3.append(feat.position.copy())
                    break
        if len(pts_2) < _PNP_WARN_POINTS:
            logger.warning("unstable features tracking, please slowly move you device!")
            if len(pts_2) < _PNP_MIN_POINTS:
                raise SfmError(f"only {len(pts_2)} points to locate frame {i}")
        return solve_pnp(np.array(pts_3), np.array(pts_2), r_initial, t_initial)

    @staticmethod
    def _triangulate_two_frames(frame0, pose0, frame1, pose1, sfm_f) -> None:
        for feat in sfm_f:
            if feat.state:
                continue
            point0 = point1 = None
            for frame, point in feat.observation:
                if frame == frame0:
                    point0 = point
                if frame == frame1:
                    point1 = point
            if point0 is not None and point1 is not None:
                feat.position = triangulate_point(pose0, pose1, point0, point1)
                feat.state = True

    @staticmethod
    def _bundle_adjust(frame_num, l, c_rot, c_trans, sfm_f):
        last = frame_num - 1
        active = [feat for feat in sfm_f if feat.state]
        obs_frame, obs_point, obs_uv = [], [], []
        for idx, feat in enumerate(active):
            for frame, point in feat.observation:
                obs_frame.append(frame)
                obs_point.append(idx)
                obs_uv.append(point)

        rotvecs0 = Rotation.from_matrix(np.array(c_rot)).as_rotvec()
        trans0 = np.array(c_trans, dtype=float)
        if not obs_frame:
            return rotvecs0, trans0
        points0 = np.array([feat.position for feat in active])

        rot_free = [i for i in range(frame_num) if i != l]
        trans_free = [i for i in range(frame_num) if i not in (l, last)]
        rot_col = {f: 3 * k for k, f in enumerate(rot_free)}
        t_off = 3 * len(rot_free)
        trans_col = {f: t_off + 3 * k for k, f in enumerate(trans_free)}
        p_off = t_off + 3 * len(trans_free)
        n = p_off + 3 * len(active)

        frames = np.array(obs_frame)
        pts_idx = np.array(obs_point)
        uv = np.array(obs_uv)

        def unpack(x):
            rv = rotvecs0.copy()
            rv[rot_free] = x[:t_off].reshape(-1, 3)
            tr = trans0.copy()
            tr[trans_free] = x[t_off:p_off].reshape(-1, 3)
            return rv, tr, x[p_off:].reshape(-1, 3)

        def residual(x):
            rv, tr, pts = unpack(x)
            mats = Rotation.from_rotvec(rv).as_matrix()
            p = np.einsum("nij,nj->ni", mats[frames], pts[pts_idx]) + tr[frames]
            return (p[:, :2] / p[:, 2:3] - uv).ravel()

        x0 = np.concatenate(
            [rotvecs0[rot_free].ravel(), trans0[trans_free].ravel(), points0.ravel()]
        )
        sparsity = lil_matrix((2 * len(frames), n), dtype=int)
        for k, (f, p) in enumerate(zip(obs_frame, obs_point)):
            rows = slice(2 * k, 2 * k + 2)
            if f in rot_col:
                sparsity[rows, rot_col[f]:rot_col[f] + 3] = 1
            if f in trans_col:
                sparsity[rows, trans_col[f]:trans_col[f] + 3] = 1
            sparsity[rows, p_off + 3 * p:p_off + 3 * p + 3] = 1

        with np.errstate(divide="ignore", invalid="ignore"):
            if not np.all(np.isfinite(residual(x0))):
                raise SfmError("a triangulated point lies on a camera plane")
            result = least_squares(
                residual, x0, jac_sparsity=sparsity, method="trf", max_nfev=_MAX_EVALUATIONS
            )
        if result.status <= 0 and result.cost >= _CONVERGED_COST:
            raise SfmError("vision-only bundle adjustment did not converge")
        rv, tr, pts = unpack(result.x)
        for feat, pos in zip(active, pts):
            feat.position = pos.copy()
        return rv, tr