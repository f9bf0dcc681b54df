"""Two-view geometry: fundamental matrix estimation and relative pose recovery.

Image points are given as ``(N, 2)`` arrays. When they are already normalised
camera coordinates, the fundamental matrix found here is the essential matrix.
"""

from __future__ import annotations

import numpy as np

_DBL_MIN = np.finfo(float).tiny
_FLT_EPSILON = float(np.finfo(np.float32).eps)
_MAX_ITERS = 1000
_SAMPLE_SIZE = 8
_CHEIRALITY_DIST = 50.0


def _as_points(points, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{name} must be an (N, 2) array, got shape {arr.shape}")
    return arr


def _as_matrix(m, shape, name: str) -> np.ndarray:
    arr = np.asarray(m, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


def decompose_essential_mat(e):
    """Split an essential matrix into two candidate rotations and a unit translation."""
    e = _as_matrix(e, (3, 3), "essential matrix")
    u, _, vt = np.linalg.svd(e)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, 1.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    return u @ w @ vt, u @ w.T @ vt, u[:, 2].copy()


def triangulate_points(p0, p1, points1, points2):
    """Linear triangulation; returns homogeneous points as a 4xN array."""
    p0 = _as_matrix(p0, (3, 4), "first projection matrix")
    p1 = _as_matrix(p1, (3, 4), "second projection matrix")
    pts1 = _as_points(points1, "points1")
    pts2 = _as_points(points2, "points2")
    if len(pts1) != len(pts2):
        raise ValueError("point sets must have the same length")
    out = np.empty((4, len(pts1)))
    for k, (a, b) in enumerate(zip(pts1, pts2)):
        design = np.stack(
            [
                a[0] * p0[2] - p0[0],
                a[1] * p0[2] - p0[1],
                b[0] * p1[2] - p1[0],
                b[1] * p1[2] - p1[1],
            ]
        )
        out[:, k] = np.linalg.svd(design)[2][-1]
    return out


def _normalising_transform(pts: np.ndarray) -> np.ndarray | None:
    centre = pts.mean(axis=0)
    mean_dist = np.linalg.norm(pts - centre, axis=1).mean()
    if mean_dist < _DBL_MIN:
        return None
    scale = np.sqrt(2.0) / mean_dist
    return np.array(
        [[scale, 0.0, -scale * centre[0]], [0.0, scale, -scale * centre[1]], [0.0, 0.0, 1.0]]
    )


def _eight_point(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray | None:
    t1 = _normalising_transform(pts1)
    t2 = _normalising_transform(pts2)
    if t1 is None or t2 is None:
        return None
    ones = np.ones(len(pts1))
    h1 = np.column_stack([pts1, ones]) @ t1.T
    h2 = np.column_stack([pts2, ones]) @ t2.T
    design = np.column_stack(
        [
            h2[:, 0] * h1[:, 0], h2[:, 0] * h1[:, 1], h2[:, 0],
            h2[:, 1] * h1[:, 0], h2[:, 1] * h1[:, 1], h2[:, 1],
            h1[:, 0], h1[:, 1], ones,
        ]
    )
    f = np.linalg.svd(design)[2][-1].reshape(3, 3)
    u, s, vt = np.linalg.svd(f)
    s[2] = 0.0
    f = t2.T @ (u @ np.diag(s) @ vt) @ t1
    if abs(f[2, 2]) > _FLT_EPSILON:
        f = f / f[2, 2]
    return f


def _epipolar_error(f: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    ones = np.ones(len(pts1))
    h1 = np.column_stack([pts1, ones])
    h2 = np.column_stack([pts2, ones])
    line2 = h1 @ f.T
    line1 = h2 @ f
    with np.errstate(divide="ignore", invalid="ignore"):
        s2 = 1.0 / (line2[:, 0] ** 2 + line2[:, 1] ** 2)
        s1 = 1.0 / (line1[:, 0] ** 2 + line1[:, 1] ** 2)
        d2 = np.sum(h2 * line2, axis=1)
        d1 = np.sum(h1 * line1, axis=1)
        return np.maximum(d1 * d1 * s1, d2 * d2 * s2)


def _update_num_iters(confidence: float, outlier_ratio: float, max_iters: int) -> int:
    p = min(max(confidence, 0.0), 1.0)
    ep = min(max(outlier_ratio, 0.0), 1.0)
    num = max(1.0 - p, _DBL_MIN)
    denom = 1.0 - (1.0 - ep) ** _SAMPLE_SIZE
    if denom < _DBL_MIN:
        return 0
    num = np.log(num)
    denom = np.log(denom)
    if denom >= 0 or -num >= max_iters * (-denom):
        return max_iters
    return int(round(num / denom))


def find_fundamental_mat(points1, points2, threshold, confidence):
    """RANSAC estimate of the fundamental matrix; returns ``(F, inlier_mask)``."""
    pts1 = _as_points(points1, "points1")
    pts2 = _as_points(points2, "points2")
    if len(pts1) != len(pts2):
        raise ValueError("point sets must have the same length")
    n = len(pts1)
    if n < _SAMPLE_SIZE:
        raise ValueError(f"at least {_SAMPLE_SIZE} correspondences are needed, got {n}")
    if n == _SAMPLE_SIZE:
        f = _eight_point(pts1, pts2)
        if f is None:
            raise ValueError("degenerate point configuration")
        return f, np.ones(n, dtype=bool)

    rng = np.random.default_rng(0)
    thresh2 = float(threshold) ** 2
    best_f = None
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0
    niters = _MAX_ITERS
    done = 0
    while done < niters:
        done += 1
        sample = rng.choice(n, _SAMPLE_SIZE, replace=False)
        f = _eight_point(pts1[sample], pts2[sample])
        if f is None:
            continue
        mask = _epipolar_error(f, pts1, pts2) <= thresh2
        count = int(mask.sum())
        if count > best_count:
            best_f, best_mask, best_count = f, mask, count
            niters = _update_num_iters(confidence, (n - count) / n, niters)
    if best_f is None:
        raise ValueError("no fundamental matrix consistent with the points")
    if best_count >= _SAMPLE_SIZE:
        refined = _eight_point(pts1[best_mask], pts2[best_mask])
        if refined is not None:
            best_f = refined
    return best_f, best_mask


def _cheirality_mask(p0, p, pts1, pts2) -> np.ndarray:
    q = triangulate_points(p0, p, pts1.T.T, pts2.T.T)
    valid = q[2] * q[3] > 0
    with np.errstate(divide="ignore", invalid="ignore"):
        q = q / q[3]
        valid &= q[2] < _CHEIRALITY_DIST
        q = p @ q
        valid &= (q[2] > 0) & (q[2] < _CHEIRALITY_DIST)
    return valid


def recover_pose(e, points1, points2, camera_matrix, mask):
    """Pick the essential-matrix decomposition with most points in front of both cameras.

    Returns ``(inlier_count, R, t, mask)``; ``mask`` may be ``None`` or a
    per-point mask that restricts which points count.
    """
    e = _as_matrix(e, (3, 3), "essential matrix")
    pts1 = _as_points(points1, "points1").copy()
    pts2 = _as_points(points2, "points2").copy()
    if len(pts1) != len(pts2):
        raise ValueError("point sets must have the same length")
    k = _as_matrix(camera_matrix, (3, 3), "camera matrix")
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]
    for pts in (pts1, pts2):
        pts[:, 0] = (pts[:, 0] - cx) / fx
        pts[:, 1] = (pts[:, 1] - cy) / fy

    r1, r2, t = decompose_essential_mat(e)
    p0 = np.eye(3, 4)
    candidates = [(r1, t), (r2, t), (r1, -t), (r2, -t)]
    masks = [
        _cheirality_mask(p0, np.column_stack([r, tr]), pts1, pts2) for r, tr in candidates
    ]
    if mask is not None:
        given = np.asarray(mask).astype(bool).reshape(-1)
        if given.shape != (len(pts1),):
            raise ValueError("mask must have one entry per point")
        masks = [m & given for m in masks]

    goods = [int(m.sum()) for m in masks]
    best = int(np.argmax(goods))
    r, tr = candidates[best]
    return goods[best], r.copy(), tr.copy(), masks[best]


class MotionEstimator:
    """Relative rotation and translation between two frames from feature correspondences."""

    def solve_relative_rt(self, corres):
        """Return ``(rotation, translation)`` of the second frame in the first, or ``None``.

        ``corres`` is a sequence of pairs of normalised 3-D image points. At least
        15 pairs are needed and more than 12 must survive the cheirality check.
        """
        corres = list(corres)
        if len(corres) < 15:
            return None
        ll = np.array([[a[0], a[1]] for a, _ in corres], dtype=float)
        rr = np.array([[b[0], b[1]] for _, b in corres], dtype=float)
        try:
            e, mask = find_fundamental_mat(ll, rr, 0.3 / 460, 0.99)
        except ValueError:
            return None
        inlier_cnt, rot, trans, _ = recover_pose(e, ll, rr, np.eye(3), mask)
        if inlier_cnt <= 12:
            return None
        return rot.T, -rot.T @ trans