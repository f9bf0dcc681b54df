"""Quaternion and rotation helpers plus the pose manifold used by the optimiser.

Quaternions are numpy arrays ordered ``(w, x, y, z)``. Pose parameter blocks
are 7-vectors ``(px, py, pz, qx, qy, qz, qw)``, the layout the solver uses.
"""

from __future__ import annotations

import numpy as np

_IDENTITY = np.array([1.0, 0.0, 0.0, 0.0])


def _as_quat(q) -> np.ndarray:
    arr = np.asarray(q, dtype=float)
    if arr.shape != (4,):
        raise ValueError(f"quaternion must have 4 components, got shape {arr.shape}")
    return arr


def _as_vec3(v) -> np.ndarray:
    arr = np.asarray(v, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"vector must have 3 components, got shape {arr.shape}")
    return arr


def quat_multiply(a, b) -> np.ndarray:
    """Hamilton product ``a * b``."""
    aw, ax, ay, az = _as_quat(a)
    bw, bx, by, bz = _as_quat(b)
    return np.array(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ]
    )


def quat_inverse(q) -> np.ndarray:
    """Inverse quaternion; the zero quaternion maps to zero."""
    q = _as_quat(q)
    n2 = float(q @ q)
    if n2 <= 0.0:
        return np.zeros(4)
    return np.array([q[0], -q[1], -q[2], -q[3]]) / n2


def quat_normalize(q) -> np.ndarray:
    """Unit quaternion in the direction of ``q``."""
    q = _as_quat(q)
    norm = float(np.linalg.norm(q))
    if norm == 0.0:
        raise ValueError("cannot normalise a zero quaternion")
    return q / norm


def quat_to_matrix(q) -> np.ndarray:
    """Rotation matrix of a (assumed unit) quaternion."""
    w, x, y, z = _as_quat(q)
    tx, ty, tz = 2.0 * x, 2.0 * y, 2.0 * z
    twx, twy, twz = tx * w, ty * w, tz * w
    txx, txy, txz = tx * x, ty * x, tz * x
    tyy, tyz, tzz = ty * y, tz * y, tz * z
    return np.array(
        [
            [1.0 - (tyy + tzz), txy - twz, txz + twy],
            [txy + twz, 1.0 - (txx + tzz), tyz - twx],
            [txz - twy, tyz + twx, 1.0 - (txx + tyy)],
        ]
    )


def matrix_to_quat(r) -> np.ndarray:
    """Quaternion of a rotation matrix."""
    m = np.asarray(r, dtype=float)
    if m.shape != (3, 3):
        raise ValueError(f"rotation matrix must be 3x3, got shape {m.shape}")
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = np.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return np.array(
            [w, (m[2, 1] - m[1, 2]) * t, (m[0, 2] - m[2, 0]) * t, (m[1, 0] - m[0, 1]) * t]
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = np.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    vec = np.zeros(3)
    vec[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    vec[j] = (m[j, i] + m[i, j]) * t
    vec[k] = (m[k, i] + m[i, k]) * t
    return np.array([w, vec[0], vec[1], vec[2]])


def quat_rotate(q, v) -> np.ndarray:
    """Rotate vector ``v`` by quaternion ``q``."""
    q = _as_quat(q)
    v = _as_vec3(v)
    vec = q[1:]
    uv = 2.0 * np.cross(vec, v)
    return v + q[0] * uv + np.cross(vec, uv)


def delta_q(theta) -> np.ndarray:
    """First-order quaternion increment for a small rotation vector (not normalised)."""
    half = _as_vec3(theta) / 2.0
    return np.array([1.0, half[0], half[1], half[2]])


def skew_symmetric(v) -> np.ndarray:
    """Cross-product matrix of ``v``."""
    x, y, z = _as_vec3(v)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def quat_left(q) -> np.ndarray:
    """Matrix ``L(q)`` with ``L(q) @ p == q * p``."""
    q = _as_quat(q)
    w, vec = q[0], q[1:]
    out = np.empty((4, 4))
    out[0, 0] = w
    out[0, 1:] = -vec
    out[1:, 0] = vec
    out[1:, 1:] = w * np.eye(3) + skew_symmetric(vec)
    return out


def quat_right(q) -> np.ndarray:
    """Matrix ``R(q)`` with ``R(q) @ p == p * q``."""
    q = _as_quat(q)
    w, vec = q[0], q[1:]
    out = np.empty((4, 4))
    out[0, 0] = w
    out[0, 1:] = -vec
    out[1:, 0] = vec
    out[1:, 1:] = w * np.eye(3) - skew_symmetric(vec)
    return out


def positify(q) -> np.ndarray:
    """The representative of ``q`` with a non-negative scalar part."""
    q = _as_quat(q)
    return -q if q[0] < 0.0 else q.copy()


def _pose_quat(x: np.ndarray) -> np.ndarray:
    return np.array([x[6], x[3], x[4], x[5]])


class PoseLocalParameterization:
    """Manifold of a 7-D pose block with a 6-D tangent space."""

    global_size = 7
    local_size = 6

    def plus(self, x, delta) -> np.ndarray:
        """Apply a tangent increment ``(dp, dtheta)`` to a pose block."""
        x = np.asarray(x, dtype=float)
        delta = np.asarray(delta, dtype=float)
        if x.shape != (7,):
            raise ValueError(f"pose block must have 7 values, got shape {x.shape}")
        if delta.shape != (6,):
            raise ValueError(f"pose increment must have 6 values, got shape {delta.shape}")
        q = quat_normalize(quat_multiply(_pose_quat(x), delta_q(delta[3:])))
        out = np.empty(7)
        out[:3] = x[:3] + delta[:3]
        out[3:6] = q[1:]
        out[6] = q[0]
        return out

    def compute_jacobian(self, x) -> np.ndarray:
        """Jacobian of ``plus`` at zero increment, 7x6."""
        x = np.asarray(x, dtype=float)
        if x.shape != (7,):
            raise ValueError(f"pose block must have 7 values, got shape {x.shape}")
        jacobian = np.zeros((7, 6))
        jacobian[:6, :] = np.eye(6)
        return jacobian