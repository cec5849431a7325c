"""
Rotation and ray geometry helpers.

Conventions used throughout the package:
- quaternions are Hamilton, scalar first: q = (w, x, y, z)
- a pose (R, t) maps world points into the camera / rig frame: X = R p + t
- a ray is (origin v, unit direction f) in the camera / rig frame
"""

from __future__ import annotations

import numpy as np

# Index pairs (j, k) of the quadratic monomials q_j q_k, in the order used by
# the 10-vector s(q) = [w², x², y², z², wx, wy, wz, xy, xz, yz].
MONOMIAL_PAIRS: tuple[tuple[int, int], ...] = (
    (0, 0),
    (1, 1),
    (2, 2),
    (3, 3),
    (0, 1),
    (0, 2),
    (0, 3),
    (1, 2),
    (1, 3),
    (2, 3),
)


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    n = np.linalg.norm(q, axis=-1, keepdims=True)
    if np.any(n < 1e-15):
        raise ValueError("cannot normalize a zero quaternion")
    return q / n


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    """(...,4) scalar-first quaternions -> (...,3,3) rotation matrices."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    q = np.asarray(q, dtype=np.float64)
    xyzw = np.concatenate([q[..., 1:], q[..., :1]], axis=-1)
    mats = R.from_quat(xyzw.reshape(-1, 4)).as_matrix()
    return mats.reshape(q.shape[:-1] + (3, 3))


def matrix_to_quaternion(rot: np.ndarray) -> np.ndarray:
    """(...,3,3) rotation matrices -> (...,4) scalar-first quaternions with w >= 0."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    rot = np.asarray(rot, dtype=np.float64)
    xyzw = R.from_matrix(rot.reshape(-1, 3, 3)).as_quat()
    q = np.concatenate([xyzw[:, 3:], xyzw[:, :3]], axis=-1)
    q = np.where(q[:, :1] < 0.0, -q, q)
    return q.reshape(rot.shape[:-2] + (4,))


def quaternion_monomials(q: np.ndarray) -> np.ndarray:
    """
    Quadratic monomials s(q) of (...,4) quaternions, shape (...,10).

    For a unit quaternion, sum(s[..., :4]) == 1.
    """
    q = np.asarray(q, dtype=np.float64)
    return np.stack([q[..., j] * q[..., k] for j, k in MONOMIAL_PAIRS], axis=-1)


def quaternion_distance(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """1 - |<q1, q2>| for unit quaternions (0 means same rotation)."""
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)
    return 1.0 - np.abs(np.sum(q1 * q2, axis=-1))


def rotation_error_deg(R_est: np.ndarray, R_gt: np.ndarray) -> float:
    from scipy.spatial.transform import Rotation as R  # type: ignore

    R_est = np.asarray(R_est, dtype=np.float64).reshape(3, 3)
    R_gt = np.asarray(R_gt, dtype=np.float64).reshape(3, 3)
    delta = R.from_matrix(R_gt).inv() * R.from_matrix(R_est)
    return float(np.degrees(delta.magnitude()))


def point_to_ray_residuals(
    R_mat: np.ndarray,
    t: np.ndarray,
    ray_origins: np.ndarray,
    ray_directions: np.ndarray,
    world_points: np.ndarray,
) -> np.ndarray:
    """
    Residuals (N,3) of the posed points against their rays: (I - f f^T)(R p + t - v).

    The norm of each row is the orthogonal distance of the point to the (infinite) line.
    """
    R_mat = np.asarray(R_mat, dtype=np.float64).reshape(3, 3)
    t = np.asarray(t, dtype=np.float64).reshape(1, 3)
    v = np.asarray(ray_origins, dtype=np.float64).reshape(-1, 3)
    f = np.asarray(ray_directions, dtype=np.float64).reshape(-1, 3)
    p = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
    if not (v.shape[0] == f.shape[0] == p.shape[0]):
        raise ValueError("ray_origins, ray_directions and world_points must have the same length")

    d = (R_mat @ p.T).T + t - v
    proj = np.sum(d * f, axis=-1, keepdims=True) * f
    return d - proj
