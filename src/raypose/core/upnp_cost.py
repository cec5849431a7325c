"""
Quadratic cost of the generalized absolute pose problem over quaternion monomials.

Each correspondence asks the posed world point to lie on its ray:

  (f f^T - I)(R p + t - v) = 0

With R p = Phi(p) s(q) (s = the 10 quadratic monomials of q) and the translation
eliminated in closed form (t = G s - J), the sum of squared point-to-ray
distances becomes

  cost(q) = s^T A s + 2 b^T s + gamma.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from raypose.core.geometry import normalize_quaternion, quaternion_monomials
from raypose.errors import DegenerateGeometryError, InvalidInputError


@dataclass(frozen=True)
class UpnpCostParameters:
    A: np.ndarray  # (10,10), symmetric PSD
    b: np.ndarray  # (10,)
    gamma: float
    G: np.ndarray  # (3,10), translation = G s - J
    J: np.ndarray  # (3,)


def _as_points(x: np.ndarray, name: str) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 2 or x.shape[1] != 3:
        raise InvalidInputError(f"{name} must have shape (N,3)")
    return x


def _check_same_length(**arrays: np.ndarray) -> int:
    lengths = {name: int(a.shape[0]) for name, a in arrays.items()}
    if len(set(lengths.values())) != 1:
        raise InvalidInputError(f"size mismatch: {lengths}")
    return next(iter(lengths.values()))


def compute_h_matrix(ray_directions: np.ndarray, *, singular_eps: float = 1e-10) -> tuple[np.ndarray, np.ndarray]:
    """
    H = (N I - sum_i f_i f_i^T)^-1, plus the per-ray outer products f_i f_i^T (N,3,3).

    Raises DegenerateGeometryError when the matrix to invert is (near) singular,
    which happens when all ray directions are parallel.
    """
    f = _as_points(ray_directions, "ray_directions")
    n = int(f.shape[0])
    if n == 0:
        raise InvalidInputError("ray_directions is empty")

    outer_products = f[:, :, None] * f[:, None, :]
    h_inverse = n * np.eye(3, dtype=np.float64) - outer_products.sum(axis=0)

    # Eigenvalues of h_inverse lie in [0, N]; normalize so the test is scale-free.
    det = float(np.linalg.det(h_inverse))
    if not np.isfinite(det) or det / float(n) ** 3 <= singular_eps:
        raise DegenerateGeometryError(f"ray directions are degenerate (normalized det={det / float(n) ** 3:.3e})")

    h_matrix = np.linalg.inv(h_inverse)
    h_matrix = 0.5 * (h_matrix + h_matrix.T)
    return h_matrix, outer_products


def left_multiply_matrix(points: np.ndarray) -> np.ndarray:
    """
    Phi(p): (...,3) points -> (...,3,10) such that Phi(p) @ s(q) == R(q) @ p.

    Columns follow s(q) = [w², x², y², z², wx, wy, wz, xy, xz, yz].
    """
    p = np.asarray(points, dtype=np.float64)
    x = p[..., 0]
    y = p[..., 1]
    z = p[..., 2]
    zero = np.zeros_like(x)
    row0 = [x, x, -x, -x, zero, 2.0 * z, -2.0 * y, 2.0 * y, 2.0 * z, zero]
    row1 = [y, -y, y, -y, -2.0 * z, zero, 2.0 * x, 2.0 * x, zero, 2.0 * z]
    row2 = [z, -z, -z, z, 2.0 * y, -2.0 * x, zero, zero, 2.0 * x, 2.0 * y]
    return np.stack([np.stack(row0, axis=-1), np.stack(row1, axis=-1), np.stack(row2, axis=-1)], axis=-2)


def compute_helper_matrices(
    world_points: np.ndarray,
    ray_origins: np.ndarray,
    outer_products: np.ndarray,
    h_matrix: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    G = sum_i V_i Phi(p_i) (3,10) and J = sum_i V_i v_i (3,), with V_i = H (f_i f_i^T - I).
    """
    p = _as_points(world_points, "world_points")
    v = _as_points(ray_origins, "ray_origins")
    outer_products = np.asarray(outer_products, dtype=np.float64).reshape(-1, 3, 3)
    _check_same_length(world_points=p, ray_origins=v, outer_products=outer_products)
    h_matrix = np.asarray(h_matrix, dtype=np.float64).reshape(3, 3)

    v_mats = h_matrix[None, :, :] @ (outer_products - np.eye(3)[None, :, :])  # (N,3,3)
    J = (v_mats @ v[:, :, None])[..., 0].sum(axis=0)
    G = (v_mats @ left_multiply_matrix(p)).sum(axis=0)
    return G, J


def cost_contributions(
    world_points: np.ndarray,
    ray_origins: np.ndarray,
    outer_products: np.ndarray,
    G: np.ndarray,
    J: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Per-correspondence residual maps: the point-to-ray residual of correspondence i
    is M_i s + n_i, with

      M_i = (f_i f_i^T - I)(Phi(p_i) + G)   (N,3,10)
      n_i = -(f_i f_i^T - I)(v_i + J)       (N,3)
    """
    p = _as_points(world_points, "world_points")
    v = _as_points(ray_origins, "ray_origins")
    outer_products = np.asarray(outer_products, dtype=np.float64).reshape(-1, 3, 3)
    _check_same_length(world_points=p, ray_origins=v, outer_products=outer_products)
    G = np.asarray(G, dtype=np.float64).reshape(3, 10)
    J = np.asarray(J, dtype=np.float64).reshape(3)

    proj = outer_products - np.eye(3)[None, :, :]
    M = proj @ (left_multiply_matrix(p) + G[None, :, :])
    n = -(proj @ (v + J[None, :])[:, :, None])[..., 0]
    return M, n


def compute_cost_matrices(
    world_points: np.ndarray,
    ray_origins: np.ndarray,
    outer_products: np.ndarray,
    G: np.ndarray,
    J: np.ndarray,
) -> UpnpCostParameters:
    """
    A = sum M_i^T M_i, b = sum M_i^T n_i, gamma = sum ||n_i||².
    """
    M, n = cost_contributions(world_points, ray_origins, outer_products, G, J)
    A = np.einsum("nki,nkj->ij", M, M)
    # Mirror so that A is exactly symmetric regardless of summation order.
    A = 0.5 * (A + A.T)
    b = np.einsum("nki,nk->i", M, n)
    gamma = float(np.sum(n * n))
    return UpnpCostParameters(
        A=A,
        b=b,
        gamma=gamma,
        G=np.asarray(G, dtype=np.float64).reshape(3, 10).copy(),
        J=np.asarray(J, dtype=np.float64).reshape(3).copy(),
    )


def compute_cost_parameters(
    ray_origins: np.ndarray,
    ray_directions: np.ndarray,
    world_points: np.ndarray,
    *,
    singular_eps: float = 1e-10,
) -> UpnpCostParameters:
    """Runs the H, helper and cost stages on one set of correspondences."""
    h_matrix, outer_products = compute_h_matrix(ray_directions, singular_eps=singular_eps)
    G, J = compute_helper_matrices(world_points, ray_origins, outer_products, h_matrix)
    return compute_cost_matrices(world_points, ray_origins, outer_products, G, J)


def evaluate_cost(params: UpnpCostParameters, q: np.ndarray) -> np.ndarray | float:
    """
    s^T A s + 2 b^T s + gamma for (...,4) quaternions (normalized internally).

    This is the sum of squared point-to-ray distances at the optimal translation.
    """
    q = np.asarray(q, dtype=np.float64)
    s = quaternion_monomials(normalize_quaternion(q))
    cost = np.einsum("...i,ij,...j->...", s, params.A, s) + 2.0 * (s @ params.b) + params.gamma
    if q.ndim == 1:
        return float(cost)
    return cost


def translation_from_quaternion(params: UpnpCostParameters, q: np.ndarray) -> np.ndarray:
    """Back-substitution t = G s(q) - J for (...,4) unit quaternions."""
    s = quaternion_monomials(normalize_quaternion(q))
    return s @ params.G.T - params.J
