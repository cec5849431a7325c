"""
Stationary points of the UPnP cost on the unit quaternion sphere.

On |q| = 1 we have e^T s(q) = 1 with e = [1,1,1,1,0,...,0], so the inhomogeneous
cost s^T A s + 2 b^T s + gamma equals the quartic form

  F(q) = s(q)^T Q s(q),   Q = A + b e^T + e b^T + gamma e e^T   (PSD).

Its stationary points on the sphere solve the Lagrange system

  grad F(q) = kappa (q^T q) q,   kappa = 4 F(q) on |q| = 1,

four homogeneous cubics in q whose coefficients are affine in kappa. Their
Macaulay matrix at degree 9 (every degree-6 multiple of each equation, over the
220 monomials of degree 9) drops rank exactly at the admissible kappa, and its
null space there is spanned by the degree-9 monomial vectors of the roots. A
fixed random projection turns it into a square pencil, so every stationary
point comes out of one generalized eigenvalue problem. Real roots are polished
with scipy's least squares; only local minima are kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations_with_replacement

import numpy as np

from raypose.config import SolverConfig
from raypose.core.geometry import MONOMIAL_PAIRS, quaternion_monomials
from raypose.core.upnp_cost import UpnpCostParameters, translation_from_quaternion
from raypose.errors import NumericalFailureError

_NORM_SELECTOR = np.array([1.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0], dtype=np.float64)

# With ||Q||_2 = 1 and |q| = 1, 0 <= F <= |s(q)|^2 <= 1, hence 0 <= kappa <= 4.
_KAPPA_MAX = 4.0
_KAPPA_IMAG_TOL = 1e-5
_KAPPA_CLUSTER_TOL = 1e-5
# Roots are only starting points for the polish; these bounds reject complex
# roots and eigenvectors that are not monomial vectors.
_ROOT_IMAG_TOL = 1e-3
_ROOT_RANK1_TOL = 1e-3
_MACAULAY_DEGREE = 9
_PROJECTION_SEED = 20140906


def homogenized_cost_matrix(params: UpnpCostParameters) -> np.ndarray:
    e = _NORM_SELECTOR
    Q = params.A + np.outer(params.b, e) + np.outer(e, params.b) + params.gamma * np.outer(e, e)
    return 0.5 * (Q + Q.T)


def monomial_outer(s: np.ndarray) -> np.ndarray:
    """4x4 symmetric S with S[j,k] = s_(jk); equals q q^T when s = s(q)."""
    S = np.zeros((4, 4), dtype=np.float64)
    for idx, (j, k) in enumerate(MONOMIAL_PAIRS):
        S[j, k] = s[idx]
        S[k, j] = s[idx]
    return S


def _quadratic_form(w: np.ndarray) -> np.ndarray:
    """4x4 symmetric L(w) with q^T L(w) q == w^T s(q)."""
    L = np.zeros((4, 4), dtype=np.float64)
    for idx, (j, k) in enumerate(MONOMIAL_PAIRS):
        if j == k:
            L[j, j] = w[idx]
        else:
            L[j, k] = 0.5 * w[idx]
            L[k, j] = 0.5 * w[idx]
    return L


def _monomial_jacobian(q: np.ndarray) -> np.ndarray:
    """d s(q) / d q, shape (10,4)."""
    Js = np.zeros((10, 4), dtype=np.float64)
    for idx, (j, k) in enumerate(MONOMIAL_PAIRS):
        Js[idx, j] += q[k]
        Js[idx, k] += q[j]
    return Js


def monomial_residual(s: np.ndarray) -> float:
    """
    Relative violation of the monomial identities (s_jj s_kk = s_jk², ...).

    Zero iff the lifted 4x4 matrix is rank one, i.e. s is a multiple of s(q).
    """
    S = monomial_outer(np.asarray(s, dtype=np.float64).reshape(10))
    lam, U = np.linalg.eigh(S)
    top = int(np.argmax(np.abs(lam)))
    if abs(lam[top]) < 1e-300:
        return float("inf")
    rank1 = lam[top] * np.outer(U[:, top], U[:, top])
    return float(np.linalg.norm(S - rank1) / abs(lam[top]))


def _tangent_basis(q: np.ndarray) -> np.ndarray:
    # Householder QR always returns a full orthogonal factor; column 0 is +-q.
    basis, _ = np.linalg.qr(np.column_stack([q, np.eye(4, dtype=np.float64)[:, :3]]))
    return basis[:, 1:]


def _cost_derivatives(Q: np.ndarray, q: np.ndarray) -> tuple[float, np.ndarray, np.ndarray]:
    s = quaternion_monomials(q)
    Qs = Q @ s
    L = _quadratic_form(Qs)
    Js = _monomial_jacobian(q)
    F = float(s @ Qs)
    grad = 4.0 * (L @ q)
    hess = 2.0 * (Js.T @ Q @ Js) + 4.0 * L
    return F, grad, 0.5 * (hess + hess.T)


def _riemannian(Q: np.ndarray, q: np.ndarray) -> tuple[float, np.ndarray, np.ndarray]:
    F, grad, hess = _cost_derivatives(Q, q)
    B = _tangent_basis(q)
    g_t = B.T @ grad
    # Riemannian Hessian on the sphere: P H P - (q^T grad) I, with q^T grad = 4 F.
    h_t = B.T @ hess @ B - 4.0 * F * np.eye(3, dtype=np.float64)
    return F, g_t, 0.5 * (h_t + h_t.T)


def _monomial_exponents(degree: int) -> list[tuple[int, ...]]:
    out = []
    for combo in combinations_with_replacement(range(4), degree):
        exponent = [0, 0, 0, 0]
        for var in combo:
            exponent[var] += 1
        out.append(tuple(exponent))
    return out


def _add(a: tuple[int, ...], b: tuple[int, ...]) -> tuple[int, ...]:
    return tuple(x + y for x, y in zip(a, b))


def _unit(j: int, power: int = 1) -> tuple[int, ...]:
    exponent = [0, 0, 0, 0]
    exponent[j] = power
    return tuple(exponent)


@dataclass(frozen=True)
class _MacaulayLayout:
    """Index tables of the degree-9 Macaulay matrix; independent of the data."""

    quartic_index: np.ndarray  # (10,10) position of s_a s_b among the 35 quartic monomials
    gradient_map: np.ndarray  # (4,20,35) quartic coefficients -> cubic coefficients of dF/dq_i
    row_columns: np.ndarray  # (84,20) column of (degree-6 multiplier) * (cubic monomial)
    shift_columns: np.ndarray  # (4,165) column of q_j * (degree-8 monomial)
    sphere_matrix: np.ndarray  # (336,220) Macaulay matrix of (q^T q) q_i
    projection: np.ndarray  # (220,336)
    projected_sphere: np.ndarray  # projection @ sphere_matrix
    shift_weights: np.ndarray  # (2,4) random linear forms for the shift eigenproblem


def _macaulay_matrix(cubics: np.ndarray, row_columns: np.ndarray, n_columns: int) -> np.ndarray:
    """Rows m * f_i for every degree-6 multiplier m; `cubics` is (4,20)."""
    n_eq, n_terms = cubics.shape
    n_mult = row_columns.shape[0]
    M = np.zeros((n_eq * n_mult, n_columns), dtype=np.float64)
    shape = (n_eq, n_mult, n_terms)
    rows = np.broadcast_to(np.arange(n_eq * n_mult).reshape(n_eq, n_mult, 1), shape)
    cols = np.broadcast_to(row_columns[None, :, :], shape)
    M[rows, cols] = np.broadcast_to(cubics[:, None, :], shape)
    return M


_LAYOUT_CACHE: dict[int, _MacaulayLayout] = {}


def _macaulay_layout() -> _MacaulayLayout:
    layout = _LAYOUT_CACHE.get(_MACAULAY_DEGREE)
    if layout is None:
        layout = _build_macaulay_layout()
        _LAYOUT_CACHE[_MACAULAY_DEGREE] = layout
    return layout


def _build_macaulay_layout() -> _MacaulayLayout:
    cubic = _monomial_exponents(3)
    quartic = _monomial_exponents(4)
    multipliers = _monomial_exponents(_MACAULAY_DEGREE - 3)
    shifts = _monomial_exponents(_MACAULAY_DEGREE - 1)
    columns = _monomial_exponents(_MACAULAY_DEGREE)
    cubic_idx = {m: i for i, m in enumerate(cubic)}
    quartic_idx = {m: i for i, m in enumerate(quartic)}
    column_idx = {m: i for i, m in enumerate(columns)}

    pair_exponents = [_add(_unit(j), _unit(k)) for j, k in MONOMIAL_PAIRS]
    quartic_index = np.array(
        [[quartic_idx[_add(a, b)] for b in pair_exponents] for a in pair_exponents], dtype=np.intp
    )

    gradient_map = np.zeros((4, len(cubic), len(quartic)), dtype=np.float64)
    for c, alpha in enumerate(quartic):
        for i in range(4):
            if alpha[i] > 0:
                beta = list(alpha)
                beta[i] -= 1
                gradient_map[i, cubic_idx[tuple(beta)], c] = float(alpha[i])

    sphere = np.zeros((4, len(cubic)), dtype=np.float64)
    for i in range(4):
        for j in range(4):
            sphere[i, cubic_idx[_add(_unit(i), _unit(j, 2))]] += 1.0

    row_columns = np.array([[column_idx[_add(m, b)] for b in cubic] for m in multipliers], dtype=np.intp)
    shift_columns = np.array([[column_idx[_add(m, _unit(j))] for m in shifts] for j in range(4)], dtype=np.intp)
    sphere_matrix = _macaulay_matrix(sphere, row_columns, len(columns))

    rng = np.random.default_rng(_PROJECTION_SEED)
    n_rows = sphere_matrix.shape[0]
    projection = rng.normal(size=(len(columns), n_rows)) / np.sqrt(n_rows)
    shift_weights = rng.normal(size=(2, 4))
    return _MacaulayLayout(
        quartic_index=quartic_index,
        gradient_map=gradient_map,
        row_columns=row_columns,
        shift_columns=shift_columns,
        sphere_matrix=sphere_matrix,
        projection=projection,
        projected_sphere=projection @ sphere_matrix,
        shift_weights=shift_weights,
    )


def _gradient_cubics(Q: np.ndarray, layout: _MacaulayLayout) -> np.ndarray:
    """Coefficients (4,20) of dF/dq_i over the cubic monomials."""
    quartic = np.zeros((layout.gradient_map.shape[2],), dtype=np.float64)
    np.add.at(quartic, layout.quartic_index, Q)
    return layout.gradient_map @ quartic


def _null_space(M: np.ndarray, max_dim: int) -> np.ndarray:
    """Right null space of M, sized at the largest singular value gap."""
    _u, sv, Vh = np.linalg.svd(M, full_matrices=False)
    tail = sv[::-1][: max_dim + 1]
    floor = 1e-13 * sv[0]
    ratios = (tail[1:] + floor) / (tail[:-1] + floor)
    small = tail[:-1] < 1e-4 * sv[0]
    if not np.any(small):
        return Vh[-1:].conj().T
    dim = int(np.argmax(np.where(small, ratios, 0.0))) + 1
    return Vh[-dim:].conj().T


def _quaternion_from_root_vector(y: np.ndarray, layout: _MacaulayLayout) -> np.ndarray | None:
    # Y[m, j] = m(q) q_j over the degree-8 monomials m: rank one for a genuine root.
    Y = y[layout.shift_columns].T
    _u, sv, Vh = np.linalg.svd(Y, full_matrices=False)
    if not sv[0] > 0.0 or sv[1] > _ROOT_RANK1_TOL * sv[0]:
        return None
    q = Vh[0]
    k = int(np.argmax(np.abs(q)))
    q = q * (abs(q[k]) / q[k])
    q = q / np.linalg.norm(q)
    if float(np.linalg.norm(q.imag)) > _ROOT_IMAG_TOL:
        return None
    real = np.asarray(q.real, dtype=np.float64)
    return real / np.linalg.norm(real)


def _roots_from_null_space(Z: np.ndarray, layout: _MacaulayLayout) -> list[np.ndarray]:
    """
    Split a null space spanned by r root monomial vectors into the r roots.

    Multiplying by a linear form h shifts degree-8 rows onto degree-9 rows, so
    with a second form g the roots are the eigenvectors of Zg^+ Zh.
    """
    if Z.shape[1] > 1:
        blocks = Z[layout.shift_columns]  # (4,165,r)
        a, b = layout.shift_weights
        Zh = np.tensordot(a, blocks, axes=1)
        Zg = np.tensordot(b, blocks, axes=1)
        T, *_ = np.linalg.lstsq(Zg, Zh, rcond=None)
        _lam, C = np.linalg.eig(T)
        Z = Z @ C

    roots = []
    for k in range(Z.shape[1]):
        q = _quaternion_from_root_vector(Z[:, k], layout)
        if q is not None:
            roots.append(q)
    return roots


def _stationary_points(Q: np.ndarray, config: SolverConfig) -> tuple[list[np.ndarray], dict[str, float]]:
    """Real stationary directions of s(q)^T Q s(q) for ||Q||_2 == 1."""
    from scipy.linalg import eig  # type: ignore

    layout = _macaulay_layout()
    M0 = _macaulay_matrix(_gradient_cubics(Q, layout), layout.row_columns, layout.sphere_matrix.shape[1])
    M1 = layout.sphere_matrix

    # W (M0 - kappa M1) v = 0
    ab, V = eig(layout.projection @ M0, layout.projected_sphere, homogeneous_eigvals=True)
    alpha, beta = ab
    finite = np.abs(beta) > 1e-12 * np.abs(alpha)
    kappa = np.full(alpha.shape, np.inf, dtype=np.complex128)
    kappa[finite] = alpha[finite] / beta[finite]
    admissible = (
        finite
        & (np.abs(kappa.imag) <= _KAPPA_IMAG_TOL)
        & (kappa.real >= -_KAPPA_IMAG_TOL)
        & (kappa.real <= _KAPPA_MAX + _KAPPA_IMAG_TOL)
    )
    idx = np.flatnonzero(admissible)

    # The projection adds eigenpairs that do not annihilate the full matrix.
    Vk = V[:, idx]
    residual = M0 @ Vk - (M1 @ Vk) * kappa[idx][None, :]
    scale = np.linalg.norm(M0) + np.abs(kappa[idx]) * np.linalg.norm(M1)
    rel = np.linalg.norm(residual, axis=0) / (np.linalg.norm(Vk, axis=0) * scale)
    idx = idx[rel <= config.root_residual_tol]
    idx = idx[np.argsort(kappa[idx].real)]

    groups: list[list[int]] = []
    for i in idx:
        if groups and kappa[i].real - kappa[groups[-1][-1]].real <= _KAPPA_CLUSTER_TOL:
            groups[-1].append(int(i))
        else:
            groups.append([int(i)])

    roots: list[np.ndarray] = []
    for group in groups:
        if len(group) == 1:
            Z = V[:, group]
        else:
            k_mean = float(np.mean(kappa[group].real))
            Z = _null_space(M0 - k_mean * M1, max_dim=min(M0.shape[1] - 1, 2 * len(group) + 8))
        roots.extend(_roots_from_null_space(Z, layout))

    stats = {
        "n_finite_eigenvalues": float(np.count_nonzero(finite)),
        "n_eigenpairs": float(idx.size),
        "n_real_roots": float(len(roots)),
    }
    return roots, stats


def _polish(L: np.ndarray, q0: np.ndarray, config: SolverConfig) -> tuple[np.ndarray, int]:
    """Minimise |L^T s(q / |q|)|^2 from q0; L L^T is the normalised cost matrix."""
    from scipy.optimize import least_squares  # type: ignore

    eye = np.eye(4, dtype=np.float64)

    def fun(q: np.ndarray) -> np.ndarray:
        return L.T @ quaternion_monomials(q / np.linalg.norm(q))

    def jac(q: np.ndarray) -> np.ndarray:
        n = float(np.linalg.norm(q))
        u = q / n
        return L.T @ _monomial_jacobian(u) @ ((eye - np.outer(u, u)) / n)

    sol = least_squares(
        fun,
        q0,
        jac=jac,
        method="trf",
        xtol=1e-15,
        ftol=1e-15,
        gtol=1e-15,
        max_nfev=int(config.polish_max_nfev),
    )
    return sol.x / np.linalg.norm(sol.x), int(sol.nfev)


def _empty_solutions() -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    return (
        np.zeros((0, 4), dtype=np.float64),
        np.zeros((0, 3), dtype=np.float64),
        np.zeros((0,), dtype=np.float64),
    )


def _extract(
    params: UpnpCostParameters, Q: np.ndarray, config: SolverConfig
) -> tuple[np.ndarray, np.ndarray, np.ndarray, dict[str, float]]:
    w, U = np.linalg.eigh(Q)
    scale = float(np.max(np.abs(w)))
    diagnostics: dict[str, float] = {"cost_matrix_norm": scale}
    if not scale > 1e-300:
        # Every rotation has zero cost: there is no isolated minimum to report.
        rotations, translations, costs = _empty_solutions()
        diagnostics.update(
            {"n_real_roots": 0.0, "n_converged": 0.0, "n_minima": 0.0, "n_hypotheses": 0.0, "polish_nfev_total": 0.0}
        )
        return rotations, translations, costs, diagnostics

    Q_hat = Q / scale
    L = U * np.sqrt(np.clip(w / scale, 0.0, None))[None, :]

    roots, root_stats = _stationary_points(Q_hat, config)
    diagnostics.update(root_stats)

    kept: list[tuple[float, np.ndarray]] = []
    n_converged = 0
    n_minima = 0
    nfev_total = 0
    for q0 in roots:
        q, nfev = _polish(L, q0, config)
        nfev_total += nfev
        if not np.all(np.isfinite(q)):
            continue
        F, g_t, h_t = _riemannian(Q_hat, q)
        if float(np.linalg.norm(g_t)) > config.gradient_tol:
            continue
        n_converged += 1

        if F < -config.hessian_tol:
            continue
        if float(np.linalg.eigvalsh(h_t)[0]) < -config.hessian_tol:
            continue
        if monomial_residual(quaternion_monomials(q)) > config.monomial_tol:
            continue
        n_minima += 1

        if q[0] < 0.0:
            q = -q
        if any(1.0 - abs(float(q @ q_kept)) < config.duplicate_tol for _c, q_kept in kept):
            continue
        kept.append((max(F, 0.0) * scale, q))

    kept.sort(key=lambda item: item[0])
    if kept:
        rotations = np.stack([q for _c, q in kept], axis=0)
        costs = np.asarray([c for c, _q in kept], dtype=np.float64)
        translations = translation_from_quaternion(params, rotations).reshape(-1, 3)
    else:
        rotations, translations, costs = _empty_solutions()

    diagnostics.update(
        {
            "n_converged": float(n_converged),
            "n_minima": float(n_minima),
            "n_hypotheses": float(len(kept)),
            "polish_nfev_total": float(nfev_total),
        }
    )
    return rotations, translations, costs, diagnostics


def extract_solutions(
    params: UpnpCostParameters, config: SolverConfig | None = None
) -> tuple[np.ndarray, np.ndarray, np.ndarray, dict[str, float]]:
    """
    Local minima of the cost over unit quaternions, lowest cost first.

    Every real stationary point of the homogenised quartic is enumerated, then
    polished and kept only if it is a minimum.

    Returns (rotations (K,4) scalar-first with w >= 0, translations (K,3), costs (K,), diagnostics).
    K == 0 is a valid outcome.
    """
    if config is None:
        config = SolverConfig()

    Q = homogenized_cost_matrix(params)
    if not np.all(np.isfinite(Q)):
        raise NumericalFailureError("cost matrix has non-finite entries")

    try:
        return _extract(params, Q, config)
    except np.linalg.LinAlgError as e:
        raise NumericalFailureError(f"solution extraction failed: {e}") from e
