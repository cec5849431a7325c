import numpy as np
import pytest

from raypose.config import SolverConfig
from raypose.core.geometry import normalize_quaternion, quaternion_distance, quaternion_monomials
from raypose.core.upnp_cost import UpnpCostParameters, compute_cost_parameters, evaluate_cost
from raypose.core.upnp_solve import (
    _riemannian,
    _stationary_points,
    extract_solutions,
    homogenized_cost_matrix,
    monomial_outer,
    monomial_residual,
)
from raypose.errors import NumericalFailureError
from raypose.sim.synthetic import make_synthetic_scene


def test_monomial_outer_of_quaternion_is_rank_one():
    rng = np.random.default_rng(0)
    q = normalize_quaternion(rng.normal(size=4))
    s = quaternion_monomials(q)
    assert np.allclose(monomial_outer(s), np.outer(q, q), atol=1e-15)
    assert monomial_residual(s) < 1e-12
    assert monomial_residual(-3.0 * s) < 1e-12


def test_monomial_residual_flags_spurious_vectors():
    rng = np.random.default_rng(1)
    assert monomial_residual(rng.normal(size=10)) > 1e-3
    # The identity lift (all squares equal, no cross terms) is not a quaternion outer product.
    assert monomial_residual(np.array([1.0, 1.0, 1.0, 1.0, 0, 0, 0, 0, 0, 0])) > 0.5


def test_homogenized_cost_matches_cost_on_the_sphere():
    scene = make_synthetic_scene(10, central=False, noise_std_rad=1e-2, seed=2)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    Q = homogenized_cost_matrix(params)
    assert np.array_equal(Q, Q.T)
    assert np.linalg.eigvalsh(Q)[0] >= -1e-9 * np.linalg.norm(Q, ord=2)
    rng = np.random.default_rng(2)
    for q in normalize_quaternion(rng.normal(size=(5, 4))):
        s = quaternion_monomials(q)
        assert abs(float(s @ Q @ s) - evaluate_cost(params, q)) < 1e-9 * max(1.0, evaluate_cost(params, q))


@pytest.mark.parametrize("central", [True, False])
def test_extract_solutions_recovers_noise_free_pose(central):
    scene = make_synthetic_scene(6, central=central, seed=3)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    rotations, translations, costs, diag = extract_solutions(params)

    assert rotations.shape[0] == translations.shape[0] == costs.shape[0] >= 1
    assert np.all(rotations[:, 0] >= 0.0)
    assert np.all(np.diff(costs) >= 0.0)
    assert costs[0] < 1e-10
    assert quaternion_distance(rotations[0], scene.q_gt) < 1e-9
    assert np.linalg.norm(translations[0] - scene.t_gt) < 1e-6
    assert diag["n_hypotheses"] == float(rotations.shape[0])
    assert diag["n_real_roots"] >= diag["n_minima"] >= 1.0


def test_extract_solutions_returns_distinct_minima():
    scene = make_synthetic_scene(8, central=True, noise_std_rad=1e-3, seed=4)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    cfg = SolverConfig()
    rotations, _translations, costs, _diag = extract_solutions(params, cfg)
    for i in range(rotations.shape[0]):
        assert abs(np.linalg.norm(rotations[i]) - 1.0) < 1e-12
        assert abs(evaluate_cost(params, rotations[i]) - costs[i]) < 1e-9 * max(1.0, costs[i])
        for j in range(i):
            assert quaternion_distance(rotations[i], rotations[j]) >= cfg.duplicate_tol


def test_extract_solutions_reports_non_finite_cost():
    params = UpnpCostParameters(
        A=np.full((10, 10), np.nan),
        b=np.zeros(10),
        gamma=0.0,
        G=np.zeros((3, 10)),
        J=np.zeros(3),
    )
    with pytest.raises(NumericalFailureError):
        extract_solutions(params)


def test_stationary_points_include_global_minimum():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(10, 10))
    Q = X @ X.T
    Q /= np.linalg.eigvalsh(Q)[-1]
    roots, stats = _stationary_points(Q, SolverConfig())

    assert len(roots) >= 1
    assert stats["n_real_roots"] == float(len(roots))
    for q in roots:
        assert abs(np.linalg.norm(q) - 1.0) < 1e-12
        _F, g_t, _h_t = _riemannian(Q, q)
        assert np.linalg.norm(g_t) < 1e-4

    samples = normalize_quaternion(rng.normal(size=(20000, 4)))
    s = quaternion_monomials(samples)
    sampled_min = float(np.min(np.einsum("ni,ij,nj->n", s, Q, s)))
    root_min = min(float(quaternion_monomials(q) @ Q @ quaternion_monomials(q)) for q in roots)
    assert root_min <= sampled_min + 1e-8


def test_extract_solutions_wraps_linear_algebra_failures(monkeypatch):
    import scipy.linalg

    def failing_eig(*args, **kwargs):
        raise np.linalg.LinAlgError("QZ iteration failed to converge")

    monkeypatch.setattr(scipy.linalg, "eig", failing_eig)
    scene = make_synthetic_scene(6, central=False, seed=6)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    with pytest.raises(NumericalFailureError):
        extract_solutions(params)
