import numpy as np
import pytest

from raypose.core.geometry import (
    normalize_quaternion,
    point_to_ray_residuals,
    quaternion_monomials,
    quaternion_to_matrix,
)
from raypose.core.upnp_cost import (
    compute_cost_matrices,
    compute_cost_parameters,
    compute_h_matrix,
    compute_helper_matrices,
    cost_contributions,
    evaluate_cost,
    left_multiply_matrix,
    translation_from_quaternion,
)
from raypose.errors import DegenerateGeometryError, InvalidInputError
from raypose.sim.synthetic import make_synthetic_scene


def test_left_multiply_matches_rotation():
    rng = np.random.default_rng(0)
    q = normalize_quaternion(rng.normal(size=(30, 4)))
    p = rng.normal(size=(30, 3))
    phi = left_multiply_matrix(p)
    assert phi.shape == (30, 3, 10)
    rotated = (phi @ quaternion_monomials(q)[:, :, None])[..., 0]
    expected = (quaternion_to_matrix(q) @ p[:, :, None])[..., 0]
    assert np.max(np.abs(rotated - expected)) < 1e-12


def test_left_multiply_single_point_is_reproducible():
    p = np.array([0.3, -1.2, 2.5])
    a = left_multiply_matrix(p)
    b = left_multiply_matrix(p[None, :])[0]
    assert a.shape == (3, 10)
    assert np.array_equal(a, b)
    assert np.allclose(a[0], [0.3, 0.3, -0.3, -0.3, 0.0, 5.0, 2.4, -2.4, 5.0, 0.0], rtol=0.0, atol=1e-15)


def test_h_matrix_inverts_ray_statistics():
    scene = make_synthetic_scene(8, central=False, seed=1)
    f = scene.ray_directions
    H, outer = compute_h_matrix(f)
    assert outer.shape == (8, 3, 3)
    assert np.allclose(outer[3], np.outer(f[3], f[3]))
    assert np.array_equal(H, H.T)
    h_inverse = 8 * np.eye(3) - outer.sum(axis=0)
    assert np.max(np.abs(H @ h_inverse - np.eye(3))) < 1e-9


def test_h_matrix_rejects_parallel_rays():
    d = np.array([1.0, 2.0, 3.0])
    d /= np.linalg.norm(d)
    with pytest.raises(DegenerateGeometryError):
        compute_h_matrix(np.repeat(d[None, :], 6, axis=0))


def test_h_matrix_rejects_empty():
    with pytest.raises(InvalidInputError):
        compute_h_matrix(np.zeros((0, 3)))


def test_helper_and_cost_reject_size_mismatch():
    scene = make_synthetic_scene(6, central=True, seed=2)
    H, outer = compute_h_matrix(scene.ray_directions)
    with pytest.raises(InvalidInputError):
        compute_helper_matrices(scene.world_points[:5], scene.ray_origins, outer, H)
    G, J = compute_helper_matrices(scene.world_points, scene.ray_origins, outer, H)
    assert G.shape == (3, 10)
    assert J.shape == (3,)
    with pytest.raises(InvalidInputError):
        compute_cost_matrices(scene.world_points, scene.ray_origins[:4], outer, G, J)


@pytest.mark.parametrize("central", [True, False])
def test_cost_matrix_is_symmetric_psd(central):
    scene = make_synthetic_scene(12, central=central, noise_std_rad=1e-2, n_outliers=2, seed=3)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    assert params.A.shape == (10, 10)
    assert params.b.shape == (10,)
    assert np.array_equal(params.A, params.A.T)
    eig = np.linalg.eigvalsh(params.A)
    assert eig[0] >= -1e-9 * max(1.0, eig[-1])
    assert params.gamma >= 0.0


def test_central_rays_have_no_linear_term():
    # With a single center, J = -c, so every n_i vanishes.
    scene = make_synthetic_scene(10, central=True, seed=4)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    assert np.max(np.abs(params.b)) < 1e-12
    assert params.gamma < 1e-20


def test_contributions_are_point_to_ray_residuals():
    scene = make_synthetic_scene(9, central=False, noise_std_rad=5e-3, seed=5)
    H, outer = compute_h_matrix(scene.ray_directions)
    G, J = compute_helper_matrices(scene.world_points, scene.ray_origins, outer, H)
    M, n = cost_contributions(scene.world_points, scene.ray_origins, outer, G, J)
    assert M.shape == (9, 3, 10)
    assert n.shape == (9, 3)

    rng = np.random.default_rng(5)
    q = normalize_quaternion(rng.normal(size=4))
    s = quaternion_monomials(q)
    t = G @ s - J
    res = point_to_ray_residuals(quaternion_to_matrix(q), t, scene.ray_origins, scene.ray_directions, scene.world_points)
    # (f f^T - I)(R p + t - v) = M_i s + n_i, and point_to_ray_residuals uses (I - f f^T).
    assert np.max(np.abs((M @ s) + n + res)) < 1e-9


def test_evaluate_cost_is_sum_of_squared_distances_at_optimal_translation():
    scene = make_synthetic_scene(15, central=False, noise_std_rad=1e-2, seed=6)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    rng = np.random.default_rng(6)
    for q in normalize_quaternion(rng.normal(size=(5, 4))):
        R = quaternion_to_matrix(q)
        t = translation_from_quaternion(params, q)
        res = point_to_ray_residuals(R, t, scene.ray_origins, scene.ray_directions, scene.world_points)
        sq = float(np.sum(res**2))
        assert abs(evaluate_cost(params, q) - sq) < 1e-8 * max(1.0, sq)

        # Any other translation is worse.
        res_off = point_to_ray_residuals(
            R, t + np.array([0.01, 0.0, 0.0]), scene.ray_origins, scene.ray_directions, scene.world_points
        )
        assert float(np.sum(res_off**2)) > sq


def test_evaluate_cost_vanishes_at_ground_truth():
    scene = make_synthetic_scene(6, central=False, seed=7)
    params = compute_cost_parameters(scene.ray_origins, scene.ray_directions, scene.world_points)
    assert evaluate_cost(params, scene.q_gt) < 1e-12
    assert np.linalg.norm(translation_from_quaternion(params, scene.q_gt) - scene.t_gt) < 1e-9
    batch = evaluate_cost(params, np.stack([scene.q_gt, -scene.q_gt]))
    assert batch.shape == (2,)
    assert abs(batch[0] - batch[1]) < 1e-12
