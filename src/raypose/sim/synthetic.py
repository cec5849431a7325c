from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from raypose.core.geometry import matrix_to_quaternion, normalize_quaternion, quaternion_to_matrix


@dataclass(frozen=True)
class SyntheticScene:
    """
    Ground truth and observations for one generalized camera.

    World points map to the rig frame with X = R_gt p + t_gt; ray i starts at
    `ray_origins[i]` (rig frame) and points towards X_i.
    """

    world_points: np.ndarray  # (N,3)
    ray_origins: np.ndarray  # (N,3)
    ray_directions: np.ndarray  # (N,3), unit norm
    R_gt: np.ndarray  # (3,3)
    t_gt: np.ndarray  # (3,)
    outlier_mask: np.ndarray  # (N,) bool

    @property
    def q_gt(self) -> np.ndarray:
        return matrix_to_quaternion(self.R_gt)


def random_rotation(rng: np.random.Generator) -> np.ndarray:
    """Uniformly distributed rotation matrix (normalized Gaussian quaternion)."""
    return quaternion_to_matrix(normalize_quaternion(rng.normal(size=4)))


def rig_centers(n_cameras: int, radius: float) -> np.ndarray:
    """Camera centers evenly spread on a horizontal circle around the rig origin."""
    if n_cameras < 1:
        raise ValueError("n_cameras must be >= 1")
    if n_cameras == 1:
        return np.zeros((1, 3), dtype=np.float64)
    angles = np.linspace(0.0, 2.0 * np.pi, int(n_cameras), endpoint=False)
    return np.stack([radius * np.cos(angles), 0.25 * radius * np.sin(2.0 * angles), radius * np.sin(angles)], axis=-1)


def make_synthetic_scene(
    n_points: int = 6,
    *,
    central: bool = True,
    n_cameras: int = 3,
    rig_radius_m: float = 0.5,
    depth_range_m: tuple[float, float] = (4.0, 8.0),
    half_fov_rad: float = 0.6,
    noise_std_rad: float = 0.0,
    n_outliers: int = 0,
    outlier_offset_m: float = 50.0,
    seed: int = 0,
) -> SyntheticScene:
    """
    Sample a scene whose rays are exactly consistent with (R_gt, t_gt), up to the
    requested direction noise and outliers.

    - `central=True`: every ray starts at the rig origin (pinhole camera)
    - `central=False`: rays are distributed round-robin over `n_cameras` centers
    - `noise_std_rad`: approximate angular noise added to directions
    - `n_outliers`: world points displaced by `outlier_offset_m` after the rays are built
    """
    if n_points < 1:
        raise ValueError("n_points must be >= 1")
    if not (0 <= n_outliers <= n_points):
        raise ValueError("n_outliers must be in [0, n_points]")
    near, far = float(depth_range_m[0]), float(depth_range_m[1])
    if not (0.0 < near <= far):
        raise ValueError("depth_range_m must satisfy 0 < near <= far")

    rng = np.random.default_rng(seed)
    R_gt = random_rotation(rng)
    t_gt = rng.uniform(-1.0, 1.0, size=(3,))

    if central:
        origins = np.zeros((n_points, 3), dtype=np.float64)
    else:
        centers = rig_centers(int(n_cameras), float(rig_radius_m))
        origins = centers[np.arange(n_points) % centers.shape[0]]

    # Directions inside a cone around +z, then points at random depth along them.
    theta = half_fov_rad * np.sqrt(rng.uniform(0.0, 1.0, size=n_points))
    phi = rng.uniform(-np.pi, np.pi, size=n_points)
    dirs = np.stack([np.sin(theta) * np.cos(phi), np.sin(theta) * np.sin(phi), np.cos(theta)], axis=-1)
    depth = rng.uniform(near, far, size=(n_points, 1))
    X_rig = origins + depth * dirs
    world_points = (R_gt.T @ (X_rig - t_gt[None, :]).T).T

    if noise_std_rad > 0.0:
        dirs = dirs + rng.normal(scale=float(noise_std_rad), size=dirs.shape)
    dirs = dirs / np.linalg.norm(dirs, axis=-1, keepdims=True)

    outlier_mask = np.zeros((n_points,), dtype=bool)
    if n_outliers > 0:
        idx = rng.choice(n_points, size=int(n_outliers), replace=False)
        offsets = rng.normal(size=(int(n_outliers), 3))
        offsets /= np.linalg.norm(offsets, axis=-1, keepdims=True)
        world_points[idx] += float(outlier_offset_m) * offsets
        outlier_mask[idx] = True

    return SyntheticScene(
        world_points=world_points,
        ray_origins=np.asarray(origins, dtype=np.float64).copy(),
        ray_directions=dirs,
        R_gt=R_gt,
        t_gt=t_gt,
        outlier_mask=outlier_mask,
    )
