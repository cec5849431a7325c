from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from raypose.config import SolverConfig
from raypose.core.geometry import quaternion_to_matrix
from raypose.core.upnp_cost import UpnpCostParameters, compute_cost_parameters
from raypose.core.upnp_solve import extract_solutions
from raypose.errors import InvalidInputError


@dataclass(frozen=True)
class PoseHypothesis:
    """
    One candidate pose mapping world points into the camera / rig frame: X = R p + t.
    """

    rotation: np.ndarray  # (4,) unit quaternion (w, x, y, z)
    translation: np.ndarray  # (3,)
    cost: float

    def rotation_matrix(self) -> np.ndarray:
        return quaternion_to_matrix(self.rotation)

    def transform(self, world_points: np.ndarray) -> np.ndarray:
        p = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
        return (self.rotation_matrix() @ p.T).T + self.translation.reshape(1, 3)


@dataclass(frozen=True)
class UpnpResult:
    """
    Index-aligned pose hypotheses, lowest cost first.

    `costs` are sums of squared point-to-ray distances. An empty result is valid.
    """

    rotations: np.ndarray  # (K,4)
    translations: np.ndarray  # (K,3)
    costs: np.ndarray  # (K,)
    cost_parameters: UpnpCostParameters
    diagnostics: dict[str, float] = field(default_factory=dict)

    def __len__(self) -> int:
        return int(self.rotations.shape[0])

    def hypotheses(self) -> list[PoseHypothesis]:
        return [
            PoseHypothesis(rotation=self.rotations[i].copy(), translation=self.translations[i].copy(), cost=float(self.costs[i]))
            for i in range(len(self))
        ]


def _validate_inputs(
    ray_origins: np.ndarray,
    ray_directions: np.ndarray,
    world_points: np.ndarray,
    config: SolverConfig,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    arrays = {}
    for name, raw in (("ray_origins", ray_origins), ("ray_directions", ray_directions), ("world_points", world_points)):
        try:
            x = np.array(raw, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"{name} is not a numeric array: {e}") from e
        if x.ndim != 2 or x.shape[1] != 3:
            raise InvalidInputError(f"{name} must have shape (N,3), got {x.shape}")
        arrays[name] = x

    lengths = {name: int(x.shape[0]) for name, x in arrays.items()}
    if len(set(lengths.values())) != 1:
        raise InvalidInputError(f"size mismatch: {lengths}")
    n = lengths["world_points"]
    if n == 0:
        raise InvalidInputError("no correspondences")
    if n < int(config.min_correspondences):
        raise InvalidInputError(f"need >= {config.min_correspondences} correspondences, got {n}")

    for name, x in arrays.items():
        if not np.all(np.isfinite(x)):
            raise InvalidInputError(f"{name} has non-finite values")

    norms = np.linalg.norm(arrays["ray_directions"], axis=1)
    if np.any(np.abs(norms - 1.0) > config.unit_norm_tol):
        raise InvalidInputError("ray_directions must be unit vectors")

    return arrays["ray_origins"], arrays["ray_directions"], arrays["world_points"]


def upnp(
    ray_origins: np.ndarray,
    ray_directions: np.ndarray,
    world_points: np.ndarray,
    config: SolverConfig | None = None,
) -> UpnpResult:
    """
    Generalized absolute pose from N >= 3 ray/point correspondences.

    Ray i (origin `ray_origins[i]`, unit direction `ray_directions[i]`, camera / rig
    frame) observes `world_points[i]`. Returns every local minimum of the sum of
    squared point-to-ray distances over rotations, each with its optimal translation.

    Poses map world to rig, X = R p + t. For a camera centred at world point c
    (direction ∝ R (p - c)) the returned translation is t = -R c, and the centre
    is c = -R^T t.

    Raises InvalidInputError, DegenerateGeometryError or NumericalFailureError.
    """
    if config is None:
        config = SolverConfig()
    v, f, p = _validate_inputs(ray_origins, ray_directions, world_points, config)

    params = compute_cost_parameters(v, f, p, singular_eps=config.singular_eps)
    rotations, translations, costs, diag = extract_solutions(params, config)
    diag = {"n_correspondences": float(p.shape[0]), **diag}
    return UpnpResult(
        rotations=rotations,
        translations=translations,
        costs=costs,
        cost_parameters=params,
        diagnostics=diag,
    )
