from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

SCHEMA_VERSION = "raypose.solver_config.v0"


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class SolverConfig:
    """
    Numerical tolerances of the UPnP solver.

    - `singular_eps`: threshold on det(N I - sum f f^T) / N^3 below which the
      ray set is reported as degenerate
    - `unit_norm_tol`: accepted deviation of | |f| - 1 | for input directions
    - `polish_max_nfev`: evaluation budget of the least-squares polish of each root
    - `root_residual_tol`: relative residual above which an eigenpair of the
      projected Macaulay pencil is discarded
    - `gradient_tol`: accepted tangent gradient norm at a minimum, relative to ||Q||
    - `hessian_tol`: tolerance (relative to ||Q||) on negative tangent curvature
    - `duplicate_tol`: two hypotheses with 1 - |<q1,q2>| below it are merged
    - `monomial_tol`: accepted violation of the quaternion monomial identities
    """

    singular_eps: float = 1e-10
    unit_norm_tol: float = 1e-6
    min_correspondences: int = 3
    polish_max_nfev: int = 100
    root_residual_tol: float = 1e-4
    gradient_tol: float = 1e-8
    hessian_tol: float = 1e-8
    duplicate_tol: float = 1e-6
    monomial_tol: float = 1e-6

    def to_dict(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, **asdict(self)}


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def load_solver_config(path: Path) -> SolverConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_solver_config(data)


def _positive_float(data: dict[str, Any], key: str, default: float) -> float:
    raw = data.get(key, default)
    _require(isinstance(raw, (int, float)) and not isinstance(raw, bool), f"{key} must be a number")
    value = float(raw)
    _require(value > 0.0, f"{key} must be > 0")
    return value


def parse_solver_config(data: dict[str, Any]) -> SolverConfig:
    _require(isinstance(data, dict), "solver config must be a JSON object")
    schema_version = data.get("schema_version")
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    defaults = SolverConfig()
    known = set(asdict(defaults)) | {"schema_version"}
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown solver config keys: {unknown}")

    min_corr = data.get("min_correspondences", defaults.min_correspondences)
    _require(isinstance(min_corr, int) and not isinstance(min_corr, bool), "min_correspondences must be an integer")
    _require(min_corr >= 3, "min_correspondences must be >= 3")

    nfev = data.get("polish_max_nfev", defaults.polish_max_nfev)
    _require(isinstance(nfev, int) and not isinstance(nfev, bool), "polish_max_nfev must be an integer")
    _require(nfev >= 1, "polish_max_nfev must be >= 1")

    duplicate_tol = _positive_float(data, "duplicate_tol", defaults.duplicate_tol)
    _require(duplicate_tol < 1.0, "duplicate_tol must be < 1")

    return SolverConfig(
        singular_eps=_positive_float(data, "singular_eps", defaults.singular_eps),
        unit_norm_tol=_positive_float(data, "unit_norm_tol", defaults.unit_norm_tol),
        min_correspondences=int(min_corr),
        polish_max_nfev=int(nfev),
        root_residual_tol=_positive_float(data, "root_residual_tol", defaults.root_residual_tol),
        gradient_tol=_positive_float(data, "gradient_tol", defaults.gradient_tol),
        hessian_tol=_positive_float(data, "hessian_tol", defaults.hessian_tol),
        duplicate_tol=duplicate_tol,
        monomial_tol=_positive_float(data, "monomial_tol", defaults.monomial_tol),
    )
