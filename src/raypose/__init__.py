from raypose.api import PoseHypothesis, UpnpResult, upnp
from raypose.config import SolverConfig, load_solver_config, parse_solver_config
from raypose.errors import DegenerateGeometryError, InvalidInputError, NumericalFailureError, UpnpError

__all__ = [
    "upnp",
    "UpnpResult",
    "PoseHypothesis",
    "SolverConfig",
    "load_solver_config",
    "parse_solver_config",
    "UpnpError",
    "InvalidInputError",
    "DegenerateGeometryError",
    "NumericalFailureError",
]
