from __future__ import annotations


class UpnpError(Exception):
    """Base class for failures reported by the pose solver."""


class InvalidInputError(UpnpError, ValueError):
    """Mismatched array lengths, too few correspondences or malformed arrays."""


class DegenerateGeometryError(UpnpError, ArithmeticError):
    """The rays do not constrain a 3D position (e.g. all directions parallel)."""


class NumericalFailureError(UpnpError, RuntimeError):
    """A dense linear algebra routine did not converge or returned non-finite values."""
