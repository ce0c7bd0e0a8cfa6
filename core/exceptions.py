"""Custom exception types for the distortion solver."""

from __future__ import annotations

from typing import Any, Sequence


class DistortionSolverError(Exception):
    """Base class for domain-specific errors."""


class ShapeMismatchError(DistortionSolverError, ValueError):
    """Raised when operator or array dimensions are incompatible."""

    def __init__(
        self,
        name: str,
        expected: Any,
        actual: Any,
        message: str | None = None,
    ) -> None:
        if message is None:
            message = f"{name} has shape {actual!r}; expected {expected!r}."
        super().__init__(message)
        self.name = name
        self.expected = expected
        self.actual = actual


class UnsupportedDimensionError(DistortionSolverError, ValueError):
    """Raised for a spatial dimension other than 2 or 3."""

    def __init__(self, dim: int, message: str | None = None) -> None:
        if message is None:
            message = f"Dimension {dim} is not supported; use 2 or 3."
        super().__init__(message)
        self.dim = dim


class InvalidConstraintError(DistortionSolverError, ValueError):
    """Raised when a soft-constraint set violates its preconditions."""

    def __init__(self, message: str, *, vertex_index: int | None = None) -> None:
        super().__init__(message)
        self.vertex_index = vertex_index


class DegenerateElementError(DistortionSolverError):
    """Raised when reference elements have (near) zero area or volume."""

    def __init__(
        self,
        element_indices: Sequence[int],
        message: str | None = None,
    ) -> None:
        indices = [int(i) for i in element_indices]
        if message is None:
            shown = ", ".join(str(i) for i in indices[:10])
            if len(indices) > 10:
                shown += ", ..."
            message = (
                f"{len(indices)} reference element(s) have zero measure: {shown}."
            )
        super().__init__(message)
        self.element_indices = indices


class SingularSystemError(DistortionSolverError):
    """Raised when a sparse solve of an assembled system is not finite."""

    def __init__(self, message: str, *, proximal_weight: float | None = None) -> None:
        super().__init__(message)
        self.proximal_weight = proximal_weight


__all__ = [
    "DistortionSolverError",
    "ShapeMismatchError",
    "UnsupportedDimensionError",
    "InvalidConstraintError",
    "DegenerateElementError",
    "SingularSystemError",
]
