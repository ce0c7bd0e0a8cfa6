"""Simplicial mesh record: fixed topology plus reference vertex positions."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from core.exceptions import ShapeMismatchError, UnsupportedDimensionError


@dataclass
class ElementMesh:
    """Triangles (d = 2) or tetrahedra (d = 3) over a vertex array.

    ``reference_positions`` has shape ``(N_vertices, k)`` with ``k`` equal to
    the parameter dimension, or ``k = 3`` for a triangle surface embedded in
    3D. ``elements`` has shape ``(N_elements, d + 1)`` with vertex-row
    indices. Topology is fixed for the lifetime of a solve.
    """

    reference_positions: np.ndarray
    elements: np.ndarray
    _dim: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        positions = np.asarray(self.reference_positions, dtype=float)
        elements = np.asarray(self.elements, dtype=np.int64)
        if positions.ndim != 2 or positions.shape[1] not in (2, 3):
            raise ShapeMismatchError(
                "reference_positions", "(N_vertices, 2 or 3)", positions.shape
            )
        if elements.ndim != 2:
            raise ShapeMismatchError("elements", "(N_elements, d + 1)", elements.shape)

        dim = elements.shape[1] - 1
        if dim not in (2, 3):
            raise UnsupportedDimensionError(
                dim, f"Elements with {elements.shape[1]} vertices are not supported."
            )
        if dim > positions.shape[1]:
            raise UnsupportedDimensionError(
                dim,
                f"Tetrahedra need 3D reference positions; got {positions.shape[1]}D.",
            )
        if elements.size and (
            elements.min() < 0 or elements.max() >= positions.shape[0]
        ):
            raise ShapeMismatchError(
                "elements",
                f"indices in [0, {positions.shape[0]})",
                (int(elements.min()), int(elements.max())),
                message="Element vertex indices are out of range.",
            )

        self.reference_positions = positions
        self.elements = elements
        self._dim = dim

    @property
    def dim(self) -> int:
        """Parameter dimension ``d`` (2 for triangles, 3 for tetrahedra)."""
        return self._dim

    @property
    def n_vertices(self) -> int:
        return int(self.reference_positions.shape[0])

    @property
    def n_elements(self) -> int:
        return int(self.elements.shape[0])

    @property
    def is_surface(self) -> bool:
        """True for a triangle surface embedded in 3D."""
        return self._dim == 2 and self.reference_positions.shape[1] == 3

    def initial_positions(self) -> np.ndarray:
        """Return a ``(N_vertices, d)`` starting field.

        Volumetric meshes start at their reference positions. Surfaces are
        projected on the two leading principal axes, which is enough for
        near-planar patches; real parameterizations should supply their own
        initial map.
        """
        if not self.is_surface:
            return self.reference_positions.copy()
        centered = self.reference_positions - self.reference_positions.mean(axis=0)
        _, _, vt = np.linalg.svd(centered, full_matrices=False)
        return centered @ vt[:2].T

    def __repr__(self) -> str:
        return (
            f"ElementMesh(dim={self.dim}, vertices={self.n_vertices}, "
            f"elements={self.n_elements})"
        )
