"""Explicit solver-state record passed into every assembly call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List

import numpy as np
from scipy import sparse

from core.exceptions import ShapeMismatchError
from geometry.element_mesh import ElementMesh
from geometry.gradient_operators import mesh_gradient_operators
from runtime.assembly import AssemblyPattern, build_assembly_pattern
from runtime.jacobians import check_positions, evaluate_jacobians, validate_operators

logger = logging.getLogger("distortion_solver")


@dataclass
class SolverState:
    """Gradient operators, element measures, current iterate and caches.

    ``positions`` is the current iterate ``U`` of shape ``(N_vertices, d)``.
    It is mutated only between assembly calls (by the outer loop); the
    assembly functions read a snapshot of it.
    """

    operators: List[sparse.csr_matrix]
    measures: np.ndarray
    positions: np.ndarray
    iteration: int = 0
    _topology_version: int = 0
    _pattern: AssemblyPattern | None = field(default=None, repr=False)
    _pattern_version: int = field(default=-1, repr=False)
    _store: dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.operators = [sparse.csr_matrix(op) for op in self.operators]
        dim, n_elem, n_vert = validate_operators(self.operators)
        self.measures = np.asarray(self.measures, dtype=float).ravel()
        if self.measures.shape != (n_elem,):
            raise ShapeMismatchError("measures", (n_elem,), self.measures.shape)
        self.positions = check_positions(self.positions, dim, n_vert).copy()

    @classmethod
    def from_mesh(
        cls, mesh: ElementMesh, positions: np.ndarray | None = None
    ) -> "SolverState":
        """Build operators/measures from a mesh's reference geometry."""
        operators, measures = mesh_gradient_operators(mesh)
        if positions is None:
            positions = mesh.initial_positions()
        return cls(operators=operators, measures=measures, positions=positions)

    @property
    def dim(self) -> int:
        return len(self.operators)

    @property
    def n_elements(self) -> int:
        return int(self.operators[0].shape[0])

    @property
    def n_vertices(self) -> int:
        return int(self.operators[0].shape[1])

    def flat_positions(self) -> np.ndarray:
        """Return ``U`` in column-block order ``[u_0.., v_0.., (w_0..)]``."""
        return self.positions.flatten(order="F")

    def set_flat_positions(self, flat: np.ndarray) -> None:
        """Replace ``U`` from a column-block flattened vector."""
        flat = np.asarray(flat, dtype=float).ravel()
        expected = (self.dim * self.n_vertices,)
        if flat.shape != expected:
            raise ShapeMismatchError("flattened positions", expected, flat.shape)
        self.positions = flat.reshape((self.n_vertices, self.dim), order="F").copy()

    def set_operators(self, operators: List[sparse.spmatrix], measures: np.ndarray) -> None:
        """Swap in new reference geometry; drops topology-bound caches."""
        operators = [sparse.csr_matrix(op) for op in operators]
        dim, n_elem, n_vert = validate_operators(operators)
        if (dim, n_vert) != (self.dim, self.n_vertices):
            raise ShapeMismatchError(
                "gradient operators", (self.dim, self.n_vertices), (dim, n_vert)
            )
        measures = np.asarray(measures, dtype=float).ravel()
        if measures.shape != (n_elem,):
            raise ShapeMismatchError("measures", (n_elem,), measures.shape)
        self.operators = operators
        self.measures = measures
        self._topology_version += 1
        self.clear()

    def jacobians(self) -> np.ndarray:
        """Flattened Jacobian field of the current iterate."""
        return evaluate_jacobians(self.positions, self.operators)

    def assembly_pattern(
        self, *, num_workers: int = 1, chunk_size: int = 4096
    ) -> AssemblyPattern:
        """Return the cached sparsity pattern of ``A``, building it once per topology.

        The cache is also rebuilt when ``operators`` was reassigned directly
        with a different sparsity.
        """
        if (
            self._pattern is None
            or self._pattern_version != self._topology_version
            or not self._pattern.matches(self.operators)
        ):
            self._pattern = build_assembly_pattern(
                self.operators, num_workers=num_workers, chunk_size=chunk_size
            )
            self._pattern_version = self._topology_version
            logger.debug("Assembly pattern rebuilt (nnz=%d).", self._pattern.nnz)
        return self._pattern

    def get(self, key: str, default: Any = None) -> Any:
        """Read a cached value."""
        return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Store a cached value."""
        self._store[key] = value

    def clear(self) -> None:
        """Clear cached values and the assembly pattern."""
        self._store.clear()
        self._pattern = None
        self._pattern_version = -1
