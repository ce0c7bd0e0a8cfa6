"""Per-element Jacobians of the current map from precomputed gradient operators.

Layout
------
The Jacobian of element ``e`` is ``J_e = [∇u_e | ∇v_e (| ∇w_e)]``: column
``c`` holds the gradient of coordinate column ``c`` of ``U``. Flattened rows
list coordinate columns first, derivative axes second::

  2D: (∂u/∂x, ∂u/∂y, ∂v/∂x, ∂v/∂y)
  3D: (∂u/∂x, ∂u/∂y, ∂u/∂z, ∂v/∂x, ..., ∂w/∂z)

so entry ``(axis a, column c)`` of ``J_e`` sits at flat index ``c * d + a``.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from scipy import sparse

from core.exceptions import ShapeMismatchError, UnsupportedDimensionError


def validate_operators(operators: Sequence) -> Tuple[int, int, int]:
    """Return ``(dim, n_elements, n_vertices)`` for a set of gradient operators."""
    dim = len(operators)
    if dim not in (2, 3):
        raise UnsupportedDimensionError(
            dim, f"Expected 2 or 3 gradient operators; got {dim}."
        )
    shape = tuple(operators[0].shape)
    for axis, op in enumerate(operators[1:], start=1):
        if tuple(op.shape) != shape:
            raise ShapeMismatchError(f"gradient operator {axis}", shape, tuple(op.shape))
    return dim, int(shape[0]), int(shape[1])


def check_positions(positions: np.ndarray, dim: int, n_vertices: int) -> np.ndarray:
    """Return ``positions`` as a float ``(N_vertices, dim)`` array or raise."""
    positions = np.asarray(positions, dtype=float)
    if positions.shape != (n_vertices, dim):
        raise ShapeMismatchError("positions", (n_vertices, dim), positions.shape)
    return positions


def evaluate_jacobians(positions: np.ndarray, operators: Sequence) -> np.ndarray:
    """Return the flattened Jacobian field of shape ``(N_elements, d * d)``.

    Parameters
    ----------
    positions:
        Current coordinate field ``U`` of shape ``(N_vertices, d)``.
    operators:
        ``d`` sparse gradient operators of shape ``(N_elements, N_vertices)``.
    """
    dim, n_elem, n_vert = validate_operators(operators)
    positions = check_positions(positions, dim, n_vert)

    stacked = sparse.vstack([sparse.csr_matrix(op) for op in operators], format="csr")
    # grads[a, e, c] = ∂U_c/∂x_a on element e
    grads = np.asarray(stacked @ positions).reshape(dim, n_elem, dim)
    return np.ascontiguousarray(grads.transpose(1, 2, 0)).reshape(n_elem, dim * dim)


def jacobian_matrices(flat: np.ndarray) -> np.ndarray:
    """Unflatten ``(N_elements, d * d)`` rows into ``J_e`` matrices ``(N, d, d)``."""
    flat = np.asarray(flat, dtype=float)
    dim = int(round(np.sqrt(flat.shape[1])))
    if dim * dim != flat.shape[1]:
        raise ShapeMismatchError("jacobians", "(N_elements, d * d)", flat.shape)
    return flat.reshape(-1, dim, dim).transpose(0, 2, 1)


def flatten_matrices(matrices: np.ndarray) -> np.ndarray:
    """Flatten per-element ``(N, d, d)`` matrices in the Jacobian row layout."""
    matrices = np.asarray(matrices, dtype=float)
    n_elem, dim = matrices.shape[0], matrices.shape[1]
    return np.ascontiguousarray(matrices.transpose(0, 2, 1)).reshape(n_elem, dim * dim)


__all__ = [
    "check_positions",
    "evaluate_jacobians",
    "flatten_matrices",
    "jacobian_matrices",
    "validate_operators",
]
