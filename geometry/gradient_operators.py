"""Discrete gradient operators for piecewise-linear (P1) simplicial meshes.

For a simplex with corners ``x_0 .. x_d`` the P1 basis gradients follow from
the edge matrix ``D`` whose rows are ``x_k - x_0`` (``k = 1..d``)::

  D · [∇φ_1 | ... | ∇φ_d] = I      ∇φ_0 = -(∇φ_1 + ... + ∇φ_d)

so the gradient of a vertex scalar field ``f`` on the element is
``Σ_k f_k ∇φ_k`` and is constant over the element. Stacking the
``a``-th component of these gradients gives one sparse operator per axis
mapping a vertex field to per-element partial derivatives.

Triangles given with 3D reference positions are first unfolded into a
per-triangle orthonormal tangent frame, which yields the 2D operators used
for surface parameterization.
"""

from __future__ import annotations

import logging
from math import factorial
from typing import List, Tuple

import numpy as np
from scipy import sparse

from core.exceptions import DegenerateElementError, ShapeMismatchError
from geometry.element_mesh import ElementMesh

logger = logging.getLogger("distortion_solver")


def _fast_cross(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Compute cross products for arrays of 3D vectors."""
    x = a[..., 1] * b[..., 2] - a[..., 2] * b[..., 1]
    y = a[..., 2] * b[..., 0] - a[..., 0] * b[..., 2]
    z = a[..., 0] * b[..., 1] - a[..., 1] * b[..., 0]
    out = np.empty(x.shape + (3,), dtype=x.dtype)
    out[..., 0] = x
    out[..., 1] = y
    out[..., 2] = z
    return out


def local_triangle_frames(positions: np.ndarray, tri_rows: np.ndarray) -> np.ndarray:
    """Return 2D corner coordinates of 3D triangles in their own tangent frame.

    Parameters
    ----------
    positions:
        Dense vertex position array of shape ``(N_vertices, 3)``.
    tri_rows:
        Integer array of shape ``(N_triangles, 3)`` with vertex-row indices.

    Returns
    -------
    corners:
        Array of shape ``(N_triangles, 3, 2)``. Corner 0 sits at the origin and
        corner 1 on the positive first axis; lengths and angles are preserved.
    """
    v0 = positions[tri_rows[:, 0]]
    v1 = positions[tri_rows[:, 1]]
    v2 = positions[tri_rows[:, 2]]

    e01 = v1 - v0
    e02 = v2 - v0
    len01 = np.linalg.norm(e01, axis=1)
    axis1 = e01 / np.maximum(len01, 1e-300)[:, None]
    n = _fast_cross(e01, e02)
    axis2 = _fast_cross(n, axis1)
    axis2 /= np.maximum(np.linalg.norm(axis2, axis=1), 1e-300)[:, None]

    corners = np.zeros((tri_rows.shape[0], 3, 2), dtype=float)
    corners[:, 1, 0] = len01
    corners[:, 2, 0] = np.einsum("ij,ij->i", e02, axis1)
    corners[:, 2, 1] = np.einsum("ij,ij->i", e02, axis2)
    return corners


def p1_shape_gradients(
    corners: np.ndarray, *, eps: float = 1e-14
) -> Tuple[np.ndarray, np.ndarray]:
    """Return element measures and P1 basis gradients.

    Parameters
    ----------
    corners:
        Array of shape ``(N_elements, d + 1, d)`` with corner coordinates.
    eps:
        Elements whose area/volume is ``<= eps`` are rejected.

    Returns
    -------
    measure:
        Array of shape ``(N_elements,)`` with areas (d = 2) or volumes (d = 3).
    grads:
        Array of shape ``(N_elements, d + 1, d)``; ``grads[e, k]`` is the
        gradient of the basis function of corner ``k``.
    """
    n_elem, n_corner, dim = corners.shape
    if n_corner != dim + 1:
        raise ShapeMismatchError("corners", f"(N_elements, {dim + 1}, {dim})", corners.shape)
    if n_elem == 0:
        return np.zeros(0, dtype=float), np.zeros((0, dim + 1, dim), dtype=float)

    edges = corners[:, 1:, :] - corners[:, :1, :]
    det = np.linalg.det(edges)
    measure = np.abs(det) / factorial(dim)

    bad = np.flatnonzero(~(measure > eps))
    if bad.size:
        raise DegenerateElementError(bad)

    inv = np.linalg.inv(edges)
    grads = np.empty((n_elem, dim + 1, dim), dtype=float)
    # Column k-1 of inv(D) is the gradient of basis function k.
    grads[:, 1:, :] = np.transpose(inv, (0, 2, 1))
    grads[:, 0, :] = -grads[:, 1:, :].sum(axis=1)
    return measure, grads


def build_gradient_operators(
    reference_positions: np.ndarray,
    elements: np.ndarray,
    *,
    eps: float = 1e-14,
) -> Tuple[List[sparse.csr_matrix], np.ndarray]:
    """Build per-axis P1 gradient operators and element measures.

    Returns ``(operators, measures)`` where ``operators[a]`` is a CSR matrix of
    shape ``(N_elements, N_vertices)`` mapping a vertex scalar field to its
    per-element derivative along axis ``a``.
    """
    mesh = ElementMesh(reference_positions, elements)
    dim = mesh.dim
    elems = mesh.elements

    if mesh.is_surface:
        corners = local_triangle_frames(mesh.reference_positions, elems)
    else:
        corners = mesh.reference_positions[elems][:, :, :dim]

    measures, grads = p1_shape_gradients(corners, eps=eps)

    n_elem, n_vert = mesh.n_elements, mesh.n_vertices
    rows = np.repeat(np.arange(n_elem), dim + 1)
    cols = elems.ravel()
    operators = []
    for axis in range(dim):
        op = sparse.csr_matrix(
            (grads[:, :, axis].ravel(), (rows, cols)), shape=(n_elem, n_vert)
        )
        op.sum_duplicates()
        operators.append(op)

    logger.debug(
        "Built %d gradient operators for %d elements over %d vertices.",
        dim,
        n_elem,
        n_vert,
    )
    return operators, measures


def mesh_gradient_operators(
    mesh: ElementMesh, *, eps: float = 1e-14
) -> Tuple[List[sparse.csr_matrix], np.ndarray]:
    """Convenience wrapper around :func:`build_gradient_operators`."""
    return build_gradient_operators(mesh.reference_positions, mesh.elements, eps=eps)


__all__ = [
    "build_gradient_operators",
    "local_triangle_frames",
    "mesh_gradient_operators",
    "p1_shape_gradients",
]
