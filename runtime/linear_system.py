"""Normal equations of the weighted least-squares proxy and soft anchors.

The proxy energy of one outer iteration is::

  E(U) = Σ_e vol_e ‖W_e J_e(U) - W_e R_e‖²_F + λ ‖U - U_old‖²

With ``A`` and ``b`` from :mod:`runtime.assembly` and the diagonal measure
``M`` (element measures repeated over each element's ``d²`` rows) its
stationary point solves ``L · u = rhs`` where::

  L   = Aᵀ M A + λ I
  rhs = Aᵀ M b + λ u_old

For ``λ = 0`` and no anchors, ``L`` is singular along rigid translations;
no regularization default is applied here.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from core.exceptions import InvalidConstraintError, ShapeMismatchError
from runtime.assembly import expand_measures

logger = logging.getLogger("distortion_solver")

Anchors = Union[Mapping[int, Sequence[float]], Tuple[Sequence[int], np.ndarray]]


def _block_sizes(A, measures: np.ndarray) -> Tuple[int, int, int]:
    """Infer ``(dim, n_elements, n_vertices)`` from ``A`` and the measures."""
    n_rows, n_cols = A.shape
    n_elem = int(measures.size)
    if n_elem == 0 or n_rows % n_elem:
        raise ShapeMismatchError("measures", f"({n_rows} / d²,)", measures.shape)
    dim = int(round(np.sqrt(n_rows // n_elem)))
    if dim * dim * n_elem != n_rows or dim not in (2, 3) or n_cols % dim:
        raise ShapeMismatchError(
            "weighted operator",
            f"(d² · {n_elem}, d · N_vertices) with d in (2, 3)",
            (n_rows, n_cols),
        )
    return dim, n_elem, n_cols // dim


def build_linear_system(
    A: sparse.spmatrix,
    b: np.ndarray,
    measures: np.ndarray,
    previous: np.ndarray,
    proximal_weight: float = 0.0,
) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """Return ``(L, rhs)`` for the proximal weighted least-squares step.

    Parameters
    ----------
    A:
        Weighted operator of shape ``(d² · N_elements, d · N_vertices)``.
    b:
        Flattened weighted targets, one entry per row of ``A``.
    measures:
        Per-element area/volume weights of shape ``(N_elements,)``.
    previous:
        Previous iterate ``u_old`` in column-block flattening (``d · N_vertices``).
    proximal_weight:
        ``λ >= 0``.
    """
    proximal_weight = float(proximal_weight)
    if proximal_weight < 0.0:
        raise ValueError(f"proximal_weight must be >= 0; got {proximal_weight}.")

    measures = np.asarray(measures, dtype=float).ravel()
    dim, n_elem, _ = _block_sizes(A, measures)
    b = np.asarray(b, dtype=float).ravel()
    if b.shape != (A.shape[0],):
        raise ShapeMismatchError("targets", (A.shape[0],), b.shape)
    previous = np.asarray(previous, dtype=float).ravel()
    if previous.shape != (A.shape[1],):
        raise ShapeMismatchError("previous iterate", (A.shape[1],), previous.shape)

    A = sparse.csr_matrix(A)
    row_measure = expand_measures(measures, dim, n_elem)
    # All rows of A are final here; Aᵀ M A is the only cross-element reduction.
    At_M = (A.T @ sparse.diags(row_measure, format="csr")).tocsr()
    L = (At_M @ A).tocsr()
    rhs = np.asarray(At_M @ b).ravel()

    if proximal_weight > 0.0:
        L = (L + proximal_weight * sparse.identity(A.shape[1], format="csr")).tocsr()
        rhs = rhs + proximal_weight * previous

    logger.debug(
        "Assembled normal equations: n=%d, nnz=%d, lambda=%g.",
        L.shape[0],
        L.nnz,
        proximal_weight,
    )
    return L, rhs


def normalize_anchors(anchors: Anchors, dim: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return anchors as ``(indices (k,), targets (k, dim))`` arrays."""
    if isinstance(anchors, Mapping):
        indices = np.fromiter((int(i) for i in anchors.keys()), dtype=np.int64)
        targets = np.array([np.asarray(t, dtype=float) for t in anchors.values()])
    else:
        idx, tgt = anchors
        indices = np.asarray(idx, dtype=np.int64).ravel()
        targets = np.asarray(tgt, dtype=float)
    if indices.size == 0:
        return indices, np.zeros((0, dim), dtype=float)
    targets = targets.reshape(indices.size, -1)
    if targets.shape[1] != dim:
        raise ShapeMismatchError("anchor targets", (indices.size, dim), targets.shape)
    return indices, targets


def _anchor_dim(anchors: Anchors) -> int:
    """Coordinate dimension of the anchor targets (0 for an empty set)."""
    if isinstance(anchors, Mapping):
        first = next(iter(anchors.values()), None)
        return 0 if first is None else int(np.size(first))
    indices = np.atleast_1d(np.asarray(anchors[0]))
    if indices.size == 0:
        return 0
    return int(np.asarray(anchors[1], dtype=float).reshape(indices.size, -1).shape[1])


def _diagonal_slots(L: sparse.csr_matrix, dofs: np.ndarray) -> np.ndarray | None:
    """Data positions of ``L[i, i]`` for ``i`` in ``dofs``; None if any is absent."""
    slots = np.empty(dofs.size, dtype=np.int64)
    for k, i in enumerate(dofs):
        start, stop = L.indptr[i], L.indptr[i + 1]
        hit = np.flatnonzero(L.indices[start:stop] == i)
        if hit.size != 1:
            return None
        slots[k] = start + hit[0]
    return slots


def apply_soft_constraints(
    L: sparse.spmatrix,
    rhs: np.ndarray,
    anchors: Anchors,
    penalty: float,
    *,
    dim: int | None = None,
) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """Add ``penalty · ‖u_v - target_v‖²`` for every anchored vertex ``v``.

    For every anchored vertex and axis ``a`` this adds ``penalty`` to the
    diagonal of ``L`` at dof ``a · N_vertices + v`` and ``penalty · target``
    to ``rhs``. ``rhs`` is updated in place when it is a float array; other
    dtypes are converted to a float copy. ``L`` is updated in place when it
    is CSR with all touched diagonal entries stored, otherwise a new matrix
    is returned. Applying this twice counts the penalty twice.

    ``dim`` defaults to the length of the anchor targets.
    """
    penalty = float(penalty)
    if not penalty > 0.0:
        raise InvalidConstraintError(f"Soft-constraint penalty must be > 0; got {penalty}.")

    n_dofs = L.shape[0]
    rhs = np.asarray(rhs, dtype=float)
    if rhs.shape != (n_dofs,):
        raise ShapeMismatchError("rhs", (n_dofs,), rhs.shape)

    if _anchor_dim(anchors) == 0:
        return L, rhs
    if dim is None:
        dim = _anchor_dim(anchors)
    if n_dofs % dim:
        raise ShapeMismatchError("system", f"multiple of {dim}", (n_dofs,))
    n_vertices = n_dofs // dim

    indices, targets = normalize_anchors(anchors, dim)
    if indices.min() < 0 or indices.max() >= n_vertices:
        bad = int(indices[(indices < 0) | (indices >= n_vertices)][0])
        raise InvalidConstraintError(
            f"Anchored vertex {bad} is out of range [0, {n_vertices}).",
            vertex_index=bad,
        )
    uniq, counts = np.unique(indices, return_counts=True)
    if np.any(counts > 1):
        dup = int(uniq[counts > 1][0])
        raise InvalidConstraintError(
            f"Vertex {dup} is anchored more than once.", vertex_index=dup
        )

    # dofs[k, a] = a * N_vertices + v_k
    dofs = (np.arange(dim)[None, :] * n_vertices + indices[:, None]).ravel()
    rhs[dofs] += penalty * targets.ravel()

    slots = None
    if sparse.issparse(L) and L.format == "csr":
        L.sort_indices()
        slots = _diagonal_slots(L, dofs)
    if slots is not None:
        L.data[slots] += penalty
    else:
        bump = np.zeros(n_dofs, dtype=float)
        bump[dofs] = penalty
        L = (sparse.csr_matrix(L) + sparse.diags(bump, format="csr")).tocsr()

    logger.debug("Applied %d soft anchors with penalty %g.", indices.size, penalty)
    return L, rhs


def proxy_energy(
    A: sparse.spmatrix,
    b: np.ndarray,
    measures: np.ndarray,
    flat_positions: np.ndarray,
) -> float:
    """Return ``Σ_e vol_e ‖W_e J_e(U) - W_e R_e‖²_F`` for flattened ``U``."""
    measures = np.asarray(measures, dtype=float).ravel()
    dim, n_elem, _ = _block_sizes(A, measures)
    residual = A @ np.asarray(flat_positions, dtype=float).ravel() - np.asarray(b).ravel()
    return float(np.dot(expand_measures(measures, dim, n_elem), residual * residual))


__all__ = [
    "apply_soft_constraints",
    "build_linear_system",
    "normalize_anchors",
    "proxy_energy",
]
