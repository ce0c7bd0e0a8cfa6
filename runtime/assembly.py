"""Assembly of the weighted Jacobian operator ``A`` and target vector ``b``.

Row layout
----------
Row ``k = e * d² + c * d + r`` of ``A`` (and entry ``k`` of ``b``) belongs to
element ``e`` and entry ``(r, c)`` of ``W_e · J_e``, matching the Jacobian
layout of :mod:`runtime.jacobians`. Columns use the column-block flattening
of ``U``: column ``c * N_vertices + j`` is coordinate ``c`` of vertex ``j``.

Row ``(e, r, c)`` of ``A`` is ``Σ_a W_e[r, a] · G_a[e, :]`` placed in the
column block of coordinate ``c``.

Construction is build-then-freeze: contiguous element chunks each produce
their own triplet buffer (optionally on worker threads), the buffers are
concatenated in chunk order and compacted into CSR in one pass.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, List, Sequence, Tuple

import numpy as np
from scipy import sparse

from core.exceptions import ShapeMismatchError
from runtime.jacobians import flatten_matrices, validate_operators

logger = logging.getLogger("distortion_solver")


@dataclass
class TripletBuffer:
    """Growable (row, column, value) storage frozen into CSR once."""

    rows: List[np.ndarray] = field(default_factory=list)
    cols: List[np.ndarray] = field(default_factory=list)
    vals: List[np.ndarray] = field(default_factory=list)

    def append(self, rows: np.ndarray, cols: np.ndarray, vals: np.ndarray) -> None:
        self.rows.append(np.asarray(rows, dtype=np.int64).ravel())
        self.cols.append(np.asarray(cols, dtype=np.int64).ravel())
        self.vals.append(np.asarray(vals, dtype=float).ravel())

    def extend(self, other: "TripletBuffer") -> None:
        self.rows.extend(other.rows)
        self.cols.extend(other.cols)
        self.vals.extend(other.vals)

    def __len__(self) -> int:
        return int(sum(r.size for r in self.rows))

    def freeze(self, shape: Tuple[int, int]) -> sparse.csr_matrix:
        """Compact all triplets into a CSR matrix; duplicates are summed."""
        if not self.rows:
            return sparse.csr_matrix(shape, dtype=float)
        rows = np.concatenate(self.rows)
        cols = np.concatenate(self.cols)
        vals = np.concatenate(self.vals)
        mat = sparse.csr_matrix((vals, (rows, cols)), shape=shape)
        mat.sum_duplicates()
        return mat


def _canonical_operators(operators: Sequence) -> List[sparse.csr_matrix]:
    """CSR copies with summed duplicates and sorted column indices."""
    canon = []
    for op in operators:
        op = sparse.csr_matrix(op, dtype=float, copy=True)
        op.sum_duplicates()
        canon.append(op)
    return canon


@dataclass(frozen=True)
class OperatorEntries:
    """Nonzeros of all gradient operators, sorted by element.

    Entries of element ``e`` occupy ``offsets[e]:offsets[e + 1]``. ``order``
    maps the operators' concatenated CSR data onto this element order.
    """

    dim: int
    n_elements: int
    n_vertices: int
    element: np.ndarray
    vertex: np.ndarray
    axis: np.ndarray
    value: np.ndarray
    offsets: np.ndarray
    order: np.ndarray

    @classmethod
    def from_operators(cls, operators: Sequence) -> "OperatorEntries":
        dim, n_elem, n_vert = validate_operators(operators)
        canon = _canonical_operators(operators)
        elements, vertices, axes = [], [], []
        for a, op in enumerate(canon):
            elements.append(np.repeat(np.arange(n_elem, dtype=np.int64), np.diff(op.indptr)))
            vertices.append(op.indices.astype(np.int64))
            axes.append(np.full(op.nnz, a, dtype=np.int64))
        element = np.concatenate(elements)
        order = np.argsort(element, kind="stable")
        element = element[order]
        offsets = np.searchsorted(element, np.arange(n_elem + 1), side="left")
        return cls(
            dim=dim,
            n_elements=n_elem,
            n_vertices=n_vert,
            element=element,
            vertex=np.concatenate(vertices)[order],
            axis=np.concatenate(axes)[order],
            value=np.concatenate([op.data for op in canon])[order],
            offsets=offsets,
            order=order,
        )

    @property
    def shape(self) -> Tuple[int, int]:
        """Shape of the weighted operator ``A``."""
        d = self.dim
        return d * d * self.n_elements, d * self.n_vertices

    def chunk_structure(self, start: int, stop: int) -> Tuple[np.ndarray, np.ndarray]:
        """Row and column indices of ``A``'s triplets for elements ``[start, stop)``."""
        d, n = self.dim, self.n_vertices
        s = slice(self.offsets[start], self.offsets[stop])
        elem = self.element[s]
        vert = self.vertex[s]
        c = np.arange(d)
        # Triplet index order: (entry, c, r).
        rows = (
            elem[:, None, None] * (d * d)
            + c[None, :, None] * d
            + c[None, None, :]
        )
        cols = np.broadcast_to((c[None, :] * n + vert[:, None])[:, :, None], rows.shape)
        return rows.ravel(), cols.ravel()

    def chunk_values(self, weights: np.ndarray, start: int, stop: int) -> np.ndarray:
        """Triplet values ``W_e[r, a] · G_a[e, j]`` for elements ``[start, stop)``."""
        d = self.dim
        s = slice(self.offsets[start], self.offsets[stop])
        elem = self.element[s]
        # scaled[k, r] = W[e_k, r, a_k] * g_k
        scaled = weights[elem, :, self.axis[s]] * self.value[s][:, None]
        return np.broadcast_to(scaled[:, None, :], (elem.size, d, d)).ravel()


@dataclass
class AssemblyPattern:
    """Frozen CSR structure of ``A`` plus the triplet-to-slot map.

    Keyed on the operators' sparsity (``operator_indptr``/``operator_indices``)
    and ``d``. Coefficients are always read from the operators passed to
    :meth:`refresh`, so geometry changes with unchanged topology reuse it.
    """

    entries: OperatorEntries
    operator_indptr: Tuple[np.ndarray, ...]
    operator_indices: Tuple[np.ndarray, ...]
    indptr: np.ndarray
    indices: np.ndarray
    slots: np.ndarray
    chunk_size: int

    @property
    def shape(self) -> Tuple[int, int]:
        return self.entries.shape

    @property
    def nnz(self) -> int:
        return int(self.indices.size)

    def _matches_canonical(self, canon: Sequence[sparse.csr_matrix]) -> bool:
        e = self.entries
        if len(canon) != e.dim:
            return False
        return all(
            op.shape == (e.n_elements, e.n_vertices)
            and np.array_equal(op.indptr, indptr)
            and np.array_equal(op.indices, indices)
            for op, indptr, indices in zip(
                canon, self.operator_indptr, self.operator_indices
            )
        )

    def matches(self, operators: Sequence) -> bool:
        """True when ``operators`` have exactly the sparsity of this pattern."""
        return self._matches_canonical(_canonical_operators(operators))

    def refresh(self, operators: Sequence) -> OperatorEntries:
        """Return the pattern's entries carrying the coefficients of ``operators``."""
        validate_operators(operators)
        canon = _canonical_operators(operators)
        if not self._matches_canonical(canon):
            e = self.entries
            raise ShapeMismatchError(
                "gradient operators",
                (e.dim, e.n_elements, e.n_vertices),
                validate_operators(operators),
                message="Assembly pattern was built for a different operator sparsity.",
            )
        values = np.concatenate([op.data for op in canon])[self.entries.order]
        return replace(self.entries, value=values)

    def numeric(self, values: np.ndarray) -> sparse.csr_matrix:
        """Return ``A`` for triplet ``values`` ordered like the pattern's triplets."""
        data = np.bincount(self.slots, weights=values, minlength=self.nnz)
        return sparse.csr_matrix(
            (data, self.indices.copy(), self.indptr.copy()), shape=self.shape
        )


def _chunk_ranges(n_elements: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunk_size = max(int(chunk_size), 1)
    return [
        (start, min(start + chunk_size, n_elements))
        for start in range(0, n_elements, chunk_size)
    ]


def _map_chunks(
    func: Callable[[int, int], object],
    n_elements: int,
    *,
    num_workers: int,
    chunk_size: int,
) -> list:
    """Evaluate ``func`` over element chunks; results keep chunk order."""
    ranges = _chunk_ranges(n_elements, chunk_size)
    if int(num_workers) <= 1 or len(ranges) <= 1:
        return [func(start, stop) for start, stop in ranges]
    with ThreadPoolExecutor(max_workers=int(num_workers)) as pool:
        return list(pool.map(lambda r: func(*r), ranges))


def check_element_matrices(
    matrices: np.ndarray, dim: int, n_elements: int, name: str
) -> np.ndarray:
    """Return per-element ``(N, d, d)`` matrices as floats or raise."""
    matrices = np.asarray(matrices, dtype=float)
    if matrices.shape != (n_elements, dim, dim):
        raise ShapeMismatchError(name, (n_elements, dim, dim), matrices.shape)
    return matrices


def build_assembly_pattern(
    operators: Sequence,
    *,
    num_workers: int = 1,
    chunk_size: int = 4096,
) -> AssemblyPattern:
    """Compute the CSR structure of ``A`` for the given gradient operators."""
    validate_operators(operators)
    canon = _canonical_operators(operators)
    entries = OperatorEntries.from_operators(canon)
    structure = _map_chunks(
        entries.chunk_structure,
        entries.n_elements,
        num_workers=num_workers,
        chunk_size=chunk_size,
    )
    n_rows, n_cols = entries.shape
    if structure:
        rows = np.concatenate([s[0] for s in structure])
        cols = np.concatenate([s[1] for s in structure])
    else:
        rows = cols = np.zeros(0, dtype=np.int64)

    # Unique (row, col) keys come out sorted row-major, i.e. in CSR order.
    keys = rows * n_cols + cols
    unique_keys, slots = np.unique(keys, return_inverse=True)
    indices = (unique_keys % n_cols).astype(np.int64)
    counts = np.bincount(unique_keys // n_cols, minlength=n_rows)
    indptr = np.zeros(n_rows + 1, dtype=np.int64)
    np.cumsum(counts, out=indptr[1:])

    logger.debug(
        "Built assembly pattern: shape=%s, triplets=%d, nnz=%d.",
        (n_rows, n_cols),
        keys.size,
        unique_keys.size,
    )
    return AssemblyPattern(
        entries=entries,
        operator_indptr=tuple(op.indptr.copy() for op in canon),
        operator_indices=tuple(op.indices.copy() for op in canon),
        indptr=indptr,
        indices=indices,
        slots=slots.ravel(),
        chunk_size=int(chunk_size),
    )


def assemble_weighted_operator(
    operators: Sequence,
    weights: np.ndarray,
    *,
    num_workers: int = 1,
    chunk_size: int = 4096,
    pattern: AssemblyPattern | None = None,
) -> sparse.csr_matrix:
    """Build ``A`` with ``A · flatten(U) = flatten({W_e · J_e(U)})``.

    Parameters
    ----------
    operators:
        ``d`` gradient operators of shape ``(N_elements, N_vertices)``.
    weights:
        Per-element weight matrices ``W_e`` of shape ``(N_elements, d, d)``.
    num_workers, chunk_size:
        Element partitioning of the per-element phase.
    pattern:
        Optional cached structure from :func:`build_assembly_pattern`. The
        operators must share its sparsity; their current coefficients are
        used and only values are recomputed.
    """
    if pattern is not None:
        entries = pattern.refresh(operators)
        weights = check_element_matrices(
            weights, entries.dim, entries.n_elements, "weights"
        )
        values = _map_chunks(
            lambda start, stop: entries.chunk_values(weights, start, stop),
            entries.n_elements,
            num_workers=num_workers,
            chunk_size=pattern.chunk_size,
        )
        flat = np.concatenate(values) if values else np.zeros(0, dtype=float)
        logger.debug("Reused assembly pattern (nnz=%d).", pattern.nnz)
        return pattern.numeric(flat)

    entries = OperatorEntries.from_operators(operators)
    weights = check_element_matrices(weights, entries.dim, entries.n_elements, "weights")

    def _chunk_buffer(start: int, stop: int) -> TripletBuffer:
        buf = TripletBuffer()
        rows, cols = entries.chunk_structure(start, stop)
        buf.append(rows, cols, entries.chunk_values(weights, start, stop))
        return buf

    merged = TripletBuffer()
    for buf in _map_chunks(
        _chunk_buffer,
        entries.n_elements,
        num_workers=num_workers,
        chunk_size=chunk_size,
    ):
        merged.extend(buf)

    mat = merged.freeze(entries.shape)
    logger.debug(
        "Assembled weighted operator: shape=%s, triplets=%d, nnz=%d.",
        mat.shape,
        len(merged),
        mat.nnz,
    )
    return mat


def assemble_targets(weights: np.ndarray, frames: np.ndarray) -> np.ndarray:
    """Return ``b`` with entry ``(e, r, c) = (W_e · R_e)[r, c]`` in ``A``'s row order."""
    weights = np.asarray(weights, dtype=float)
    if weights.ndim != 3 or weights.shape[1] != weights.shape[2]:
        raise ShapeMismatchError("weights", "(N_elements, d, d)", weights.shape)
    frames = check_element_matrices(
        frames, weights.shape[1], weights.shape[0], "frames"
    )
    return flatten_matrices(np.matmul(weights, frames)).ravel()


def expand_measures(measures: np.ndarray, dim: int, n_elements: int) -> np.ndarray:
    """Repeat per-element measures over the ``d²`` rows of each element."""
    measures = np.asarray(measures, dtype=float).ravel()
    if measures.shape != (n_elements,):
        raise ShapeMismatchError("measures", (n_elements,), measures.shape)
    return np.repeat(measures, dim * dim)


__all__ = [
    "AssemblyPattern",
    "OperatorEntries",
    "TripletBuffer",
    "assemble_targets",
    "assemble_weighted_operator",
    "build_assembly_pattern",
    "check_element_matrices",
    "expand_measures",
]
