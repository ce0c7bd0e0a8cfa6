import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.exceptions import ShapeMismatchError
from geometry.element_mesh import ElementMesh
from geometry.gradient_operators import mesh_gradient_operators
from runtime.assembly import (
    TripletBuffer,
    assemble_targets,
    assemble_weighted_operator,
    build_assembly_pattern,
    expand_measures,
)
from runtime.jacobians import evaluate_jacobians, flatten_matrices, jacobian_matrices
from sample_meshes import cube_tetrahedra, random_matrices, square_grid, unit_triangle


def _flat(u: np.ndarray) -> np.ndarray:
    return u.flatten(order="F")


@pytest.mark.parametrize("mesh_factory", [lambda: square_grid(3, 2, jitter=0.2), cube_tetrahedra])
def test_operator_reproduces_weighted_jacobians(mesh_factory):
    mesh = mesh_factory()
    ops, _ = mesh_gradient_operators(mesh)
    d = mesh.dim
    weights = random_matrices(mesh.n_elements, d, seed=2)
    u = np.random.default_rng(4).normal(size=(mesh.n_vertices, d))

    A = assemble_weighted_operator(ops, weights)
    assert A.shape == (d * d * mesh.n_elements, d * mesh.n_vertices)

    jac = jacobian_matrices(evaluate_jacobians(u, ops))
    expected = flatten_matrices(np.matmul(weights, jac)).ravel()
    np.testing.assert_allclose(A @ _flat(u), expected, atol=1e-12)


def test_identity_weights_give_identity_on_reference_triangle():
    mesh = unit_triangle()
    ops, _ = mesh_gradient_operators(mesh)
    A = assemble_weighted_operator(ops, np.eye(2)[None])
    np.testing.assert_allclose(
        A @ _flat(mesh.reference_positions), [1.0, 0.0, 0.0, 1.0], atol=1e-14
    )


def test_operator_is_linear():
    mesh = square_grid(2, 2, jitter=0.15, seed=5)
    ops, _ = mesh_gradient_operators(mesh)
    A = assemble_weighted_operator(ops, random_matrices(mesh.n_elements, 2, seed=9))
    rng = np.random.default_rng(11)
    u1 = rng.normal(size=2 * mesh.n_vertices)
    u2 = rng.normal(size=2 * mesh.n_vertices)
    alpha, beta = 1.7, -0.3
    np.testing.assert_allclose(
        A @ (alpha * u1 + beta * u2), alpha * (A @ u1) + beta * (A @ u2), atol=1e-12
    )


def test_rows_have_bounded_support():
    mesh = cube_tetrahedra()
    ops, _ = mesh_gradient_operators(mesh)
    A = assemble_weighted_operator(ops, random_matrices(mesh.n_elements, 3))
    row_nnz = np.diff(A.indptr)
    assert row_nnz.max() <= 3 * (3 + 1)


def test_pattern_reuse_matches_fresh_assembly():
    mesh = square_grid(5, 4, jitter=0.2, seed=1)
    ops, _ = mesh_gradient_operators(mesh)
    pattern = build_assembly_pattern(ops, chunk_size=7)
    for seed in range(3):
        weights = random_matrices(mesh.n_elements, 2, seed=seed)
        fresh = assemble_weighted_operator(ops, weights)
        reused = assemble_weighted_operator(ops, weights, pattern=pattern)
        assert reused.shape == fresh.shape
        assert abs(reused - fresh).max() < 1e-14


def test_parallel_chunks_match_serial_assembly():
    mesh = cube_tetrahedra()
    ops, _ = mesh_gradient_operators(mesh)
    weights = random_matrices(mesh.n_elements, 3, seed=3)
    serial = assemble_weighted_operator(ops, weights)
    parallel = assemble_weighted_operator(ops, weights, num_workers=3, chunk_size=1)
    np.testing.assert_array_equal(parallel.toarray(), serial.toarray())

    pattern = build_assembly_pattern(ops, num_workers=2, chunk_size=2)
    reused = assemble_weighted_operator(ops, weights, num_workers=2, pattern=pattern)
    np.testing.assert_allclose(reused.toarray(), serial.toarray(), atol=1e-14)


def test_pattern_rejects_other_operators():
    small, _ = mesh_gradient_operators(square_grid(1, 1))
    large, _ = mesh_gradient_operators(square_grid(2, 1))
    pattern = build_assembly_pattern(small)
    with pytest.raises(ShapeMismatchError):
        assemble_weighted_operator(
            large, random_matrices(large[0].shape[0], 2), pattern=pattern
        )


def test_pattern_reuse_reads_coefficients_of_rescaled_geometry():
    mesh = square_grid(3, 2, jitter=0.2, seed=5)
    ops, _ = mesh_gradient_operators(mesh)
    scaled = ElementMesh(mesh.reference_positions * [2.0, 0.5], mesh.elements)
    scaled_ops, _ = mesh_gradient_operators(scaled)
    pattern = build_assembly_pattern(ops, chunk_size=4)
    assert pattern.matches(scaled_ops)

    weights = random_matrices(mesh.n_elements, 2, seed=9)
    fresh = assemble_weighted_operator(scaled_ops, weights)
    reused = assemble_weighted_operator(scaled_ops, weights, pattern=pattern)
    np.testing.assert_allclose(reused.toarray(), fresh.toarray(), atol=1e-14)

    original = assemble_weighted_operator(ops, weights, pattern=pattern)
    assert abs(original - reused).max() > 0.1


def test_pattern_rejects_same_count_with_other_sparsity():
    mesh = square_grid(1, 1)
    flipped = ElementMesh(mesh.reference_positions, [[0, 1, 2], [1, 3, 2]])
    ops, _ = mesh_gradient_operators(mesh)
    flipped_ops, _ = mesh_gradient_operators(flipped)
    assert sum(op.nnz for op in ops) == sum(op.nnz for op in flipped_ops)

    pattern = build_assembly_pattern(ops)
    assert not pattern.matches(flipped_ops)
    with pytest.raises(ShapeMismatchError):
        assemble_weighted_operator(flipped_ops, random_matrices(2, 2), pattern=pattern)


def test_weight_shape_mismatch_raises():
    ops, _ = mesh_gradient_operators(unit_triangle())
    with pytest.raises(ShapeMismatchError):
        assemble_weighted_operator(ops, np.eye(3)[None])
    with pytest.raises(ShapeMismatchError):
        assemble_weighted_operator(ops, np.stack([np.eye(2)] * 2))


def test_targets_follow_operator_row_layout():
    weights = np.array([[[2.0, 0.0], [1.0, 3.0]]])
    frames = np.array([[[0.0, -1.0], [1.0, 0.0]]])
    # W R = [[0, -2], [3, -1]] flattened column by column
    np.testing.assert_allclose(assemble_targets(weights, frames), [0.0, 3.0, -2.0, -1.0])


def test_targets_match_operator_at_exact_fit():
    mesh = square_grid(2, 2, jitter=0.1, seed=2)
    ops, _ = mesh_gradient_operators(mesh)
    weights = random_matrices(mesh.n_elements, 2, seed=6)
    u = np.random.default_rng(8).normal(size=(mesh.n_vertices, 2))
    frames = jacobian_matrices(evaluate_jacobians(u, ops))
    A = assemble_weighted_operator(ops, weights)
    np.testing.assert_allclose(A @ _flat(u), assemble_targets(weights, frames), atol=1e-12)


def test_target_shape_mismatch_raises():
    with pytest.raises(ShapeMismatchError):
        assemble_targets(np.stack([np.eye(2)] * 2), np.eye(2)[None])


def test_expand_measures_repeats_per_block():
    np.testing.assert_array_equal(
        expand_measures([0.5, 2.0], 2, 2), [0.5] * 4 + [2.0] * 4
    )
    with pytest.raises(ShapeMismatchError):
        expand_measures([1.0], 2, 2)


def test_triplet_buffer_sums_duplicates():
    buf = TripletBuffer()
    buf.append([0, 1], [1, 1], [1.0, 2.0])
    other = TripletBuffer()
    other.append([0], [1], [0.5])
    buf.extend(other)
    assert len(buf) == 3
    mat = buf.freeze((2, 2))
    np.testing.assert_allclose(mat.toarray(), [[0.0, 1.5], [0.0, 2.0]])
    assert TripletBuffer().freeze((3, 3)).nnz == 0
