import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.exceptions import (
    DegenerateElementError,
    DistortionSolverError,
    InvalidConstraintError,
    ShapeMismatchError,
    SingularSystemError,
    UnsupportedDimensionError,
)


def test_shape_mismatch_is_a_value_error_with_context():
    err = ShapeMismatchError("positions", (3, 2), (4, 2))
    assert isinstance(err, DistortionSolverError)
    assert isinstance(err, ValueError)
    assert err.expected == (3, 2)
    assert err.actual == (4, 2)
    assert "positions" in str(err)


def test_degenerate_element_message_truncates_long_lists():
    err = DegenerateElementError(range(12))
    assert err.element_indices == list(range(12))
    assert "12 reference element(s)" in str(err)
    assert "..." in str(err)


@pytest.mark.parametrize(
    "exc",
    [
        UnsupportedDimensionError(4),
        InvalidConstraintError("bad", vertex_index=2),
        SingularSystemError("nan", proximal_weight=0.0),
    ],
)
def test_all_errors_share_the_base_class(exc):
    assert isinstance(exc, DistortionSolverError)
