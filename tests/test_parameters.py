import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from parameters.global_parameters import GlobalParameters


def test_defaults():
    params = GlobalParameters()
    assert params.proximal_weight == 0.0
    assert params.soft_constraint_penalty == 1000.0
    assert params.num_workers == 1
    assert params.reuse_sparsity_pattern is True
    assert "max_iterations" in params
    assert params.log_file is None
    assert params.debug is False


def test_attribute_and_dict_access_stay_in_sync():
    params = GlobalParameters({"proximal_weight": 0.25})
    assert params.get("proximal_weight") == 0.25
    params.proximal_weight = 0.5
    assert params.to_dict()["proximal_weight"] == 0.5
    params.set("tolerance", 1e-4)
    assert params.tolerance == 1e-4


def test_unknown_attribute_raises():
    params = GlobalParameters()
    with pytest.raises(AttributeError):
        params.not_a_parameter
    assert params.get("not_a_parameter", 3) == 3
    assert "GlobalParameters(" in repr(params)
