import logging
import os
import sys

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from parameters.global_parameters import GlobalParameters
from runtime.local_global import LocalGlobalSolver
from runtime.logging_config import configure_from_parameters, setup_logging
from runtime.solver_state import SolverState
from sample_meshes import square_grid


def test_setup_logging_quiet_has_no_console_handler(tmp_path):
    log_file = tmp_path / "solver.log"
    logger = setup_logging(str(log_file), quiet=True, debug=True)
    try:
        assert logger.name == "distortion_solver"
        assert logger.level == logging.DEBUG
        assert logger.propagate is True
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.FileHandler)

        logger.debug("assembled")
        logger.handlers[0].flush()
        assert "assembled" in log_file.read_text()
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_setup_logging_replaces_previous_handlers():
    setup_logging(None)
    logger = setup_logging(None)
    try:
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)


def test_unwritable_log_file_is_reported(tmp_path, capsys):
    bad = tmp_path / "missing" / "solver.log"
    logger = setup_logging(str(bad), quiet=True)
    assert logger.handlers == []
    assert "Could not open log file" in capsys.readouterr().out


def _reset(logger):
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_parameters_without_logging_keys_leave_handlers_alone():
    logger = logging.getLogger("distortion_solver")
    sentinel = logging.NullHandler()
    logger.addHandler(sentinel)
    try:
        assert configure_from_parameters(GlobalParameters()) is None
        assert sentinel in logger.handlers
    finally:
        logger.removeHandler(sentinel)


def test_solver_writes_debug_log_file_from_parameters(tmp_path):
    log_file = tmp_path / "run.log"
    params = GlobalParameters(
        {"log_file": str(log_file), "debug": True, "proximal_weight": 0.5}
    )
    mesh = square_grid(2, 1)
    state = SolverState.from_mesh(mesh, positions=1.1 * mesh.reference_positions)
    solver = LocalGlobalSolver(state, params, quiet=True)
    logger = logging.getLogger("distortion_solver")
    try:
        assert logger.level == logging.DEBUG
        assert [type(h) for h in logger.handlers] == [logging.FileHandler]

        eye = np.tile(np.eye(2), (mesh.n_elements, 1, 1))
        solver.step(eye, eye)
        logger.handlers[0].flush()
        text = log_file.read_text()
        assert "Logging configured" in text
        assert "Assembled normal equations" in text
    finally:
        _reset(logger)
