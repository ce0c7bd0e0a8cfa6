# runtime/local_global.py

import logging
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as splinalg

from core.exceptions import SingularSystemError
from parameters.global_parameters import GlobalParameters
from runtime.assembly import (
    assemble_targets,
    assemble_weighted_operator,
    check_element_matrices,
)
from runtime.linear_system import (
    Anchors,
    apply_soft_constraints,
    build_linear_system,
    proxy_energy,
)
from runtime.logging_config import configure_from_parameters
from runtime.solver_state import SolverState

logger = logging.getLogger("distortion_solver")

# jacobians (N_elements, d * d) -> (weights, frames), each (N_elements, d, d)
FrameProvider = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]


class LocalGlobalSolver:
    """Coordinate assembly and sparse solves for a local-global iteration.

    The local step (choosing ``W_e`` and ``R_e`` from the current Jacobians)
    is supplied by the caller; this class only assembles and solves the
    global quadratic step and advances ``state``.
    """

    def __init__(
        self,
        state: SolverState,
        global_params: Optional[GlobalParameters] = None,
        quiet: bool = False,
    ) -> None:
        self.state = state
        self.global_params = global_params or GlobalParameters()
        self.quiet = quiet
        configure_from_parameters(self.global_params, quiet=quiet)

    def _param(self, key, override=None):
        return self.global_params.get(key) if override is None else override

    def jacobians(self) -> np.ndarray:
        """Jacobian field of the current iterate, flattened per element."""
        return self.state.jacobians()

    def weighted_operator(self, weights: np.ndarray) -> sparse.csr_matrix:
        """Assemble ``A`` for ``weights``, reusing the cached pattern if enabled."""
        num_workers = int(self.global_params.get("num_workers", 1))
        chunk_size = int(self.global_params.get("chunk_size", 4096))
        pattern = None
        if bool(self.global_params.get("reuse_sparsity_pattern", True)):
            pattern = self.state.assembly_pattern(
                num_workers=num_workers, chunk_size=chunk_size
            )
        return assemble_weighted_operator(
            self.state.operators,
            weights,
            num_workers=num_workers,
            chunk_size=chunk_size,
            pattern=pattern,
        )

    def assemble(
        self,
        weights: np.ndarray,
        frames: np.ndarray,
        *,
        anchors: Optional[Anchors] = None,
        penalty: Optional[float] = None,
        proximal_weight: Optional[float] = None,
    ) -> Tuple[sparse.csr_matrix, np.ndarray]:
        """Return ``(L, rhs)`` for the current iterate as ``u_old``."""
        state = self.state
        weights = check_element_matrices(weights, state.dim, state.n_elements, "weights")
        frames = check_element_matrices(frames, state.dim, state.n_elements, "frames")

        A = self.weighted_operator(weights)
        b = assemble_targets(weights, frames)
        lam = float(self._param("proximal_weight", proximal_weight))
        L, rhs = build_linear_system(A, b, state.measures, state.flat_positions(), lam)

        if anchors:
            p_soft = float(self._param("soft_constraint_penalty", penalty))
            L, rhs = apply_soft_constraints(L, rhs, anchors, p_soft, dim=state.dim)

        state.set("weighted_operator", A)
        state.set("targets", b)
        return L, rhs

    def solve(
        self,
        L: sparse.spmatrix,
        rhs: np.ndarray,
        proximal_weight: Optional[float] = None,
    ) -> np.ndarray:
        """Solve ``L · u = rhs`` with a direct sparse factorization.

        ``proximal_weight`` is the λ ``L`` was built with; it is only reported
        on failure and defaults to the global parameter.
        """
        solution = splinalg.spsolve(sparse.csc_matrix(L), rhs)
        solution = np.asarray(solution, dtype=float).ravel()
        if not np.all(np.isfinite(solution)):
            raise SingularSystemError(
                "Sparse solve returned non-finite values; supply a positive "
                "proximal weight or anchors to pin rigid motions.",
                proximal_weight=self._param("proximal_weight", proximal_weight),
            )
        return solution

    def step(
        self,
        weights: np.ndarray,
        frames: np.ndarray,
        *,
        anchors: Optional[Anchors] = None,
        penalty: Optional[float] = None,
        proximal_weight: Optional[float] = None,
    ) -> float:
        """Advance one global step; return the max vertex displacement."""
        L, rhs = self.assemble(
            weights,
            frames,
            anchors=anchors,
            penalty=penalty,
            proximal_weight=proximal_weight,
        )
        lam = float(self._param("proximal_weight", proximal_weight))
        previous = self.state.positions.copy()
        self.state.set_flat_positions(self.solve(L, rhs, lam))
        self.state.iteration += 1
        displacement = float(
            np.max(np.linalg.norm(self.state.positions - previous, axis=1), initial=0.0)
        )
        return displacement

    def energy(self) -> float:
        """Proxy energy of the current iterate for the last assembled system."""
        A = self.state.get("weighted_operator")
        b = self.state.get("targets")
        if A is None or b is None:
            raise RuntimeError("No system has been assembled yet.")
        return proxy_energy(A, b, self.state.measures, self.state.flat_positions())

    def run(
        self,
        frame_provider: FrameProvider,
        *,
        anchors: Optional[Anchors] = None,
        max_iterations: Optional[int] = None,
        tolerance: Optional[float] = None,
    ) -> int:
        """Iterate local (``frame_provider``) and global steps.

        Stops once the max vertex displacement drops to ``tolerance`` or after
        ``max_iterations`` steps. Returns the number of steps taken.
        """
        n_iter = int(self._param("max_iterations", max_iterations))
        tol = float(self._param("tolerance", tolerance))

        for i in range(n_iter):
            weights, frames = frame_provider(self.jacobians())
            displacement = self.step(weights, frames, anchors=anchors)
            if not self.quiet:
                logger.info(
                    "Iteration %d: energy=%.6e, max displacement=%.3e",
                    i + 1,
                    self.energy(),
                    displacement,
                )
            if displacement <= tol:
                logger.debug("Converged after %d iterations.", i + 1)
                return i + 1

        logger.debug("Reached max_iterations=%d without converging.", n_iter)
        return n_iter

    def __repr__(self):
        msg = f"""### LOCAL-GLOBAL SOLVER ###
STATE:\t dim={self.state.dim}, vertices={self.state.n_vertices}, elements={self.state.n_elements}
GLOBAL PARAMETERS:\t {self.global_params}
ITERATION:\t {self.state.iteration}
############"""
        return msg
