"""
Damped Newton's method for nonlinear systems R(u) = 0, with the Jacobian computed by
finite differences or complex step and the linear systems solved by a
LinearSolverContext.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
import warnings

import numpy as np
from mpi4py import MPI

from cnadjoint.errors import LinearSolverDivergedError, NewtonConvergenceWarning
from cnadjoint.file_writer import write_jacobian
from cnadjoint.globalization import KrylovToleranceUpdate, PseudoTransientContinuation
from cnadjoint.jacobian import JacobianBuilder, evaluate_residual
from cnadjoint.linear_solvers import (
    LinearSolverContext,
    ResidualJacobianSource,
    create_linear_solver,
)
from cnadjoint.parallel import scaled_norm
from cnadjoint.solver_options import SolverOptions


class NewtonStatus(Enum):
    """States of the Newton iteration."""

    INIT = "init"
    ITERATE = "iterate"
    CONVERGED = "converged"
    DIVERGED = "diverged"
    MAX_ITERS = "max_iters"


@dataclass
class NewtonResult:
    """
    Outcome of a Newton solve.

    Parameters
    ----------
    state: np.ndarray
        Last (finite) iterate.
    status: NewtonStatus
        CONVERGED, DIVERGED or MAX_ITERS.
    iterations: int
        Number of Newton updates that were applied.
    residual_norm: float
        Scaled residual norm of the returned state.
    step_norm: float
        Scaled norm of the last undamped Newton correction.
    step_factor: float
        Damping factor at the end of the solve.
    residual_history: list
        Scaled residual norms, one per residual evaluation of the iteration.
    step_history: list
        Scaled norms of the undamped Newton corrections.
    """

    state: np.ndarray
    status: NewtonStatus
    iterations: int
    residual_norm: float
    step_norm: float
    step_factor: float
    residual_history: list = field(default_factory=list)
    step_history: list = field(default_factory=list)

    @property
    def converged(self) -> bool:
        """Whether the solve converged."""
        return self.status == NewtonStatus.CONVERGED


class NewtonDriver:
    """
    Solves R(u) = 0 with a damped Newton's method.

    In each iteration the residual is evaluated, the Jacobian (or its matrix-free
    product) is handed to the linear solver, and the update solves J du = -R. The
    update is damped by the step factor, which starts at initial_step_factor and
    grows by step_growth (capped at 1) whenever the norm of the undamped correction
    decreased compared to the previous iteration. All norms are 2-norms of the global
    vectors divided by the global number of entries.

    Parameters
    ----------
    residual: Callable[[np.ndarray], np.ndarray]
        Residual function.
    options: SolverOptions, optional
        Options of Newton and the linear solver.
    linear_solver: LinearSolverContext, optional
        Linear solver. Created from the options if not given.
    comm: MPI.Comm
        Communicator of the distributed state.
    mass: float or np.ndarray, optional
        Diagonal of the mass matrix for pseudo-transient continuation.
    sparsity: array_like or sparse matrix, optional
        Sparsity pattern of the Jacobian for colouring.
    """

    # pylint: disable=too-many-arguments, too-many-instance-attributes

    def __init__(
        self,
        residual,
        options: SolverOptions | None = None,
        linear_solver: LinearSolverContext | None = None,
        comm: MPI.Comm = MPI.COMM_WORLD,
        mass=None,
        sparsity=None,
    ):
        self.residual = residual
        self.options = SolverOptions() if options is None else options
        self.comm = comm
        self.mass = mass
        self.sparsity = sparsity
        self.jacobian_builder = JacobianBuilder.from_options(self.options, comm)
        self._owns_linear_solver = linear_solver is None
        self.linear_solver = (
            create_linear_solver(self.options, comm)
            if linear_solver is None
            else linear_solver
        )
        self.status = NewtonStatus.INIT
        self.n_solves = 0

    def _print(self, message: str, level: int = 1):
        if self.comm.rank == 0 and self.options.verbosity >= level:
            print(message)

    def _setup_globalization(self):
        krylov_update = None
        if not self.linear_solver.lo.is_direct:
            krylov_update = KrylovToleranceUpdate(
                self.options.krylov_reltol, self.options.krylov_gamma
            )
            krylov_update.apply(self.linear_solver)
        pseudo_transient = None
        if self.options.newton_globalize_euler:
            pseudo_transient = PseudoTransientContinuation(
                self.options.euler_tau, self.mass
            )
        return krylov_update, pseudo_transient

    def _residual_and_norm(self, state):
        residual = evaluate_residual(self.residual, state, check_finite=False)
        return residual, scaled_norm(residual, self.comm)

    def solve(self, initial_state: np.ndarray) -> NewtonResult:
        """
        Runs Newton's method from the initial state. The initial state is not
        modified.

        Returns
        -------
        NewtonResult
            Final state and convergence information. Reaching itermax is reported
            with a NewtonConvergenceWarning, not an exception.

        Raises
        ------
        ComplexStepError
            If the complex step is requested, but the residual doesn't support it.
        ResidualEvaluationError
            If the residual function raises.
        """
        # pylint: disable=too-many-locals, too-many-branches, too-many-statements
        options = self.options
        state = np.array(initial_state, dtype=float)
        self.status = NewtonStatus.INIT
        if self.jacobian_builder.is_complex_step:
            self.jacobian_builder.check_complex_support(self.residual, state)
        krylov_update, pseudo_transient = self._setup_globalization()

        step_factor = options.initial_step_factor
        step_growth = options.resolved_step_growth
        residual_history = []
        step_history = []
        step_norm = np.inf
        previous_step_norm = None
        previous_residual_norm = np.inf
        residual_norm = np.inf
        iterations = 0
        last_update = None

        self.status = NewtonStatus.ITERATE
        while True:
            residual, residual_norm = self._residual_and_norm(state)
            if not np.isfinite(residual_norm):
                self.status = NewtonStatus.DIVERGED
                if last_update is not None:
                    # revert to the last finite iterate
                    state -= last_update
                    residual_norm = residual_history[-1]
                break
            residual_history.append(residual_norm)
            self._print(
                f"Newton iteration {iterations}: residual norm {residual_norm:.6e}, "
                f"step factor {step_factor:.3f}",
                2,
            )
            if residual_norm < options.res_tol:
                self.status = NewtonStatus.CONVERGED
                break
            if iterations == options.itermax:
                self.status = NewtonStatus.MAX_ITERS
                break

            if iterations > 0:
                if krylov_update is not None:
                    krylov_update.update(residual_norm, previous_residual_norm)
                    krylov_update.apply(self.linear_solver)
                if pseudo_transient is not None:
                    pseudo_transient.update(residual_norm, previous_residual_norm)

            source = ResidualJacobianSource(
                self.residual,
                state,
                self.jacobian_builder,
                sparsity=self.sparsity,
                base_residual=None if self.jacobian_builder.is_complex_step else residual,
                shift=0.0 if pseudo_transient is None else pseudo_transient.shift,
                mass=self.mass,
            )
            if iterations % options.recalc_prec_freq == 0:
                self.linear_solver.calc_pc_and_lo(source)
            else:
                self.linear_solver.calc_linear_operator(source)
            if options.write_jacobian:
                write_jacobian(
                    os.path.join(options.jacobian_dump_dir, f"jacobian{iterations}.dat"),
                    source.assemble(),
                    self.comm,
                )

            try:
                solve_result = self.linear_solver.linear_solve(-residual)
            except LinearSolverDivergedError as error:
                self._print(f"Newton iteration {iterations}: {error}")
                self.status = NewtonStatus.DIVERGED
                break
            self.n_solves += 1

            last_update = step_factor * solve_result.x
            state += last_update
            iterations += 1
            step_norm = scaled_norm(solve_result.x, self.comm)
            step_history.append(step_norm)
            self._print(
                f"Newton iteration {iterations}: step norm {step_norm:.6e}, "
                f"linear solve with {solve_result.method}, {solve_result.n_iter} "
                "iterations",
                2,
            )
            if step_norm < options.step_tol:
                self.status = NewtonStatus.CONVERGED
                residual_norm = self._residual_and_norm(state)[1]
                break

            if previous_step_norm is not None and step_norm < previous_step_norm:
                step_factor = min(1.0, step_factor * step_growth)
            previous_step_norm = step_norm
            previous_residual_norm = residual_norm

        if self.status == NewtonStatus.MAX_ITERS:
            warnings.warn(
                f"Newton's method did not converge in {options.itermax} iterations. "
                f"Final step size: {step_norm:.6e}, final residual: "
                f"{residual_norm:.6e}.",
                NewtonConvergenceWarning,
            )
        self._print(
            f"Newton's method finished with status {self.status.value} after "
            f"{iterations} iterations, residual norm {residual_norm:.6e}."
        )
        return NewtonResult(
            state,
            self.status,
            iterations,
            residual_norm,
            step_norm,
            step_factor,
            residual_history,
            step_history,
        )

    def free(self):
        """Frees the linear solver, if it was created by this driver."""
        if self._owns_linear_solver:
            self.linear_solver.free()


def newton_solve(residual, initial_state, options: SolverOptions | None = None, **kwargs):
    """Shortcut for NewtonDriver(residual, options, **kwargs).solve(initial_state)."""
    driver = NewtonDriver(residual, options, **kwargs)
    try:
        return driver.solve(initial_state)
    finally:
        driver.free()
