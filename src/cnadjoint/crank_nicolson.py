"""
Forward Crank-Nicolson time integration of du/dt = f(u, t) with fixed time step.

Each step solves the nonlinear step residual

    G(u_new) = u_new - u_old - dt/2 * (f(u_new, t_new) + f(u_old, t_old)) = 0

with Newton's method. The states (and the physics Jacobians df/du) of all steps are
stored in a checkpoint store, from which the adjoint engine runs the reverse sweep.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from mpi4py import MPI
from scipy.sparse import csc_matrix, identity

from cnadjoint.checkpoint_interface import AllStepsCheckpointStore, CheckpointStore
from cnadjoint.errors import SetupError, TimeStepError
from cnadjoint.file_writer import FileWriterInterface
from cnadjoint.jacobian import JacobianBuilder
from cnadjoint.linear_solvers import LinearSolverContext, create_linear_solver
from cnadjoint.newton import NewtonDriver, NewtonResult, NewtonStatus
from cnadjoint.solver_options import JacobianType, SolverOptions
from cnadjoint.time_control import TimeControl


@dataclass
class ForwardSolution:
    """
    Result of the forward sweep.

    Parameters
    ----------
    state: np.ndarray
        State after the last step.
    time: float
        Time after the last step.
    newton_results: list
        Newton result of every step.
    checkpoint_store: CheckpointStore
        Sealed store with the checkpoints of all steps.
    """

    state: np.ndarray
    time: float
    newton_results: list = field(default_factory=list)
    checkpoint_store: CheckpointStore = None

    @property
    def num_steps(self) -> int:
        """Number of computed time steps."""
        return len(self.newton_results)


class CrankNicolsonIntegrator:
    """
    Crank-Nicolson integrator with checkpointing for the discrete adjoint.

    Parameters
    ----------
    physics: Callable[[np.ndarray, float], np.ndarray]
        Right-hand side f(u, t). Needs to accept complex state for the complex step.
    time_control: TimeControl
        Initial time, time step size and number of steps.
    options: SolverOptions, optional
        Options for Newton and the linear solver. Matrix-free Jacobians are not
        supported.
    checkpoint_store: CheckpointStore, optional
        Where the steps are stored, defaults to an in-memory store.
    linear_solver: LinearSolverContext, optional
        Linear solver for the Newton solves, created from the options if not given.
    store_jacobians: bool
        Whether the physics Jacobians are stored with the states.
    file_writer: FileWriterInterface, optional
        Writer for the state trajectory.
    comm: MPI.Comm
        Communicator of the distributed state.
    sparsity: array_like or sparse matrix, optional
        Sparsity pattern of df/du.
    """

    # pylint: disable=too-many-arguments, too-many-instance-attributes

    def __init__(
        self,
        physics: Callable[[np.ndarray, float], np.ndarray],
        time_control: TimeControl,
        options: SolverOptions | None = None,
        checkpoint_store: CheckpointStore | None = None,
        linear_solver: LinearSolverContext | None = None,
        store_jacobians: bool = True,
        file_writer: FileWriterInterface | None = None,
        comm: MPI.Comm = MPI.COMM_WORLD,
        sparsity=None,
    ):
        self.options = SolverOptions() if options is None else options
        if self.options.jac_type == JacobianType.MATRIX_FREE:
            raise SetupError(
                "Crank-Nicolson needs explicit Jacobians for its adjoint, matrix-free "
                "Jacobians are not supported."
            )
        self.physics = physics
        self.time_control = time_control
        self.checkpoint_store = (
            AllStepsCheckpointStore() if checkpoint_store is None else checkpoint_store
        )
        self.linear_solver = linear_solver
        self.store_jacobians = store_jacobians
        self.file_writer = file_writer
        self.comm = comm
        self.sparsity = sparsity
        self._step_sparsity = None
        if sparsity is not None:
            # the step residual has the pattern of df/du plus the diagonal
            self._step_sparsity = csc_matrix(sparsity, dtype=bool) + identity(
                np.shape(sparsity)[0], dtype=bool, format="csc"
            )
        self.jacobian_builder = JacobianBuilder.from_options(self.options, comm)

    def _print(self, message: str, level: int = 1):
        if self.comm.rank == 0 and self.options.verbosity >= level:
            print(message)

    def step_residual(
        self,
        new_state: np.ndarray,
        old_state: np.ndarray,
        old_rhs: np.ndarray,
        new_time: float,
    ) -> np.ndarray:
        """Crank-Nicolson residual G(u_new) for the step from old_state."""
        return (
            new_state
            - old_state
            - 0.5
            * self.time_control.delta_t
            * (self.physics(new_state, new_time) + old_rhs)
        )

    def physics_jacobian(self, state: np.ndarray, time: float):
        """Jacobian df/du at the given state and time."""

        def rhs(perturbed_state):
            return self.physics(perturbed_state, time)

        if self.sparsity is not None:
            return self.jacobian_builder.build_sparse(rhs, state, self.sparsity)
        return self.jacobian_builder.build(rhs, state)

    def _store(self, step: int, state: np.ndarray, time: float):
        jacobian = self.physics_jacobian(state, time) if self.store_jacobians else None
        self.checkpoint_store.put(step, state, jacobian, time)
        if self.file_writer is not None:
            self.file_writer.write_step(step, time, state, "state")

    def integrate(self, initial_state: np.ndarray) -> ForwardSolution:
        """
        Runs the forward sweep from the initial state and seals the checkpoint store.

        Raises
        ------
        TimeStepError
            If Newton's method diverges in a step.
        """
        time_control = self.time_control
        time_control.reset()
        state = np.array(initial_state, dtype=float)
        self._print("\n" + "=" * 32 + " forward starts " + "=" * 32 + "\n")
        self._store(0, state, time_control.step_time)
        newton_results: list[NewtonResult] = []
        linear_solver = (
            create_linear_solver(self.options, self.comm)
            if self.linear_solver is None
            else self.linear_solver
        )

        while time_control.termination_condition_status():
            step = time_control.step
            old_time = time_control.time_of_step(step - 1)
            new_time = time_control.step_time
            old_state = state
            old_rhs = self.physics(old_state, old_time)

            def residual(
                new_state, old_state=old_state, old_rhs=old_rhs, new_time=new_time
            ):
                return self.step_residual(new_state, old_state, old_rhs, new_time)

            newton = NewtonDriver(
                residual,
                self.options,
                linear_solver,
                self.comm,
                sparsity=self._step_sparsity,
            )
            result = newton.solve(old_state)
            if result.status == NewtonStatus.DIVERGED:
                raise TimeStepError(
                    f"Newton's method diverged in step {step} at time {new_time}."
                )
            newton_results.append(result)
            state = result.state
            self._store(step, state, new_time)
            self._print(
                f"Finished step <{step}> at time {new_time:.6e} after "
                f"{result.iterations} Newton iterations.",
                1,
            )

        self.checkpoint_store.seal()
        if self.linear_solver is None:
            linear_solver.free()
        self._print("\n" + "=" * 33 + " forward ends " + "=" * 33 + "\n")
        return ForwardSolution(
            state, time_control.step_time, newton_results, self.checkpoint_store
        )
