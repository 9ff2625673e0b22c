"""
Discrete adjoint of the Crank-Nicolson scheme.

For the objective J = sum_{i=1}^n j(u_i, t_i) and the step residuals
R_i = u_i - u_{i-1} - dt/2 (f(u_i) + f(u_{i-1})), the adjoints psi_i solve,
backwards in time,

    (I - dt/2 J_n)^T psi_n = -g_n
    (I - dt/2 J_i)^T psi_i = (I + dt/2 J_i)^T psi_{i+1} - g_i,   i = n-1, ..., 1

with J_i = df/du(u_i, t_i) and g_i = dj/du(u_i, t_i). The sensitivity with respect to
a parameter A is then

    dJ/dA = dJ/dA|_partial + sum_{i=1}^n psi_i^T (-dt/2 (p_i + p_{i-1}))

with p_i = df/dA(u_i, t_i). Note that this doesn't contain a term for an initial
state depending on A.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
from mpi4py import MPI

from cnadjoint.checkpoint_interface import CheckpointStore
from cnadjoint.errors import AdjointError, CheckpointError
from cnadjoint.file_writer import FileWriterInterface
from cnadjoint.jacobian import JacobianBuilder
from cnadjoint.linear_solvers import (
    LinearSolverContext,
    MatrixOperatorSource,
    OperatorSource,
    ShiftedOperatorSource,
    create_linear_solver,
)
from cnadjoint.objective import ObjectiveFunction
from cnadjoint.solver_options import SolverOptions
from cnadjoint.time_control import TimeControl


class AdjointState(Enum):
    """States of the reverse sweep."""

    FORWARD_COMPLETE = "forward_complete"
    TERMINAL = "terminal"
    STEP = "step"
    DONE = "done"


@dataclass
class AdjointSolution:
    """
    Adjoints of a reverse sweep.

    Parameters
    ----------
    adjoints: dict
        Adjoint vector psi_i per step i.
    delta_t: float
        Time step size of the forward sweep.
    """

    adjoints: dict = field(default_factory=dict)
    delta_t: float = 0.0

    def __getitem__(self, step: int) -> np.ndarray:
        return self.adjoints[step]

    @property
    def steps(self) -> list:
        """Sorted steps for which an adjoint is known."""
        return sorted(self.adjoints)


class AdjointEngine:
    """
    Reverse sweep for the Crank-Nicolson discrete adjoint. It reads the states and
    physics Jacobians from a sealed checkpoint store.

    Parameters
    ----------
    checkpoint_store: CheckpointStore
        Store filled by the forward sweep.
    delta_t: float
        Time step size of the forward sweep.
    objective: ObjectiveFunction
        Objective of which the adjoint is computed.
    linear_solver: LinearSolverContext, optional
        Linear solver for the transposed solves, dense by default.
    physics: Callable[[np.ndarray, float], np.ndarray], optional
        Right-hand side f(u, t), to recompute Jacobians that weren't stored.
    jacobian_builder: JacobianBuilder, optional
        Builder for recomputed Jacobians, complex step by default.
    comm: MPI.Comm
        Communicator of the distributed vectors.
    file_writer: FileWriterInterface, optional
        Writer for the adjoint of every step.
    """

    # pylint: disable=too-many-arguments, too-many-instance-attributes

    def __init__(
        self,
        checkpoint_store: CheckpointStore,
        delta_t: float,
        objective: ObjectiveFunction,
        linear_solver: LinearSolverContext | None = None,
        physics: Callable[[np.ndarray, float], np.ndarray] | None = None,
        jacobian_builder: JacobianBuilder | None = None,
        comm: MPI.Comm = MPI.COMM_WORLD,
        file_writer: FileWriterInterface | None = None,
    ):
        self.checkpoint_store = checkpoint_store
        self.delta_t = delta_t
        self.objective = objective
        self._owns_linear_solver = linear_solver is None
        self.linear_solver = (
            create_linear_solver(SolverOptions(), comm)
            if linear_solver is None
            else linear_solver
        )
        self.physics = physics
        self.jacobian_builder = (
            JacobianBuilder("complex_step", comm=comm)
            if jacobian_builder is None
            else jacobian_builder
        )
        self.comm = comm
        self.file_writer = file_writer
        self.state = AdjointState.FORWARD_COMPLETE
        self.current_step = None
        self.solution = AdjointSolution({}, delta_t)

    def _jacobian(self, checkpoint):
        if checkpoint.jacobian is not None:
            return checkpoint.jacobian
        if self.physics is None:
            raise CheckpointError(
                f"Checkpoint of step {checkpoint.step} has no Jacobian, and there is "
                "no physics to recompute it from."
            )
        time = TimeControl.clamp_negative_zero(checkpoint.time)

        def rhs(perturbed_state):
            return self.physics(perturbed_state, time)

        return self.jacobian_builder.build(rhs, checkpoint.state)

    def _store_adjoint(self, step: int, adjoint: np.ndarray, time: float):
        self.solution.adjoints[step] = adjoint
        self.current_step = step
        if self.file_writer is not None:
            self.file_writer.write_step(step, time, adjoint, "adjoint")

    def _solve_transposed(self, jacobian_source: OperatorSource, rhs: np.ndarray):
        left_operator = ShiftedOperatorSource(jacobian_source, 1.0, -0.5 * self.delta_t)
        self.linear_solver.calc_pc_and_lo(left_operator)
        return self.linear_solver.linear_solve_transpose(rhs).x

    def compute_terminal(self, last_step: int) -> np.ndarray:
        """
        Solves (I - dt/2 J_n)^T psi_n = -g_n for the last step n of the forward
        sweep.
        """
        if self.state != AdjointState.FORWARD_COMPLETE:
            raise AdjointError(
                f"Terminal condition requested in state {self.state.value}, the "
                "reverse sweep was already started."
            )
        checkpoint = self.checkpoint_store.get(last_step)
        gradient = self.objective.gradient(checkpoint.state, last_step, checkpoint.time)
        jacobian_source = MatrixOperatorSource(self._jacobian(checkpoint))
        adjoint = self._solve_transposed(jacobian_source, -gradient)
        self._store_adjoint(last_step, adjoint, checkpoint.time)
        self.state = AdjointState.TERMINAL
        return adjoint

    def step(self, step: int) -> np.ndarray:
        """
        Solves (I - dt/2 J_i)^T psi_i = (I + dt/2 J_i)^T psi_{i+1} - g_i. The step has
        to directly precede the last computed one.
        """
        if self.state not in (AdjointState.TERMINAL, AdjointState.STEP):
            raise AdjointError(
                f"Adjoint step requested in state {self.state.value}, the terminal "
                "condition has to be computed first."
            )
        if step != self.current_step - 1 or step < 1:
            raise AdjointError(
                f"Adjoint step {step} requested, but the next step of the reverse "
                f"sweep is {self.current_step - 1}."
            )
        checkpoint = self.checkpoint_store.get(step)
        gradient = self.objective.gradient(checkpoint.state, step, checkpoint.time)
        jacobian_source = MatrixOperatorSource(self._jacobian(checkpoint))
        next_adjoint = self.solution.adjoints[step + 1]
        rhs = (
            next_adjoint
            + 0.5 * self.delta_t * jacobian_source.transposed_product(next_adjoint)
            - gradient
        )
        adjoint = self._solve_transposed(jacobian_source, rhs)
        self._store_adjoint(step, adjoint, checkpoint.time)
        self.state = AdjointState.STEP
        return adjoint

    def finish(self) -> AdjointSolution:
        """Ends the reverse sweep and frees the linear solver, if it was created by
        this engine."""
        if self.state not in (AdjointState.TERMINAL, AdjointState.STEP):
            raise AdjointError(f"Can't finish the reverse sweep in state {self.state.value}.")
        if self._owns_linear_solver:
            self.linear_solver.free()
        self.state = AdjointState.DONE
        return self.solution

    def run(self, last_step: int | None = None) -> AdjointSolution:
        """Runs the whole reverse sweep, from the last step back to step 1."""
        if last_step is None:
            last_step = self.checkpoint_store.steps()[-1]
        if self.comm.rank == 0:
            print("\n" + "=" * 32 + " reverse starts " + "=" * 32 + "\n")
        self.compute_terminal(last_step)
        for step in range(last_step - 1, 0, -1):
            self.step(step)
        solution = self.finish()
        if self.comm.rank == 0:
            print("\n" + "=" * 33 + " reverse ends " + "=" * 33 + "\n")
        return solution


def collect_parameter_partials(
    checkpoint_store: CheckpointStore,
    partial_func: Callable[[np.ndarray, float], np.ndarray],
) -> dict:
    """Evaluates p_i = df/dA(u_i, t_i) for every stored step."""
    partials = {}
    for step in checkpoint_store.steps():
        checkpoint = checkpoint_store.get(step)
        partials[step] = np.asarray(partial_func(checkpoint.state, checkpoint.time))
    return partials


def compute_sensitivity(
    adjoint_solution: AdjointSolution,
    parameter_partials,
    objective_partial=0.0,
    comm: MPI.Comm = MPI.COMM_WORLD,
):
    """
    Total derivative of the objective with respect to a parameter.

    Parameters
    ----------
    adjoint_solution: AdjointSolution
        Adjoints psi_1, ..., psi_n.
    parameter_partials: dict or sequence
        p_i = df/dA(u_i, t_i) for i = 0, ..., n. Vectors for scalar parameters,
        matrices with one column per parameter entry otherwise.
    objective_partial: float or np.ndarray
        Partial derivative of the objective with respect to the parameter.

    Returns
    -------
    float or np.ndarray
        dJ/dA.
    """
    if not adjoint_solution.adjoints:
        raise AdjointError("No adjoints available, run the reverse sweep first.")
    half_delta_t = 0.5 * adjoint_solution.delta_t
    local_sum = 0.0
    for step in adjoint_solution.steps:
        if step < 1:
            continue
        try:
            step_partial = -half_delta_t * (
                parameter_partials[step] + parameter_partials[step - 1]
            )
        except (KeyError, IndexError) as error:
            raise AdjointError(
                f"Parameter partials of steps {step - 1} and {step} are needed."
            ) from error
        local_sum = local_sum + adjoint_solution[step] @ step_partial
    return objective_partial + comm.allreduce(local_sum, op=MPI.SUM)


def steady_adjoint(
    jacobian_source, gradient: np.ndarray, linear_solver: LinearSolverContext
) -> np.ndarray:
    """
    Adjoint of a steady problem R(u) = 0: solves J^T psi = -dJ/du.

    Parameters
    ----------
    jacobian_source: OperatorSource or matrix
        Jacobian dR/du at the converged state.
    gradient: np.ndarray
        dJ/du at the converged state.
    linear_solver: LinearSolverContext
        Linear solver for the transposed solve.
    """
    if not isinstance(jacobian_source, OperatorSource):
        jacobian_source = MatrixOperatorSource(jacobian_source)
    linear_solver.calc_pc_and_lo(jacobian_source)
    return linear_solver.linear_solve_transpose(-np.asarray(gradient)).x
