"""Sensitivity of the outflow of scalar advection with respect to the inflow
amplitude, via the Crank-Nicolson discrete adjoint. The result is compared against
central finite differences of the objective."""

import matplotlib.pyplot as plt
from mpi4py import MPI
import numpy as np

from cnadjoint.adjoint import (
    AdjointEngine,
    collect_parameter_partials,
    compute_sensitivity,
)
from cnadjoint.checkpoint_interface import Hdf5CheckpointStore
from cnadjoint.crank_nicolson import CrankNicolsonIntegrator
from cnadjoint.file_writer import Hdf5FileWriter
from cnadjoint.problems import ScalarAdvection
from cnadjoint.solver_options import SolverOptions
from cnadjoint.time_control import TimeControl
from cnadjoint.utils.convergence_plot import plot_newton_history


DELTA_T = 0.05
NUM_STEPS = 40
PERTURBATION = 1e-5

problem = ScalarAdvection(num_points=50)
options = SolverOptions(
    jac_type="sparse",
    jac_method="complex_step",
    res_tol=1e-12,
    step_tol=1e-14,
)


def forward(amplitude, checkpoint_store=None, file_writer=None):
    """Forward sweep with the given inflow amplitude, the initial state is fixed."""
    integrator = CrankNicolsonIntegrator(
        lambda state, time: problem.rhs(state, time, amplitude),
        TimeControl(0.0, DELTA_T, NUM_STEPS),
        options,
        checkpoint_store=checkpoint_store,
        file_writer=file_writer,
        sparsity=problem.sparsity(),
    )
    return integrator.integrate(problem.initial_state())


objective = problem.objective()
with Hdf5CheckpointStore("advection_checkpoints.h5") as store:
    solution = forward(
        problem.amplitude,
        store,
        Hdf5FileWriter("advection_trajectory.h5", MPI.COMM_WORLD),
    )
    adjoint_solution = AdjointEngine(store, DELTA_T, objective).run()
    sensitivity = compute_sensitivity(
        adjoint_solution,
        collect_parameter_partials(store, problem.rhs_parameter_partial),
    )

objective_plus = objective.accumulate(
    forward(problem.amplitude + PERTURBATION).checkpoint_store
)
objective_minus = objective.accumulate(
    forward(problem.amplitude - PERTURBATION).checkpoint_store
)
reference = (objective_plus - objective_minus) / (2 * PERTURBATION)

if MPI.COMM_WORLD.rank == 0:
    print(f"dJ/dA adjoint:             {sensitivity:.12e}")
    print(f"dJ/dA finite differences:  {reference:.12e}")
    print(f"relative difference:       {abs(sensitivity - reference) / abs(reference):.3e}")

    plot_newton_history(solution.newton_results[0], title="Newton, first time step")
    plt.savefig("advection_newton_history.png")
