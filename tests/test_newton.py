"""Tests Newton's method, its damping and its termination."""

import os

import numpy as np
import pytest

from cnadjoint.errors import (
    ComplexStepError,
    NewtonConvergenceWarning,
    ResidualEvaluationError,
)
from cnadjoint.linear_solvers import (
    JacobiPreconditioner,
    LinearSolverContext,
    MatFreeKrylovLO,
)
from cnadjoint.newton import NewtonDriver, NewtonStatus, newton_solve
from cnadjoint.problems import LinearSystemResidual


LINEAR_SYSTEM = LinearSystemResidual(
    np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 1.0], [0.0, 1.0, 2.0]]),
    np.array([1.0, 2.0, 3.0]),
)


def cubic_residual(state):
    return state**3 - 8.0


@pytest.mark.newton
@pytest.mark.parametrize("jac_type", ["dense", "sparse"])
@pytest.mark.parametrize("jac_method", ["finite_difference", "complex_step"])
def test_linear_system_one_update(quiet_options, jac_type, jac_method):
    """With the exact Jacobian and no damping, one update solves a linear system."""
    options = quiet_options(
        jac_type=jac_type, jac_method=jac_method, initial_step_factor=1.0
    )
    result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    assert result.status == NewtonStatus.CONVERGED
    assert result.iterations == 1
    assert result.residual_norm < 1e-6
    assert result.residual_history[-1] == result.residual_norm
    assert result.state == pytest.approx(LINEAR_SYSTEM.solution(), abs=1e-6)


@pytest.mark.newton
def test_complex_step_residual_is_exact(quiet_options):
    options = quiet_options(jac_method="complex_step", initial_step_factor=1.0)
    result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    assert result.residual_norm < 1e-14


@pytest.mark.newton
@pytest.mark.parametrize("jac_method", ["finite_difference", "complex_step"])
def test_nonlinear_convergence(quiet_options, jac_method):
    result = newton_solve(
        cubic_residual, np.ones(3), quiet_options(jac_method=jac_method)
    )
    assert result.converged
    assert result.state == pytest.approx(2.0, abs=1e-5)
    assert result.step_factor <= 1.0


@pytest.mark.newton
def test_initial_state_is_not_modified(quiet_options):
    initial_state = np.ones(3)
    newton_solve(cubic_residual, initial_state, quiet_options())
    assert np.array_equal(initial_state, np.ones(3))


@pytest.mark.newton
@pytest.mark.parametrize(
    "jac_method, expected_step_factor",
    [("finite_difference", 0.5 * 1.1**2), ("complex_step", 0.5 * 1.2**2)],
)
def test_step_factor_growth(quiet_options, jac_method, expected_step_factor):
    """The step norms of the cubic problem decrease, so the damping grows in every
    iteration after the first one."""
    options = quiet_options(jac_method=jac_method, itermax=3, res_tol=0.0, step_tol=0.0)
    with pytest.warns(NewtonConvergenceWarning):
        result = newton_solve(cubic_residual, np.ones(1), options)
    assert result.status == NewtonStatus.MAX_ITERS
    assert result.iterations == 3
    assert len(result.step_history) == 3
    assert len(result.residual_history) == 4
    assert result.step_factor == pytest.approx(expected_step_factor)


@pytest.mark.newton
def test_step_factor_constant_in_first_iteration(quiet_options):
    options = quiet_options(itermax=1, res_tol=0.0, step_tol=0.0)
    with pytest.warns(NewtonConvergenceWarning):
        result = newton_solve(cubic_residual, np.ones(3), options)
    assert result.iterations == 1
    assert result.step_factor == 0.5


@pytest.mark.newton
def test_step_norm_of_undamped_correction(quiet_options):
    """From zero, the Newton correction of a linear system is its solution, while
    only half of it is applied."""
    options = quiet_options(jac_method="complex_step", itermax=1, res_tol=0.0)
    with pytest.warns(NewtonConvergenceWarning):
        result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    solution = LINEAR_SYSTEM.solution()
    assert result.state == pytest.approx(0.5 * solution)
    assert result.step_norm == pytest.approx(np.linalg.norm(solution) / 3)
    assert result.step_history == pytest.approx([np.linalg.norm(solution) / 3])


@pytest.mark.newton
def test_step_tolerance_uses_undamped_correction(quiet_options):
    """The first damped update is below the step tolerance, the first correction is
    not. The second correction is half the solution and stops the iteration."""
    solution = LINEAR_SYSTEM.solution()
    undamped_norm = np.linalg.norm(solution) / 3
    options = quiet_options(
        jac_method="complex_step", res_tol=1e-12, step_tol=0.75 * undamped_norm
    )
    result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    assert result.converged
    assert result.iterations == 2
    assert result.state == pytest.approx(0.75 * solution)


@pytest.mark.newton
def test_step_factor_is_capped(quiet_options):
    options = quiet_options(initial_step_factor=0.95, step_growth=2.0)
    result = newton_solve(cubic_residual, np.ones(2), options)
    assert result.converged
    assert result.step_factor == 1.0


@pytest.mark.newton
@pytest.mark.parametrize("itermax", [1, 5, 10])
def test_no_root_reaches_itermax(quiet_options, itermax):
    """exp(u) has no root, Newton keeps going down without converging."""
    options = quiet_options(itermax=itermax)
    with pytest.warns(NewtonConvergenceWarning, match="Final step size"):
        result = newton_solve(np.exp, np.ones(2), options)
    assert result.status == NewtonStatus.MAX_ITERS
    assert result.iterations == itermax
    assert np.all(np.isfinite(result.state))


@pytest.mark.newton
def test_non_finite_residual_diverges(quiet_options):
    def residual(state):
        return np.where(state > 1.2, np.nan, state - 2.0)

    result = newton_solve(residual, np.ones(1), quiet_options())
    assert result.status == NewtonStatus.DIVERGED
    assert result.state == pytest.approx(np.ones(1))


@pytest.mark.newton
def test_krylov_divergence_diverges(quiet_options):
    linear_solver = LinearSolverContext(JacobiPreconditioner(), MatFreeKrylovLO())
    linear_solver.set_tolerances(dtol=1e-8)
    driver = NewtonDriver(
        LINEAR_SYSTEM, quiet_options(jac_type="matrix_free"), linear_solver
    )
    result = driver.solve(np.zeros(3))
    assert result.status == NewtonStatus.DIVERGED
    assert result.iterations == 0


@pytest.mark.newton
def test_residual_exception_propagates(quiet_options):
    def residual(state):
        raise ValueError("negative pressure")

    with pytest.raises(ResidualEvaluationError):
        newton_solve(residual, np.ones(2), quiet_options())


@pytest.mark.newton
def test_complex_step_checked_before_iterating(quiet_options):
    calls = []

    def residual(state):
        calls.append(state)
        return np.real(state) - 1.0

    with pytest.raises(ComplexStepError):
        newton_solve(residual, np.zeros(2), quiet_options(jac_method="complex_step"))
    assert len(calls) == 1


@pytest.mark.newton
def test_matrix_free(quiet_options):
    options = quiet_options(
        jac_type="matrix_free", krylov_reltol=1e-2, res_tol=1e-10, step_tol=1e-12
    )
    result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    assert result.converged
    assert result.state == pytest.approx(LINEAR_SYSTEM.solution(), abs=1e-8)


@pytest.mark.newton
def test_preconditioner_recalculation_frequency(quiet_options):
    options = quiet_options(jac_type="matrix_free", recalc_prec_freq=2)
    driver = NewtonDriver(cubic_residual, options)
    result = driver.solve(np.ones(3))
    assert result.converged
    assert driver.linear_solver.pc.n_calcs == (result.iterations + 1) // 2


@pytest.mark.newton
def test_pseudo_transient_continuation(quiet_options):
    """8 - u^3 is the right-hand side of a stable pseudo-time ODE."""
    options = quiet_options(newton_globalize_euler=True, euler_tau=0.5)
    result = newton_solve(lambda state: 8.0 - state**3, np.ones(3), options)
    assert result.converged
    assert result.state == pytest.approx(2.0, abs=1e-5)


@pytest.mark.newton
def test_write_jacobian(quiet_options, tmp_path):
    options = quiet_options(
        initial_step_factor=1.0, write_jacobian=True, jacobian_dump_dir=str(tmp_path)
    )
    result = newton_solve(LINEAR_SYSTEM, np.zeros(3), options)
    assert result.iterations == 1
    assert os.path.exists(tmp_path / "jacobian0.dat")
    assert not os.path.exists(tmp_path / "jacobian1.dat")
    assert np.loadtxt(tmp_path / "jacobian0.dat") == pytest.approx(
        LINEAR_SYSTEM.matrix, abs=1e-6
    )


@pytest.mark.newton
def test_verbose_output(quiet_options, capsys):
    newton_solve(cubic_residual, np.ones(1), quiet_options(verbosity=2))
    output = capsys.readouterr().out
    assert "Newton iteration 0" in output
    assert "converged" in output
