"""Tests the plot of the Newton convergence history."""

import matplotlib

matplotlib.use("Agg")

# pylint: disable=wrong-import-position
import matplotlib.pyplot as plt
import numpy as np

from cnadjoint.newton import newton_solve
from cnadjoint.utils.convergence_plot import plot_newton_history


def test_plot_newton_history(quiet_options):
    result = newton_solve(lambda state: state**3 - 8.0, np.ones(2), quiet_options())
    ax = plot_newton_history(result)
    lines = ax.get_lines()
    assert len(lines) == 2
    assert np.array_equal(lines[0].get_ydata(), result.residual_history)
    assert np.array_equal(lines[1].get_xdata(), np.arange(1, result.iterations + 1))
    assert ax.get_title() == "Newton: converged"
    assert ax.get_yscale() == "log"
    plt.close(ax.figure)


def test_plot_into_given_axes(quiet_options):
    result = newton_solve(
        lambda state: state - 1.0, np.ones(1), quiet_options(jac_method="complex_step")
    )
    fig, ax = plt.subplots()
    returned_ax = plot_newton_history(result, ax, title="trivial")
    assert returned_ax is ax
    assert ax.get_title() == "trivial"
    # converged without any update, so there is no step norm line
    assert len(ax.get_lines()) == 1
    plt.close(fig)
