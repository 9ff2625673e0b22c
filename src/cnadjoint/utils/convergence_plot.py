"""Plots of the convergence history of Newton's method."""

import matplotlib.pyplot as plt
import numpy as np

from cnadjoint.newton import NewtonResult


def plot_newton_history(result: NewtonResult, ax=None, title: str = None):
    """
    Plots the residual and step norms of a Newton solve over the iterations, with
    logarithmic y-axis.

    Parameters
    ----------
    result: NewtonResult
        Result with the histories of the solve.
    ax: matplotlib.axes.Axes, optional
        Axes to plot into. A new figure is created if not given.
    title: str, optional
        Title of the axes, defaults to the final status.

    Returns
    -------
    matplotlib.axes.Axes
        The axes with the plot.
    """
    if ax is None:
        _, ax = plt.subplots()
    residual_history = np.asarray(result.residual_history)
    step_history = np.asarray(result.step_history)
    ax.semilogy(
        np.arange(residual_history.size), residual_history, "o-", label="residual norm"
    )
    if step_history.size:
        ax.semilogy(
            np.arange(1, step_history.size + 1), step_history, "s--", label="step norm"
        )
    ax.set_xlabel("Newton iteration")
    ax.set_ylabel("scaled norm")
    ax.set_title(f"Newton: {result.status.value}" if title is None else title)
    ax.legend()
    return ax
