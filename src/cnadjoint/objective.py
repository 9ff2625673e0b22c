"""
Objective functions J = sum_i j(u_i, t_i) of time dependent problems, and partial
derivatives of residuals with respect to parameters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

import numpy as np

from cnadjoint.jacobian import complex_step_gradient, finite_difference_gradient
from cnadjoint.solver_options import JacobianMethod, DEFAULT_EPSILON, SolverOptions


def _resolve_method(method) -> JacobianMethod:
    if isinstance(method, JacobianMethod):
        return method
    return SolverOptions(jac_method=method).jac_method


class ObjectiveFunction(ABC):
    """
    Interface for objectives that are sums of per-step contributions j(u_i, t_i).

    Parameters
    ----------
    method: JacobianMethod
        How the default gradient is computed.
    epsilon: float, optional
        Perturbation size of the default gradient.
    """

    def __init__(
        self, method=JacobianMethod.COMPLEX_STEP, epsilon: float | None = None
    ):
        self.method = _resolve_method(method)
        self.epsilon = DEFAULT_EPSILON[self.method] if epsilon is None else epsilon

    @abstractmethod
    def evaluate(self, state: np.ndarray, step: int, time: float):
        """Contribution j(u_i, t_i) of one step. Must accept complex state if the
        default gradient uses the complex step."""

    def gradient(self, state: np.ndarray, step: int, time: float) -> np.ndarray:
        """dj/du at one step, by default computed by perturbation of evaluate."""

        def func(perturbed_state):
            return self.evaluate(perturbed_state, step, time)

        if self.method == JacobianMethod.COMPLEX_STEP:
            return complex_step_gradient(func, state, self.epsilon)
        return finite_difference_gradient(func, state, self.epsilon)

    def accumulate(self, checkpoint_store, first_step: int = 1) -> float:
        """Sums the contributions of all stored steps starting from first_step."""
        total = 0.0
        for step in checkpoint_store.steps():
            if step >= first_step:
                checkpoint = checkpoint_store.get(step)
                total += float(
                    np.real(self.evaluate(checkpoint.state, step, checkpoint.time))
                )
        return total


class FunctionObjective(ObjectiveFunction):
    """
    Objective given by callables.

    Parameters
    ----------
    func: Callable[[np.ndarray, int, float], float]
        Contribution j(u_i, t_i) of one step.
    grad: Callable[[np.ndarray, int, float], np.ndarray], optional
        Analytic dj/du. Computed by perturbation if not given.
    """

    def __init__(
        self,
        func: Callable,
        grad: Callable | None = None,
        method=JacobianMethod.COMPLEX_STEP,
        epsilon: float | None = None,
    ):
        super().__init__(method, epsilon)
        self.func = func
        self.grad = grad

    def evaluate(self, state: np.ndarray, step: int, time: float):
        return self.func(state, step, time)

    def gradient(self, state: np.ndarray, step: int, time: float) -> np.ndarray:
        if self.grad is not None:
            return np.asarray(self.grad(state, step, time), dtype=float)
        return super().gradient(state, step, time)


def parameter_partial(
    residual_of_parameter: Callable,
    parameter,
    method=JacobianMethod.COMPLEX_STEP,
    epsilon: float | None = None,
) -> np.ndarray:
    """
    Partial derivative dR/dp of a residual (or right-hand side) with respect to a
    parameter, with the state held fixed.

    Parameters
    ----------
    residual_of_parameter: Callable
        R as function of the parameter only.
    parameter: float or np.ndarray
        Parameter value.

    Returns
    -------
    np.ndarray
        dR/dp as vector for scalar parameters, as matrix with one column per
        parameter entry otherwise.
    """
    method = _resolve_method(method)
    epsilon = DEFAULT_EPSILON[method] if epsilon is None else epsilon
    scalar = np.ndim(parameter) == 0
    parameter = np.atleast_1d(np.asarray(parameter, dtype=float))
    columns = []
    if method == JacobianMethod.FINITE_DIFFERENCE:
        base = np.ravel(residual_of_parameter(parameter[0] if scalar else parameter))
    for i in range(parameter.size):
        if method == JacobianMethod.COMPLEX_STEP:
            perturbed = parameter.astype(complex)
            perturbed[i] += 1j * epsilon
            value = residual_of_parameter(perturbed[0] if scalar else perturbed)
            columns.append(np.imag(np.ravel(value)) / epsilon)
        else:
            perturbed = parameter.copy()
            perturbed[i] += epsilon
            value = residual_of_parameter(perturbed[0] if scalar else perturbed)
            columns.append((np.ravel(value) - base) / epsilon)
    if scalar:
        return columns[0]
    return np.column_stack(columns)
