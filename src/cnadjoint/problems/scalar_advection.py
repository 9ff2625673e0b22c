"""
Scalar advection u_t + u_x = 0 on (0, L], discretized with first order upwind finite
differences, with the inflow condition u(0, t) = A sin(omega t) and the initial state
u(x, 0) = A sin(-x). The objective is the sum of the squared outflow values
J = sum_i u_N(t_i)^2 over all steps i >= 1.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np
from scipy.sparse import diags

from cnadjoint.objective import FunctionObjective


@dataclass
class ScalarAdvection:
    """
    Parameters
    ----------
    num_points: int
        Number of grid points x_j = j dx, j = 1, ..., N. The inflow point x_0 = 0 is
        not part of the state.
    length: float
        Length L of the domain.
    amplitude: float
        Amplitude A of inflow and initial state.
    omega: float
        Angular frequency of the inflow.
    """

    num_points: int = 20
    length: float = 2.0 * np.pi
    amplitude: float = 1.0
    omega: float = 1.0

    @property
    def delta_x(self) -> float:
        """Grid spacing."""
        return self.length / self.num_points

    @property
    def grid(self) -> np.ndarray:
        """Grid points of the state."""
        return self.delta_x * np.arange(1, self.num_points + 1)

    def with_amplitude(self, amplitude) -> ScalarAdvection:
        """Same problem with another amplitude."""
        return replace(self, amplitude=amplitude)

    def inflow(self, time: float, amplitude=None):
        """Boundary value u(0, t)."""
        amplitude = self.amplitude if amplitude is None else amplitude
        return amplitude * np.sin(self.omega * time)

    def initial_state(self, amplitude=None) -> np.ndarray:
        """Initial state A sin(-x)."""
        amplitude = self.amplitude if amplitude is None else amplitude
        return amplitude * np.sin(-self.grid)

    def rhs(self, state: np.ndarray, time: float, amplitude=None) -> np.ndarray:
        """Upwind discretization f(u, t) = -(u_j - u_{j-1}) / dx."""
        amplitude = self.amplitude if amplitude is None else amplitude
        upwind_state = np.empty_like(state, dtype=np.result_type(state, amplitude, float))
        upwind_state[0] = self.inflow(time, amplitude)
        upwind_state[1:] = state[:-1]
        return -(state - upwind_state) / self.delta_x

    def __call__(self, state: np.ndarray, time: float) -> np.ndarray:
        return self.rhs(state, time)

    def rhs_parameter_partial(self, state: np.ndarray, time: float) -> np.ndarray:
        """df/dA, only the first point sees the inflow."""
        partial = np.zeros(np.size(state))
        partial[0] = np.sin(self.omega * time) / self.delta_x
        return partial

    def sparsity(self):
        """Bidiagonal pattern of df/du."""
        return diags(
            [np.ones(self.num_points), np.ones(self.num_points - 1)],
            [0, -1],
            format="csc",
        )

    def objective(self) -> FunctionObjective:
        """Sum of the squared outflow values."""

        def outflow_squared(state, step, time):
            return state[-1] ** 2

        def outflow_squared_gradient(state, step, time):
            gradient = np.zeros(np.size(state))
            gradient[-1] = 2.0 * np.real(state[-1])
            return gradient

        return FunctionObjective(outflow_squared, outflow_squared_gradient)
