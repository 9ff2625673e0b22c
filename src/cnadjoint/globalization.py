"""
Globalization strategies for Newton's method.

- Inexact Newton-Krylov: the relative tolerance of the Krylov solves is tightened as
  the residual decreases, reltol_i = reltol_{i-1} * (r_i / r_{i-1})^gamma.
- Pseudo-transient continuation: the Newton operator is J - M / tau, as though the
  Jacobian belonged to (u - u_{i-1}) / tau + R(u). tau grows with the residual
  reduction, tau_i = tau_{i-1} * r_{i-1} / r_i, so that the method turns into plain
  Newton close to the solution.
"""

import numpy as np


class KrylovToleranceUpdate:
    """
    Inexact Newton-Krylov update of the Krylov relative tolerance.

    Parameters
    ----------
    reltol: float
        Initial relative tolerance.
    gamma: float
        Exponent of the update.
    """

    def __init__(self, reltol: float, gamma: float):
        self.reltol = reltol
        self.gamma = gamma

    def update(self, residual_norm: float, previous_residual_norm: float) -> float:
        """Updates and returns the relative tolerance."""
        if previous_residual_norm > 0.0:
            self.reltol *= (residual_norm / previous_residual_norm) ** self.gamma
        return self.reltol

    def apply(self, linear_solver):
        """Sets the current relative tolerance on the linear solver."""
        linear_solver.set_tolerances(reltol=self.reltol)


class PseudoTransientContinuation:
    """
    Pseudo-transient continuation (implicit Euler globalization).

    Parameters
    ----------
    tau: float
        Initial pseudo time step.
    mass: float or np.ndarray, optional
        Diagonal of the mass matrix M, identity if not given.
    """

    def __init__(self, tau: float, mass=None):
        self.tau = tau
        self.mass = 1.0 if mass is None else mass

    @property
    def shift(self) -> float:
        """Factor of M that is added to the diagonal of the Jacobian."""
        return -1.0 / self.tau

    def update(self, residual_norm: float, previous_residual_norm: float) -> float:
        """Updates and returns tau."""
        if residual_norm > 0.0 and np.isfinite(previous_residual_norm):
            self.tau *= previous_residual_norm / residual_norm
        return self.tau

