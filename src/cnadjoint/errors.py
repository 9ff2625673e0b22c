"""Error and warning classes for the solver and adjoint part of the code."""


class CNAdjointError(Exception):
    """Base class for exceptions in cnadjoint"""


class SetupError(CNAdjointError, ValueError):
    """Exception for the case when something goes wrong in the setup of one of the
    solvers, e.g. an invalid option value."""


class ComplexStepError(SetupError):
    """Exception for the case that a complex-step Jacobian is requested for a residual
    function that can't be evaluated with complex-valued state."""


class ResidualEvaluationError(CNAdjointError):
    """Exception for the case that the residual function fails, e.g. because the state
    is physically invalid. Not retried by any of the solvers."""


class LinearSolverError(CNAdjointError):
    """Exception for the case when something goes wrong in a linear solve"""


class LinearSolverDivergedError(LinearSolverError):
    """Exception for the case that a Krylov solve exceeded the divergence tolerance."""


class CheckpointError(CNAdjointError):
    """Exception for the case of invalid usage of a checkpoint store"""


class MissingCheckpointError(CheckpointError, KeyError):
    """Exception for the case that the checkpoint for a step was never stored."""


class AdjointError(CNAdjointError):
    """Exception for the case when the reverse sweep is driven in an invalid order."""


class NewtonConvergenceWarning(UserWarning):
    """Warning for the case that Newton's method reached the maximum number of
    iterations without converging."""


class KrylovConvergenceWarning(UserWarning):
    """Warning for the case that a Krylov solve reached its maximum number of iterations
    without reaching its tolerances."""


class TimeStepError(CNAdjointError):
    """Exception for the case that Newton's method diverged in a time step of the
    forward sweep."""
