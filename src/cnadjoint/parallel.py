"""Reductions over vectors that may be distributed over several processes. All of them
go through the given MPI communicator, none of them assumes its input is the full
vector. Parts that only work on process-local data check for a serial communicator
with require_serial."""

# pylint: disable = c-extension-no-member

import numpy as np
from mpi4py import MPI

from cnadjoint.errors import SetupError


def global_size(vector: np.ndarray, comm: MPI.Comm = MPI.COMM_WORLD) -> int:
    """Number of entries of the distributed vector over all processes."""
    return comm.allreduce(np.asarray(vector).size, op=MPI.SUM)


def global_dot(a: np.ndarray, b: np.ndarray, comm: MPI.Comm = MPI.COMM_WORLD):
    """Dot product of two distributed vectors. No complex conjugation is done, so that
    the complex step passes through it."""
    local_dot = np.dot(np.ravel(a), np.ravel(b))
    return comm.allreduce(local_dot, op=MPI.SUM)


def global_norm(vector: np.ndarray, comm: MPI.Comm = MPI.COMM_WORLD) -> float:
    """2-norm of the distributed vector."""
    local_square_sum = float(np.sum(np.abs(vector) ** 2))
    return float(np.sqrt(comm.allreduce(local_square_sum, op=MPI.SUM)))


def scaled_norm(vector: np.ndarray, comm: MPI.Comm = MPI.COMM_WORLD) -> float:
    """2-norm of the distributed vector divided by its global number of entries. This
    is the norm used for the convergence checks of Newton's method."""
    size = global_size(vector, comm)
    if size == 0:
        return 0.0
    return global_norm(vector, comm) / size


def require_serial(comm: MPI.Comm, what: str):
    """
    Rejects communicators with more than one process for parts that work on the
    local vectors only, i.e. explicit Jacobians, their factorizations and the scipy
    Krylov solvers, whose inner products aren't reduced over the communicator.

    Raises
    ------
    SetupError
        If the communicator has more than one process.
    """
    if comm.size > 1:
        raise SetupError(
            f"{what} works on process-local data only and can't be used with a "
            f"communicator of {comm.size} processes."
        )
