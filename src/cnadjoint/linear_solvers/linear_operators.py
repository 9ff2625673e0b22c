"""
Linear operators of a LinearSolverContext. Direct operators factorize an explicit
matrix once per calc and reuse the factorization for all following solves, Krylov
operators run GMRES on either an explicit matrix or the matrix-free product of the
operator source.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import math
import warnings

import numpy as np
from mpi4py import MPI
from scipy.linalg import lu_factor, lu_solve
from scipy.sparse import csc_matrix, issparse
from scipy.sparse.linalg import LinearOperator, gmres, splu

from cnadjoint.errors import (
    KrylovConvergenceWarning,
    LinearSolverDivergedError,
    LinearSolverError,
)
from cnadjoint.parallel import global_norm


@dataclass
class LinearSolveResult:
    """
    Result of a linear solve.

    Parameters
    ----------
    x: np.ndarray
        Solution.
    converged: bool
        Whether the tolerances were met. Always True for direct solves.
    n_iter: int
        Number of Krylov iterations, 0 for direct solves.
    residual_norm: float
        Norm of b - A x.
    method: str
        Name of the linear operator that did the solve.
    """

    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    method: str


class LinearOperatorBase(ABC):
    """Common part of all linear operators."""

    is_mat_free = False
    is_direct = True

    def __init__(self, comm: MPI.Comm = MPI.COMM_WORLD):
        self.comm = comm
        self.n_assemblies = 0
        self.n_factorizations = 0
        self.n_solves = 0
        self.n_transpose_solves = 0
        self._source = None
        self._matrix = None

    @property
    def needs_matrix(self) -> bool:
        """Whether calc needs the explicitly assembled matrix."""
        return not self.is_mat_free

    @property
    def prefers_sparse(self) -> bool:
        """Whether the explicit matrix is preferred in sparse format."""
        return False

    @property
    def name(self) -> str:
        """Name of the operator, as reported in the solve results."""
        return type(self).__name__

    @property
    def matrix(self):
        """The explicit matrix of the last calc, None for matrix-free operators."""
        return self._matrix

    def calc(self, source, matrix=None):
        """
        Prepares the operator for solves with the given source.

        Parameters
        ----------
        source: OperatorSource
            Current linearization.
        matrix: np.ndarray or sparse matrix, optional
            Already assembled matrix of the source, e.g. shared with the
            preconditioner.
        """
        self._source = source
        if self.needs_matrix:
            if matrix is None:
                matrix = source.assemble(sparse=self.prefers_sparse)
                self.n_assemblies += 1
            self._matrix = matrix
        self._calc(matrix)

    def _calc(self, matrix):
        """Operator specific part of calc, e.g. a factorization."""

    def _check_ready(self):
        if self._source is None:
            raise LinearSolverError(
                f"{self.name} was used before its operator was calculated."
            )

    def product(self, vector: np.ndarray, transpose: bool = False) -> np.ndarray:
        """Applies the (transposed) operator to a vector."""
        self._check_ready()
        if self._matrix is not None:
            if transpose:
                return self._matrix.T @ vector
            return self._matrix @ vector
        if transpose:
            return self._source.transposed_product(vector)
        return self._source.product(vector)

    def _residual_norm(self, rhs, x, transpose) -> float:
        return global_norm(rhs - self.product(x, transpose), self.comm)

    def solve(self, rhs: np.ndarray, preconditioner=None, x0=None) -> LinearSolveResult:
        """Solves A x = rhs."""
        self._check_ready()
        result = self._solve(np.asarray(rhs), preconditioner, x0, transpose=False)
        self.n_solves += 1
        return result

    def solve_transpose(
        self, rhs: np.ndarray, preconditioner=None, x0=None
    ) -> LinearSolveResult:
        """Solves A^T x = rhs."""
        self._check_ready()
        result = self._solve(np.asarray(rhs), preconditioner, x0, transpose=True)
        self.n_transpose_solves += 1
        return result

    @abstractmethod
    def _solve(self, rhs, preconditioner, x0, transpose) -> LinearSolveResult:
        """Operator specific part of the solves."""

    def free(self):
        """Releases matrix, factorization and source."""
        self._source = None
        self._matrix = None


class DenseDirectLO(LinearOperatorBase):
    """Dense LU factorization via scipy.linalg.lu_factor."""

    def __init__(self, comm: MPI.Comm = MPI.COMM_WORLD):
        super().__init__(comm)
        self._lu_and_piv = None

    def _calc(self, matrix):
        if issparse(matrix):
            matrix = matrix.toarray()
            self._matrix = matrix
        try:
            lu_and_piv = lu_factor(matrix)
        except ValueError as error:
            raise LinearSolverError(f"LU factorization failed: {error}") from error
        if np.any(np.diag(lu_and_piv[0]) == 0.0):
            raise LinearSolverError("LU factorization failed, matrix is singular.")
        self._lu_and_piv = lu_and_piv
        self.n_factorizations += 1

    def _solve(self, rhs, preconditioner, x0, transpose):
        x = lu_solve(self._lu_and_piv, rhs, trans=1 if transpose else 0)
        return LinearSolveResult(
            x, True, 0, self._residual_norm(rhs, x, transpose), self.name
        )

    def free(self):
        super().free()
        self._lu_and_piv = None


class SparseDirectLO(LinearOperatorBase):
    """Sparse LU factorization via scipy.sparse.linalg.splu."""

    def __init__(self, comm: MPI.Comm = MPI.COMM_WORLD):
        super().__init__(comm)
        self._lu = None

    @property
    def prefers_sparse(self) -> bool:
        return True

    def _calc(self, matrix):
        matrix = csc_matrix(matrix)
        self._matrix = matrix
        try:
            self._lu = splu(matrix)
        except RuntimeError as error:
            raise LinearSolverError(
                f"Sparse LU factorization failed: {error}"
            ) from error
        self.n_factorizations += 1

    def _solve(self, rhs, preconditioner, x0, transpose):
        x = self._lu.solve(rhs, trans="T" if transpose else "N")
        return LinearSolveResult(
            x, True, 0, self._residual_norm(rhs, x, transpose), self.name
        )

    def free(self):
        super().free()
        self._lu = None


class KrylovLOBase(LinearOperatorBase):
    """
    GMRES solves with divergence check. The tolerances are set via the
    LinearSolverContext.

    Parameters
    ----------
    restart: int
        Number of inner iterations between GMRES restarts.
    """

    is_direct = False

    def __init__(self, comm: MPI.Comm = MPI.COMM_WORLD, restart: int = 30):
        super().__init__(comm)
        self.restart = restart
        self.reltol = 1e-2
        self.abstol = 1e-12
        self.dtol = 1e5
        self.itermax = 1000

    def _operator(self, transpose) -> LinearOperator:
        size = self._source.size
        return LinearOperator(
            (size, size),
            matvec=lambda vector: self.product(np.ravel(vector), transpose),
            dtype=float,
        )

    def _solve(self, rhs, preconditioner, x0, transpose):
        preconditioner_operator = None
        if preconditioner is not None:
            apply = (
                preconditioner.apply_transpose if transpose else preconditioner.apply
            )
            preconditioner_operator = LinearOperator(
                (rhs.size, rhs.size),
                matvec=lambda vector: apply(np.ravel(vector)),
                dtype=float,
            )
        if global_norm(rhs, self.comm) == 0.0:
            return LinearSolveResult(np.zeros_like(rhs), True, 0, 0.0, self.name)

        relative_history = []

        def divergence_check(relative_residual_norm):
            relative_history.append(relative_residual_norm)
            if relative_residual_norm > self.dtol:
                raise LinearSolverDivergedError(
                    f"{self.name} diverged: relative residual "
                    f"{relative_residual_norm:.3e} exceeds dtol {self.dtol:.3e} after "
                    f"{len(relative_history)} iterations."
                )

        restart = min(self.restart, self.itermax)
        x, info = gmres(
            self._operator(transpose),
            rhs,
            x0=x0,
            rtol=self.reltol,
            atol=self.abstol,
            restart=restart,
            maxiter=math.ceil(self.itermax / restart),
            M=preconditioner_operator,
            callback=divergence_check,
            callback_type="pr_norm",
        )
        if info < 0:
            raise LinearSolverError(f"{self.name} failed with illegal input ({info}).")
        converged = info == 0
        if not converged:
            warnings.warn(
                f"{self.name} stopped after {len(relative_history)} iterations "
                "without reaching its tolerance.",
                KrylovConvergenceWarning,
            )
        return LinearSolveResult(
            x,
            converged,
            len(relative_history),
            self._residual_norm(rhs, x, transpose),
            self.name,
        )


class SparseKrylovLO(KrylovLOBase):
    """GMRES on the explicitly assembled sparse matrix."""

    @property
    def prefers_sparse(self) -> bool:
        return True

    def _calc(self, matrix):
        self._matrix = csc_matrix(matrix)


class MatFreeKrylovLO(KrylovLOBase):
    """GMRES on the matrix-free product of the operator source."""

    is_mat_free = True
