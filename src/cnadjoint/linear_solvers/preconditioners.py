# pylint: disable=missing-module-docstring

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

import numpy as np
from scipy.sparse import csc_matrix, issparse
from scipy.sparse.linalg import spilu

from cnadjoint.errors import LinearSolverError


class Preconditioner(ABC):
    """Interface for preconditioners of a LinearSolverContext."""

    is_mat_free = False

    def __init__(self):
        self.n_calcs = 0
        self.n_assemblies = 0
        self._ready = False

    @property
    def needs_matrix(self) -> bool:
        """Whether calc needs the explicitly assembled matrix."""
        return not self.is_mat_free

    @property
    def prefers_sparse(self) -> bool:
        """Whether the explicit matrix is preferred in sparse format."""
        return False

    def calc(self, source, matrix=None):
        """Builds the preconditioner from the source, or from the already assembled
        matrix of the source."""
        if self.needs_matrix and matrix is None:
            matrix = source.assemble(sparse=self.prefers_sparse)
            self.n_assemblies += 1
        self._calc(source, matrix)
        self.n_calcs += 1
        self._ready = True

    @abstractmethod
    def _calc(self, source, matrix):
        """Preconditioner specific part of calc."""

    def _check_ready(self):
        if not self._ready:
            raise LinearSolverError(
                f"{type(self).__name__} was applied before it was calculated."
            )

    @abstractmethod
    def apply(self, vector: np.ndarray) -> np.ndarray:
        """Applies the preconditioner, i.e. an approximate inverse of the operator."""

    @abstractmethod
    def apply_transpose(self, vector: np.ndarray) -> np.ndarray:
        """Applies the transposed preconditioner."""

    def free(self):
        """Releases the data of the preconditioner."""
        self._ready = False


class PCNone(Preconditioner):
    """
    No preconditioner. Only valid together with a direct linear operator, in which
    case applying the preconditioner is a direct solve with the linear operator.
    """

    is_mat_free = True

    def _calc(self, source, matrix):
        """Nothing to compute."""

    def apply(self, vector: np.ndarray) -> np.ndarray:
        raise LinearSolverError(
            "PCNone has to be applied through the linear operator it belongs to."
        )

    def apply_transpose(self, vector: np.ndarray) -> np.ndarray:
        raise LinearSolverError(
            "PCNone has to be applied through the linear operator it belongs to."
        )


class ILUPreconditioner(Preconditioner):
    """
    Incomplete LU factorization of the explicit matrix, computed via scipy's spilu.

    Parameters
    ----------
    drop_tol: float
        Drop tolerance of the incomplete factorization.
    fill_factor: float
        Upper bound of the fill-in ratio.
    """

    def __init__(self, drop_tol: float = 1e-4, fill_factor: float = 10.0):
        super().__init__()
        self.drop_tol = drop_tol
        self.fill_factor = fill_factor
        self._ilu = None

    @property
    def prefers_sparse(self) -> bool:
        return True

    def _calc(self, source, matrix):
        try:
            self._ilu = spilu(
                csc_matrix(matrix), drop_tol=self.drop_tol, fill_factor=self.fill_factor
            )
        except RuntimeError as error:
            raise LinearSolverError(f"ILU factorization failed: {error}") from error

    def apply(self, vector: np.ndarray) -> np.ndarray:
        self._check_ready()
        return self._ilu.solve(vector)

    def apply_transpose(self, vector: np.ndarray) -> np.ndarray:
        self._check_ready()
        return self._ilu.solve(vector, trans="T")

    def free(self):
        super().free()
        self._ilu = None


class JacobiPreconditioner(Preconditioner):
    """Preconditioner using the inverse of the diagonal of the explicit matrix."""

    def __init__(self):
        super().__init__()
        self._inverse_diagonal = None

    def _calc(self, source, matrix):
        if issparse(matrix):
            diagonal = np.asarray(matrix.diagonal())
        else:
            diagonal = np.diag(matrix)
        if np.any(diagonal == 0.0):
            raise LinearSolverError(
                "Jacobi preconditioner can't be built, the matrix has zeros on its "
                "diagonal."
            )
        self._inverse_diagonal = 1.0 / diagonal

    def apply(self, vector: np.ndarray) -> np.ndarray:
        self._check_ready()
        return self._inverse_diagonal * vector

    def apply_transpose(self, vector: np.ndarray) -> np.ndarray:
        return self.apply(vector)

    def free(self):
        super().free()
        self._inverse_diagonal = None


class ShellPreconditioner(Preconditioner):
    """
    Matrix-free preconditioner given by user callables.

    Parameters
    ----------
    apply_func: Callable[[np.ndarray], np.ndarray]
        Application of the preconditioner.
    apply_transpose_func: Callable[[np.ndarray], np.ndarray], optional
        Application of the transposed preconditioner. Defaults to apply_func, which
        is correct for symmetric preconditioners.
    setup_func: Callable[[OperatorSource], None], optional
        Called with the operator source on every calc.
    """

    is_mat_free = True

    def __init__(
        self,
        apply_func: Callable[[np.ndarray], np.ndarray],
        apply_transpose_func: Callable[[np.ndarray], np.ndarray] | None = None,
        setup_func: Callable | None = None,
    ):
        super().__init__()
        self.apply_func = apply_func
        self.apply_transpose_func = (
            apply_func if apply_transpose_func is None else apply_transpose_func
        )
        self.setup_func = setup_func

    def _calc(self, source, matrix):
        if self.setup_func is not None:
            self.setup_func(source)

    def apply(self, vector: np.ndarray) -> np.ndarray:
        self._check_ready()
        return np.asarray(self.apply_func(vector))

    def apply_transpose(self, vector: np.ndarray) -> np.ndarray:
        self._check_ready()
        return np.asarray(self.apply_transpose_func(vector))
