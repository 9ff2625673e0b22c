"""
Sources of linear operators. A source represents the current linearization of a
problem and knows how to assemble it explicitly or how to apply it to a vector. The
linear operators and preconditioners take what they need from it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np
from scipy.sparse import csc_matrix, identity, issparse, diags

from cnadjoint.errors import LinearSolverError, SetupError


class OperatorSource(ABC):
    """Interface for the current linearization of a problem."""

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of rows (and columns) of the operator."""

    @abstractmethod
    def assemble(self, sparse: bool = False):
        """Returns the operator as explicit dense array or, if sparse is set, as
        csc_matrix."""

    @abstractmethod
    def product(self, vector: np.ndarray) -> np.ndarray:
        """Applies the operator to a vector."""

    def transposed_product(self, vector: np.ndarray) -> np.ndarray:
        """Applies the transposed operator to a vector."""
        raise LinearSolverError(
            f"{type(self).__name__} doesn't support transposed products."
        )

    def diagonal(self) -> np.ndarray:
        """Diagonal of the operator."""
        matrix = self.assemble(sparse=True)
        return np.asarray(matrix.diagonal())


def _convert(matrix, sparse: bool):
    if sparse:
        return csc_matrix(matrix)
    if issparse(matrix):
        return matrix.toarray()
    return np.array(matrix)


class MatrixOperatorSource(OperatorSource):
    """
    Source for an already known matrix.

    Parameters
    ----------
    matrix: np.ndarray or sparse matrix
        Square matrix.
    """

    def __init__(self, matrix):
        if not issparse(matrix):
            matrix = np.atleast_2d(np.asarray(matrix))
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise SetupError(f"Operator matrix needs to be square, got {matrix.shape}")
        self.matrix = matrix

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def assemble(self, sparse: bool = False):
        return _convert(self.matrix, sparse)

    def product(self, vector: np.ndarray) -> np.ndarray:
        return self.matrix @ vector

    def transposed_product(self, vector: np.ndarray) -> np.ndarray:
        return self.matrix.T @ vector

    def diagonal(self) -> np.ndarray:
        return np.asarray(self.matrix.diagonal())


class ShiftedOperatorSource(OperatorSource):
    """
    Source for alpha * I + beta * A, where A is given by another source. The
    Crank-Nicolson operators I - dt/2 J and I + dt/2 J are of this form.

    Parameters
    ----------
    base: OperatorSource
        Source of A.
    alpha: float
        Factor of the identity.
    beta: float
        Factor of A.
    """

    def __init__(self, base: OperatorSource, alpha: float, beta: float):
        self.base = base
        self.alpha = alpha
        self.beta = beta

    @property
    def size(self) -> int:
        return self.base.size

    def assemble(self, sparse: bool = False):
        base_matrix = self.base.assemble(sparse)
        if sparse:
            return csc_matrix(
                self.alpha * identity(self.size, format="csc") + self.beta * base_matrix
            )
        return self.alpha * np.eye(self.size) + self.beta * base_matrix

    def product(self, vector: np.ndarray) -> np.ndarray:
        return self.alpha * vector + self.beta * self.base.product(vector)

    def transposed_product(self, vector: np.ndarray) -> np.ndarray:
        return self.alpha * vector + self.beta * self.base.transposed_product(vector)

    def diagonal(self) -> np.ndarray:
        return self.alpha + self.beta * self.base.diagonal()


class ResidualJacobianSource(OperatorSource):
    """
    Source for the Jacobian of a residual function at a given state, optionally with
    a diagonal shift (shift * M, M being a mass matrix) as used by pseudo-transient
    continuation. Explicit assembly builds the Jacobian via perturbation, products
    are computed matrix-free.

    Parameters
    ----------
    residual: Callable
        Residual function R(u).
    state: np.ndarray
        State at which the Jacobian is taken. A copy is stored.
    builder: JacobianBuilder
        Builder for Jacobians and Jacobian-vector products.
    sparsity: array_like or sparse matrix, optional
        Sparsity pattern of the Jacobian. If given, sparse assembly uses column
        colouring.
    base_residual: np.ndarray, optional
        R(state), if already known.
    shift: float
        Factor of the mass matrix added to the Jacobian.
    mass: float or np.ndarray, optional
        Diagonal of the mass matrix (or a scalar). Identity if not given.
    """

    # pylint: disable=too-many-arguments

    def __init__(
        self,
        residual,
        state: np.ndarray,
        builder,
        sparsity=None,
        base_residual: np.ndarray | None = None,
        shift: float = 0.0,
        mass=None,
    ):
        self.residual = residual
        self.state = np.array(state)
        self.builder = builder
        self.sparsity = sparsity
        self.base_residual = base_residual
        self.shift = shift
        self.mass = 1.0 if mass is None else mass
        self._jacobian = None

    @property
    def size(self) -> int:
        return self.state.size

    def _mass_diagonal(self) -> np.ndarray:
        return np.broadcast_to(np.asarray(self.mass, dtype=float), (self.size,))

    def assemble(self, sparse: bool = False):
        if self._jacobian is None:
            if self.sparsity is not None:
                self._jacobian = self.builder.build_sparse(
                    self.residual, self.state, self.sparsity, self.base_residual
                )
            else:
                self._jacobian = self.builder.build(
                    self.residual, self.state, self.base_residual
                )
        matrix = _convert(self._jacobian, sparse)
        if self.shift != 0.0:
            shift_diagonal = self.shift * self._mass_diagonal()
            if sparse:
                matrix = csc_matrix(matrix + diags(shift_diagonal, format="csc"))
            else:
                matrix = matrix + np.diag(shift_diagonal)
        return matrix

    def product(self, vector: np.ndarray) -> np.ndarray:
        result = self.builder.jacvec(
            self.residual, self.state, vector, self.base_residual
        )
        if self.shift != 0.0:
            result = result + self.shift * self._mass_diagonal() * vector
        return result
