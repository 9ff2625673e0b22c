import numpy as np
from scipy.sparse import issparse


class LinearSystemResidual:
    """Residual R(u) = A u - b of a linear system. Its Jacobian is A, which makes it
    the reference problem for Jacobians and Newton's method."""

    def __init__(self, matrix, rhs):
        self.matrix = matrix if issparse(matrix) else np.atleast_2d(matrix)
        self.rhs = np.ravel(rhs)

    @property
    def size(self) -> int:
        """Number of unknowns."""
        return self.matrix.shape[1]

    def __call__(self, state: np.ndarray) -> np.ndarray:
        return self.matrix @ state - self.rhs

    def solution(self) -> np.ndarray:
        """Exact solution of A u = b."""
        matrix = self.matrix.toarray() if issparse(self.matrix) else self.matrix
        return np.linalg.solve(matrix, self.rhs)
