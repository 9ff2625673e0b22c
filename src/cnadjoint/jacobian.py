"""
Computation of Jacobians of residual functions by perturbation.

Two strategies are supported:

- finite differences: column j is (R(u0 + eps e_j) - R(u0)) / eps. First order
  accurate and subject to cancellation, so eps is a compromise (1e-6 by default).
- complex step: column j is Im(R(u0 + i eps e_j)) / eps. There is no subtractive
  cancellation, so eps can be tiny (1e-20 by default) and the result is exact up to
  machine precision. The residual must be analytic in the state, i.e. free of
  complex conjugation, abs() and casts to real.

Every column is computed on its own copy of the base state, so the base state is
never modified and the result doesn't depend on the order of the columns.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

from typing import Callable

import numpy as np
from mpi4py import MPI
from scipy.sparse import csc_matrix, coo_matrix

from cnadjoint.errors import (
    CNAdjointError,
    ComplexStepError,
    ResidualEvaluationError,
    SetupError,
)
from cnadjoint.parallel import global_norm, require_serial
from cnadjoint.solver_options import JacobianMethod, SolverOptions, DEFAULT_EPSILON

ResidualFunction = Callable[[np.ndarray], np.ndarray]


def evaluate_residual(
    residual: ResidualFunction, state: np.ndarray, check_finite: bool = True
) -> np.ndarray:
    """
    Calls the residual function and checks its result.

    Parameters
    ----------
    residual: ResidualFunction
        Residual function R(u).
    state: np.ndarray
        State u at which the residual is evaluated.
    check_finite: bool
        Whether non-finite results are an error. Newton's method checks this itself
        to report divergence.

    Returns
    -------
    np.ndarray
        R(u) as flat array.

    Raises
    ------
    ResidualEvaluationError
        If the residual function raises or returns non-finite values.
    """
    try:
        result = residual(state)
    except CNAdjointError:
        raise
    except Exception as error:  # pylint: disable=broad-exception-caught
        raise ResidualEvaluationError(
            f"Residual evaluation failed: {error}"
        ) from error
    result = np.ravel(np.asarray(result))
    if check_finite and not np.all(np.isfinite(result)):
        raise ResidualEvaluationError(
            "Residual evaluation returned non-finite values, the state is likely "
            "physically invalid."
        )
    return result


class JacobianBuilder:
    """
    Builds dense or sparse Jacobians and Jacobian-vector products of residual
    functions by finite-difference or complex-step perturbation.

    Parameters
    ----------
    method: JacobianMethod
        Perturbation strategy.
    epsilon: float, optional
        Perturbation size, the default depends on the method.
    comm: MPI.Comm
        Communicator used for the norm in the matrix-free products.
    """

    def __init__(
        self,
        method: JacobianMethod | str = JacobianMethod.FINITE_DIFFERENCE,
        epsilon: float | None = None,
        comm: MPI.Comm = MPI.COMM_WORLD,
    ):
        if not isinstance(method, JacobianMethod):
            method = SolverOptions(jac_method=method).jac_method
        if epsilon is not None and not epsilon > 0.0:
            raise SetupError(f"epsilon must be positive, got {epsilon}")
        self.method = method
        self.epsilon = DEFAULT_EPSILON[method] if epsilon is None else epsilon
        self.comm = comm

    @classmethod
    def from_options(cls, options: SolverOptions, comm: MPI.Comm = MPI.COMM_WORLD):
        """Creates a builder from the jac_method and epsilon of the options."""
        return cls(options.jac_method, options.resolved_epsilon, comm)

    @property
    def is_complex_step(self) -> bool:
        """Whether the complex step is used."""
        return self.method == JacobianMethod.COMPLEX_STEP

    def __repr__(self):
        return f"JacobianBuilder(method={self.method.value}, epsilon={self.epsilon})"

    def check_complex_support(self, residual: ResidualFunction, state: np.ndarray):
        """
        Checks that the residual can be evaluated with complex state and keeps the
        imaginary part. Meant to be called before any iteration starts.

        Raises
        ------
        ComplexStepError
            If the residual rejects complex input or returns a real-valued result.
        """
        state = np.asarray(state)
        if np.iscomplexobj(state):
            raise ComplexStepError(
                "The complex step needs a real-valued base state, got "
                f"dtype {state.dtype}."
            )
        complex_state = state.astype(complex)
        complex_state += 1j * self.epsilon
        try:
            result = residual(complex_state)
        except TypeError as error:
            raise ComplexStepError(
                "Residual function can't be evaluated with complex-valued state."
            ) from error
        result = np.asarray(result)
        if not np.iscomplexobj(result):
            raise ComplexStepError(
                "Residual function discarded the imaginary part of the state "
                f"(returned dtype {result.dtype}). Complex step is not possible."
            )
        self._check_square(result, state)

    @staticmethod
    def _check_square(result: np.ndarray, state: np.ndarray):
        if np.size(result) != np.size(state):
            raise SetupError(
                f"Residual has size {np.size(result)}, but the state has size "
                f"{np.size(state)}. The Jacobian needs to be square."
            )

    def base_residual(self, residual: ResidualFunction, state: np.ndarray):
        """Residual at the unperturbed state."""
        return evaluate_residual(residual, state)

    def build(
        self,
        residual: ResidualFunction,
        state: np.ndarray,
        base_residual: np.ndarray | None = None,
    ) -> np.ndarray:
        """
        Computes the dense Jacobian dR/du at the given state.

        Parameters
        ----------
        residual: ResidualFunction
            Residual function R(u).
        state: np.ndarray
            Base state u0. Is not modified.
        base_residual: np.ndarray, optional
            R(u0), if already known. Only used for finite differences.

        Returns
        -------
        jacobian: np.ndarray
            Dense matrix of size numDof x numDof. Real for the complex step.
        """
        require_serial(self.comm, "The explicit Jacobian")
        state = np.ravel(np.asarray(state))
        size = state.size
        if self.is_complex_step:
            if np.iscomplexobj(state):
                raise ComplexStepError(
                    "The complex step needs a real-valued base state."
                )
            jacobian = np.zeros((size, size))
            for j in range(size):
                perturbed_state = state.astype(complex)
                perturbed_state[j] += 1j * self.epsilon
                perturbed_residual = evaluate_residual(residual, perturbed_state)
                self._check_square(perturbed_residual, state)
                jacobian[:, j] = perturbed_residual.imag / self.epsilon
            return jacobian

        if base_residual is None:
            base_residual = evaluate_residual(residual, state)
        self._check_square(base_residual, state)
        jacobian = np.zeros(
            (size, size), dtype=np.result_type(base_residual, state, float)
        )
        for j in range(size):
            perturbed_state = state.astype(jacobian.dtype)
            perturbed_state[j] += self.epsilon
            perturbed_residual = evaluate_residual(residual, perturbed_state)
            jacobian[:, j] = (perturbed_residual - base_residual) / self.epsilon
        return jacobian

    def build_sparse(
        self,
        residual: ResidualFunction,
        state: np.ndarray,
        sparsity,
        base_residual: np.ndarray | None = None,
    ) -> csc_matrix:
        """
        Computes the Jacobian with a known sparsity pattern. Columns that don't share
        a row are perturbed together, so the number of residual evaluations is the
        number of colours instead of numDof.

        Parameters
        ----------
        residual: ResidualFunction
            Residual function R(u).
        state: np.ndarray
            Base state u0. Is not modified.
        sparsity: array_like or sparse matrix
            Square pattern, non-zero where the Jacobian may be non-zero.
        base_residual: np.ndarray, optional
            R(u0), if already known. Only used for finite differences.

        Returns
        -------
        jacobian: csc_matrix
            Sparse Jacobian with the given pattern.
        """
        require_serial(self.comm, "The explicit Jacobian")
        state = np.ravel(np.asarray(state))
        pattern = csc_matrix(sparsity, dtype=bool)
        pattern.eliminate_zeros()
        size = state.size
        if pattern.shape != (size, size):
            raise SetupError(
                f"Sparsity pattern of shape {pattern.shape} doesn't fit a state of "
                f"size {size}."
            )
        colors = color_columns(pattern)
        if not self.is_complex_step and base_residual is None:
            base_residual = evaluate_residual(residual, state)

        rows_list, cols_list, data_list = [], [], []
        for color in range(colors.max(initial=-1) + 1):
            columns = np.flatnonzero(colors == color)
            if self.is_complex_step:
                perturbed_state = state.astype(complex)
                perturbed_state[columns] += 1j * self.epsilon
                difference = (
                    evaluate_residual(residual, perturbed_state).imag / self.epsilon
                )
            else:
                perturbed_state = state.astype(np.result_type(state, float))
                perturbed_state[columns] += self.epsilon
                difference = (
                    evaluate_residual(residual, perturbed_state) - base_residual
                ) / self.epsilon
            for column in columns:
                rows = pattern.indices[pattern.indptr[column] : pattern.indptr[column + 1]]
                rows_list.append(rows)
                cols_list.append(np.full(rows.size, column))
                data_list.append(difference[rows])

        if data_list:
            data = np.concatenate(data_list)
            rows = np.concatenate(rows_list)
            cols = np.concatenate(cols_list)
        else:
            data, rows, cols = np.zeros(0), np.zeros(0, int), np.zeros(0, int)
        return coo_matrix((data, (rows, cols)), shape=(size, size)).tocsc()

    def jacvec(
        self,
        residual: ResidualFunction,
        state: np.ndarray,
        vector: np.ndarray,
        base_residual: np.ndarray | None = None,
    ) -> np.ndarray:
        """
        Computes the Jacobian-vector product (dR/du) v without forming the Jacobian.
        The perturbation is scaled by the norm of v.

        Parameters
        ----------
        residual: ResidualFunction
            Residual function R(u).
        state: np.ndarray
            Base state u0. Is not modified.
        vector: np.ndarray
            Direction v.
        base_residual: np.ndarray, optional
            R(u0), if already known. Only used for finite differences.
        """
        state = np.ravel(np.asarray(state))
        vector = np.ravel(np.asarray(vector))
        vector_norm = global_norm(vector, self.comm)
        if vector_norm == 0.0:
            return np.zeros_like(vector, dtype=float)
        step = self.epsilon / vector_norm
        if self.is_complex_step:
            perturbed_state = state + 1j * step * vector
            return evaluate_residual(residual, perturbed_state).imag / step
        if base_residual is None:
            base_residual = evaluate_residual(residual, state)
        perturbed_state = state + step * vector
        return (evaluate_residual(residual, perturbed_state) - base_residual) / step


def color_columns(pattern) -> np.ndarray:
    """
    Greedy colouring of the columns of a sparsity pattern. Two columns get different
    colours if they have a non-zero in the same row.

    Returns
    -------
    colors: np.ndarray
        Colour index per column, starting at 0.
    """
    pattern = csc_matrix(pattern, dtype=bool)
    colors = np.full(pattern.shape[1], -1, dtype=int)
    rows_per_color: list[set] = []
    for column in range(pattern.shape[1]):
        rows = set(
            pattern.indices[pattern.indptr[column] : pattern.indptr[column + 1]].tolist()
        )
        for color, used_rows in enumerate(rows_per_color):
            if used_rows.isdisjoint(rows):
                colors[column] = color
                used_rows.update(rows)
                break
        else:
            colors[column] = len(rows_per_color)
            rows_per_color.append(rows)
    return colors


def complex_step_gradient(
    func: Callable[[np.ndarray], complex], point: np.ndarray, epsilon: float = 1e-20
) -> np.ndarray:
    """Gradient of a scalar function by the complex step."""
    point = np.ravel(np.asarray(point, dtype=float))
    gradient = np.zeros(point.size)
    for i in range(point.size):
        perturbed_point = point.astype(complex)
        perturbed_point[i] += 1j * epsilon
        gradient[i] = np.imag(func(perturbed_point)) / epsilon
    return gradient


def finite_difference_gradient(
    func: Callable[[np.ndarray], float], point: np.ndarray, epsilon: float = 1e-6
) -> np.ndarray:
    """Gradient of a scalar function by forward finite differences."""
    point = np.ravel(np.asarray(point, dtype=float))
    base_value = func(point)
    gradient = np.zeros(point.size)
    for i in range(point.size):
        perturbed_point = point.copy()
        perturbed_point[i] += epsilon
        gradient[i] = (func(perturbed_point) - base_value) / epsilon
    return gradient
