"""
Combination of a preconditioner and a linear operator into one linear solver, as used
by Newton's method and the adjoint engine.
"""

# pylint: disable = c-extension-no-member

from __future__ import annotations

import numpy as np
from mpi4py import MPI

from cnadjoint.errors import LinearSolverError, SetupError
from cnadjoint.parallel import require_serial
from cnadjoint.solver_options import JacobianType, SolverOptions
from .linear_operators import (
    DenseDirectLO,
    LinearOperatorBase,
    LinearSolveResult,
    MatFreeKrylovLO,
    SparseDirectLO,
)
from .preconditioners import JacobiPreconditioner, PCNone, Preconditioner


class LinearSolverContext:
    """
    Pair of preconditioner (PC) and linear operator (LO).

    Parameters
    ----------
    pc: Preconditioner
        Preconditioner. PCNone is only valid with a direct LO, and then applying it
        is a direct solve with the LO.
    lo: LinearOperatorBase
        Linear operator.
    comm: MPI.Comm
        Communicator of the vectors. Only serial communicators are supported, the
        factorizations and scipy Krylov solvers work on the local data.
    options: SolverOptions, optional
        Options from which the Krylov tolerances are taken.
    """

    def __init__(
        self,
        pc: Preconditioner,
        lo: LinearOperatorBase,
        comm: MPI.Comm = MPI.COMM_WORLD,
        options: SolverOptions | None = None,
    ):
        require_serial(comm, "LinearSolverContext")
        require_serial(lo.comm, type(lo).__name__)
        if isinstance(pc, PCNone) and not lo.is_direct:
            raise SetupError(
                f"{type(lo).__name__} is an iterative linear operator and needs a "
                "preconditioner, PCNone is only valid with direct operators."
            )
        self.pc = pc
        self.lo = lo
        self.comm = comm
        self.reltol = 1e-2
        self.abstol = 1e-12
        self.dtol = 1e5
        self.itermax = 1000
        if options is not None:
            self.set_tolerances(
                options.krylov_reltol,
                options.krylov_abstol,
                options.krylov_dtol,
                options.krylov_itermax,
            )
        else:
            self._forward_tolerances()
        self._freed = False

    def __repr__(self):
        return (
            f"LinearSolverContext(pc={type(self.pc).__name__}, "
            f"lo={type(self.lo).__name__})"
        )

    def _check_usable(self):
        if self._freed:
            raise LinearSolverError("LinearSolverContext was used after free.")

    @property
    def is_lo_mat_free(self) -> bool:
        """Whether the linear operator works without an explicit matrix."""
        return self.lo.is_mat_free

    @property
    def is_pc_mat_free(self) -> bool:
        """Whether the preconditioner works without an explicit matrix."""
        return self.pc.is_mat_free

    @property
    def has_pc_none(self) -> bool:
        """Whether no preconditioner is used."""
        return isinstance(self.pc, PCNone)

    def calc_pc(self, source):
        """Builds the preconditioner for the given operator source. For PCNone this
        builds (i.e. factorizes) the linear operator instead."""
        self._check_usable()
        if self.has_pc_none:
            self.lo.calc(source)
        else:
            self.pc.calc(source)

    def calc_linear_operator(self, source):
        """Builds the linear operator for the given operator source."""
        self._check_usable()
        self.lo.calc(source)

    def calc_pc_and_lo(self, source):
        """Builds preconditioner and linear operator. If both need the explicit
        matrix, it is assembled only once and shared. The assembly is counted on the
        LO if it uses the matrix, otherwise on the PC."""
        self._check_usable()
        matrix = None
        if self.lo.needs_matrix or self.pc.needs_matrix:
            prefers_sparse = (
                self.lo.prefers_sparse if self.lo.needs_matrix else self.pc.prefers_sparse
            )
            matrix = source.assemble(sparse=prefers_sparse)
            if self.lo.needs_matrix:
                self.lo.n_assemblies += 1
            else:
                self.pc.n_assemblies += 1
        self.lo.calc(source, matrix if self.lo.needs_matrix else None)
        if not self.has_pc_none:
            self.pc.calc(source, matrix if self.pc.needs_matrix else None)

    def apply_pc(self, vector: np.ndarray) -> np.ndarray:
        """Applies the preconditioner."""
        self._check_usable()
        if self.has_pc_none:
            return self.lo.solve(vector).x
        return self.pc.apply(vector)

    def apply_pc_transpose(self, vector: np.ndarray) -> np.ndarray:
        """Applies the transposed preconditioner."""
        self._check_usable()
        if self.has_pc_none:
            return self.lo.solve_transpose(vector).x
        return self.pc.apply_transpose(vector)

    def linear_solve(self, rhs: np.ndarray, x0=None) -> LinearSolveResult:
        """Solves A x = rhs with the current linear operator."""
        self._check_usable()
        return self.lo.solve(rhs, None if self.has_pc_none else self.pc, x0)

    def linear_solve_transpose(self, rhs: np.ndarray, x0=None) -> LinearSolveResult:
        """Solves A^T x = rhs with the current linear operator."""
        self._check_usable()
        return self.lo.solve_transpose(rhs, None if self.has_pc_none else self.pc, x0)

    def set_tolerances(
        self,
        reltol: float = -1.0,
        abstol: float = -1.0,
        dtol: float = -1.0,
        itermax: int = -1,
    ):
        """Sets the tolerances of iterative solves. Non-positive values keep the
        current value."""
        if reltol > 0:
            self.reltol = reltol
        if abstol > 0:
            self.abstol = abstol
        if dtol > 0:
            self.dtol = dtol
        if itermax > 0:
            self.itermax = int(itermax)
        self._forward_tolerances()

    def _forward_tolerances(self):
        if not self.lo.is_direct:
            self.lo.reltol = self.reltol
            self.lo.abstol = self.abstol
            self.lo.dtol = self.dtol
            self.lo.itermax = self.itermax

    def free(self):
        """Releases all data of PC and LO. Calling it again has no effect."""
        if self._freed:
            return
        self.lo.free()
        self.pc.free()
        self._freed = True


def create_linear_solver(
    options: SolverOptions, comm: MPI.Comm = MPI.COMM_WORLD
) -> LinearSolverContext:
    """
    Creates the PC/LO pair matching the jac_type of the options.

    Parameters
    ----------
    options: SolverOptions
        Options with jac_type and Krylov tolerances.
    comm: MPI.Comm
        Communicator of the distributed vectors.
    """
    if options.jac_type == JacobianType.DENSE:
        pc, lo = PCNone(), DenseDirectLO(comm)
    elif options.jac_type == JacobianType.SPARSE:
        pc, lo = PCNone(), SparseDirectLO(comm)
    else:
        pc, lo = JacobiPreconditioner(), MatFreeKrylovLO(comm)
    return LinearSolverContext(pc, lo, comm, options)
