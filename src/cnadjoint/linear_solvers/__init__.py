from .operator_source import (
    OperatorSource,
    MatrixOperatorSource,
    ShiftedOperatorSource,
    ResidualJacobianSource,
)
from .linear_operators import (
    LinearSolveResult,
    LinearOperatorBase,
    DenseDirectLO,
    SparseDirectLO,
    SparseKrylovLO,
    MatFreeKrylovLO,
)
from .preconditioners import (
    Preconditioner,
    PCNone,
    ILUPreconditioner,
    JacobiPreconditioner,
    ShellPreconditioner,
)
from .linear_solver_context import LinearSolverContext, create_linear_solver

__all__ = [
    "OperatorSource",
    "MatrixOperatorSource",
    "ShiftedOperatorSource",
    "ResidualJacobianSource",
    "LinearSolveResult",
    "LinearOperatorBase",
    "DenseDirectLO",
    "SparseDirectLO",
    "SparseKrylovLO",
    "MatFreeKrylovLO",
    "Preconditioner",
    "PCNone",
    "ILUPreconditioner",
    "JacobiPreconditioner",
    "ShellPreconditioner",
    "LinearSolverContext",
    "create_linear_solver",
]
