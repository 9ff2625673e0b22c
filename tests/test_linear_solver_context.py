"""Tests the combinations of preconditioners and linear operators."""

import numpy as np
import pytest
from scipy.sparse import csc_matrix

from cnadjoint.errors import (
    KrylovConvergenceWarning,
    LinearSolverDivergedError,
    LinearSolverError,
    SetupError,
)
from cnadjoint.jacobian import JacobianBuilder
from cnadjoint.linear_solvers import (
    DenseDirectLO,
    ILUPreconditioner,
    JacobiPreconditioner,
    LinearSolverContext,
    MatFreeKrylovLO,
    MatrixOperatorSource,
    PCNone,
    ResidualJacobianSource,
    ShellPreconditioner,
    ShiftedOperatorSource,
    SparseDirectLO,
    SparseKrylovLO,
    create_linear_solver,
)
from cnadjoint.problems import LinearSystemResidual
from cnadjoint.solver_options import SolverOptions


TEST_MATRIX = np.array(
    [
        [4.0, 1.0, 0.0, 0.5],
        [1.0, 3.0, 1.0, 0.0],
        [0.0, -1.0, 5.0, 1.0],
        [0.2, 0.0, 1.0, 2.0],
    ]
)
TEST_RHS = np.array([1.0, -2.0, 3.0, 0.5])


class CountingSource(MatrixOperatorSource):
    """Counts the assemblies."""

    def __init__(self, matrix):
        super().__init__(matrix)
        self.assemblies = 0

    def assemble(self, sparse=False):
        self.assemblies += 1
        return super().assemble(sparse)


def make_context(pc, lo):
    context = LinearSolverContext(pc, lo)
    context.set_tolerances(reltol=1e-12, abstol=1e-14)
    return context


PC_LO_PAIRS = [
    (PCNone, DenseDirectLO),
    (PCNone, SparseDirectLO),
    (ILUPreconditioner, SparseKrylovLO),
    (JacobiPreconditioner, SparseKrylovLO),
    (JacobiPreconditioner, MatFreeKrylovLO),
]


@pytest.mark.linear_solver
@pytest.mark.parametrize("pc_class, lo_class", PC_LO_PAIRS)
def test_linear_solve(pc_class, lo_class):
    context = make_context(pc_class(), lo_class())
    context.calc_pc_and_lo(MatrixOperatorSource(TEST_MATRIX))
    result = context.linear_solve(TEST_RHS)
    assert result.converged
    assert result.x == pytest.approx(np.linalg.solve(TEST_MATRIX, TEST_RHS), rel=1e-8)
    assert result.method == lo_class.__name__
    assert result.residual_norm < 1e-10


@pytest.mark.linear_solver
@pytest.mark.parametrize("pc_class, lo_class", PC_LO_PAIRS)
def test_linear_solve_transpose(pc_class, lo_class):
    context = make_context(pc_class(), lo_class())
    context.calc_pc_and_lo(MatrixOperatorSource(TEST_MATRIX))
    result = context.linear_solve_transpose(TEST_RHS)
    assert result.x == pytest.approx(
        np.linalg.solve(TEST_MATRIX.T, TEST_RHS), rel=1e-8
    )
    assert context.lo.n_transpose_solves == 1
    assert context.lo.n_solves == 0


@pytest.mark.linear_solver
def test_shifted_source():
    source = ShiftedOperatorSource(MatrixOperatorSource(TEST_MATRIX), 1.0, -0.05)
    expected = np.eye(4) - 0.05 * TEST_MATRIX
    assert source.assemble() == pytest.approx(expected)
    assert source.assemble(sparse=True).toarray() == pytest.approx(expected)
    assert source.product(TEST_RHS) == pytest.approx(expected @ TEST_RHS)
    assert source.transposed_product(TEST_RHS) == pytest.approx(expected.T @ TEST_RHS)
    assert source.diagonal() == pytest.approx(np.diag(expected))


@pytest.mark.linear_solver
def test_pc_none_with_krylov_is_rejected():
    with pytest.raises(SetupError):
        LinearSolverContext(PCNone(), MatFreeKrylovLO())


@pytest.mark.linear_solver
def test_pc_none_calc_pc_factorizes_lo():
    context = LinearSolverContext(PCNone(), DenseDirectLO())
    context.calc_pc(MatrixOperatorSource(TEST_MATRIX))
    assert context.lo.n_factorizations == 1
    assert context.apply_pc(TEST_RHS) == pytest.approx(
        np.linalg.solve(TEST_MATRIX, TEST_RHS)
    )
    assert context.apply_pc_transpose(TEST_RHS) == pytest.approx(
        np.linalg.solve(TEST_MATRIX.T, TEST_RHS)
    )


@pytest.mark.linear_solver
def test_jacobi_apply_pc():
    context = LinearSolverContext(JacobiPreconditioner(), SparseKrylovLO())
    context.calc_pc(MatrixOperatorSource(TEST_MATRIX))
    assert context.apply_pc(TEST_RHS) == pytest.approx(TEST_RHS / np.diag(TEST_MATRIX))
    assert not context.is_pc_mat_free
    assert not context.is_lo_mat_free


@pytest.mark.linear_solver
def test_shared_assembly():
    """PC and LO that both need the matrix get it from a single assembly."""
    source = CountingSource(TEST_MATRIX)
    context = make_context(JacobiPreconditioner(), SparseKrylovLO())
    context.calc_pc_and_lo(source)
    assert source.assemblies == 1
    assert context.lo.n_assemblies == 1
    assert context.pc.n_assemblies == 0


@pytest.mark.linear_solver
def test_assembly_for_pc_only_is_counted_on_pc():
    source = CountingSource(TEST_MATRIX)
    context = make_context(JacobiPreconditioner(), MatFreeKrylovLO())
    context.calc_pc_and_lo(source)
    assert source.assemblies == 1
    assert context.pc.n_assemblies == 1
    assert context.lo.n_assemblies == 0
    context.calc_pc(source)
    assert source.assemblies == 2
    assert context.pc.n_assemblies == 2


@pytest.mark.linear_solver
def test_mat_free_needs_no_assembly_for_shell_pc():
    source = CountingSource(TEST_MATRIX)
    inverse_diagonal = 1.0 / np.diag(TEST_MATRIX)
    context = make_context(
        ShellPreconditioner(lambda vector: inverse_diagonal * vector), MatFreeKrylovLO()
    )
    context.calc_pc_and_lo(source)
    result = context.linear_solve(TEST_RHS)
    assert source.assemblies == 0
    assert context.is_lo_mat_free and context.is_pc_mat_free
    assert result.x == pytest.approx(np.linalg.solve(TEST_MATRIX, TEST_RHS), rel=1e-8)


@pytest.mark.linear_solver
def test_mat_free_residual_jacobian():
    residual = LinearSystemResidual(TEST_MATRIX, TEST_RHS)
    source = ResidualJacobianSource(
        residual, np.zeros(4), JacobianBuilder("complex_step")
    )
    context = make_context(JacobiPreconditioner(), MatFreeKrylovLO())
    context.calc_pc_and_lo(source)
    result = context.linear_solve(TEST_RHS)
    assert result.x == pytest.approx(np.linalg.solve(TEST_MATRIX, TEST_RHS), rel=1e-8)
    with pytest.raises(LinearSolverError):
        context.linear_solve_transpose(TEST_RHS)


@pytest.mark.linear_solver
def test_krylov_divergence():
    matrix = np.diag(np.arange(1.0, 101.0))
    context = LinearSolverContext(JacobiPreconditioner(), SparseKrylovLO())
    context.calc_pc_and_lo(MatrixOperatorSource(np.eye(100)))
    context.calc_linear_operator(MatrixOperatorSource(matrix))
    context.set_tolerances(reltol=1e-14, dtol=1e-3)
    with pytest.raises(LinearSolverDivergedError):
        context.linear_solve(np.ones(100))


@pytest.mark.linear_solver
def test_krylov_max_iterations():
    matrix = np.diag(np.arange(1.0, 101.0))
    context = LinearSolverContext(JacobiPreconditioner(), SparseKrylovLO())
    context.calc_pc_and_lo(MatrixOperatorSource(np.eye(100)))
    context.calc_linear_operator(MatrixOperatorSource(matrix))
    context.set_tolerances(reltol=1e-14, abstol=1e-30, itermax=2)
    with pytest.warns(KrylovConvergenceWarning):
        result = context.linear_solve(np.ones(100))
    assert not result.converged


@pytest.mark.linear_solver
def test_set_tolerances_keeps_non_positive():
    context = LinearSolverContext(JacobiPreconditioner(), MatFreeKrylovLO())
    context.set_tolerances(reltol=1e-3, abstol=1e-9, dtol=1e4, itermax=50)
    context.set_tolerances(reltol=0.0, abstol=-1.0, itermax=0)
    assert context.reltol == 1e-3
    assert context.abstol == 1e-9
    assert context.dtol == 1e4
    assert context.itermax == 50
    assert context.lo.reltol == 1e-3


@pytest.mark.linear_solver
def test_free_is_idempotent():
    context = LinearSolverContext(PCNone(), DenseDirectLO())
    context.calc_pc_and_lo(MatrixOperatorSource(TEST_MATRIX))
    context.free()
    context.free()
    with pytest.raises(LinearSolverError):
        context.linear_solve(TEST_RHS)


@pytest.mark.linear_solver
def test_solve_before_calc():
    context = LinearSolverContext(PCNone(), DenseDirectLO())
    with pytest.raises(LinearSolverError):
        context.linear_solve(TEST_RHS)


@pytest.mark.linear_solver
@pytest.mark.parametrize("lo_class", [DenseDirectLO, SparseDirectLO])
def test_singular_matrix(lo_class):
    context = LinearSolverContext(PCNone(), lo_class())
    with pytest.raises(LinearSolverError):
        context.calc_pc_and_lo(MatrixOperatorSource(np.array([[1.0, 2.0], [2.0, 4.0]])))


@pytest.mark.linear_solver
def test_sparse_matrix_source():
    source = MatrixOperatorSource(csc_matrix(TEST_MATRIX))
    context = LinearSolverContext(PCNone(), DenseDirectLO())
    context.calc_pc_and_lo(source)
    assert context.linear_solve(TEST_RHS).x == pytest.approx(
        np.linalg.solve(TEST_MATRIX, TEST_RHS)
    )


@pytest.mark.linear_solver
@pytest.mark.parametrize(
    "jac_type, pc_class, lo_class",
    [
        ("dense", PCNone, DenseDirectLO),
        ("sparse", PCNone, SparseDirectLO),
        ("matrix_free", JacobiPreconditioner, MatFreeKrylovLO),
    ],
)
def test_create_linear_solver(jac_type, pc_class, lo_class):
    context = create_linear_solver(SolverOptions(jac_type=jac_type, krylov_reltol=1e-4))
    assert isinstance(context.pc, pc_class)
    assert isinstance(context.lo, lo_class)
    assert context.reltol == 1e-4
