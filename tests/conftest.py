import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "jacobian: tests of the Jacobian computation")
    config.addinivalue_line("markers", "linear_solver: tests of the linear solvers")
    config.addinivalue_line("markers", "newton: tests of Newton's method")
    config.addinivalue_line("markers", "checkpoint: tests of the checkpoint stores")
    config.addinivalue_line("markers", "crank_nicolson: tests of the forward sweep")
    config.addinivalue_line("markers", "adjoint: tests of the discrete adjoint")
    config.addinivalue_line("markers", "openmdao: tests with OpenMDAO problems")
    config.addinivalue_line("markers", "mpi: tests that need to run under MPI")


@pytest.fixture
def quiet_options():
    """Options factory with all output switched off."""
    from cnadjoint.solver_options import SolverOptions

    def make(**kwargs):
        kwargs.setdefault("verbosity", 0)
        return SolverOptions(**kwargs)

    return make
