from . import adjoint
from . import crank_nicolson
from . import errors
from . import file_writer
from . import globalization
from . import jacobian
from . import newton
from . import objective
from . import parallel
from . import solver_options
from . import time_control


def __getattr__(attr):
    if attr == "linear_solvers":
        import cnadjoint.linear_solvers as linear_solvers

        return linear_solvers
    elif attr == "checkpoint_interface":
        import cnadjoint.checkpoint_interface as checkpoint_interface

        return checkpoint_interface
    elif attr == "problems":
        import cnadjoint.problems as problems

        return problems
    elif attr == "residuals":
        import cnadjoint.residuals as residuals

        return residuals
    elif attr == "utils":
        import cnadjoint.utils as utils

        return utils
    raise AttributeError(f"module {__name__!r} has no attribute {attr!r}")


__all__ = [
    "adjoint",
    "crank_nicolson",
    "errors",
    "file_writer",
    "globalization",
    "jacobian",
    "newton",
    "objective",
    "parallel",
    "solver_options",
    "time_control",
]
