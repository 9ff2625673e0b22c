from .linear_system import LinearSystemResidual
from .scalar_advection import ScalarAdvection

__all__ = ["LinearSystemResidual", "ScalarAdvection"]
