from .openmdao_residual import OpenMDAOResidual

__all__ = ["OpenMDAOResidual"]
