"""Typed configuration of the Newton, linear solver and adjoint machinery."""

from __future__ import annotations

from dataclasses import dataclass, fields, asdict
from enum import Enum

from cnadjoint.errors import SetupError


class JacobianType(Enum):
    """Storage and solve strategy of the Jacobian."""

    DENSE = "dense"
    SPARSE = "sparse"
    MATRIX_FREE = "matrix_free"


class JacobianMethod(Enum):
    """Perturbation strategy used to compute the Jacobian."""

    FINITE_DIFFERENCE = "finite_difference"
    COMPLEX_STEP = "complex_step"


DEFAULT_EPSILON = {
    JacobianMethod.FINITE_DIFFERENCE: 1e-6,
    JacobianMethod.COMPLEX_STEP: 1e-20,
}

DEFAULT_STEP_GROWTH = {
    JacobianMethod.FINITE_DIFFERENCE: 1.1,
    JacobianMethod.COMPLEX_STEP: 1.2,
}


@dataclass
class SolverOptions:
    """
    All options recognized by the solvers. The options are validated once on
    construction, invalid values raise a SetupError.

    Parameters
    ----------
    jac_type: JacobianType
        Storage/solve strategy of the Jacobian: dense, sparse or matrix-free Krylov.
    jac_method: JacobianMethod
        Finite-difference or complex-step perturbation.
    epsilon: float, optional
        Perturbation size. Defaults to 1e-6 for finite differences and 1e-20 for the
        complex step.
    itermax: int
        Maximum number of Newton iterations.
    step_tol: float
        Newton terminates when the scaled norm of the update falls below this.
    res_tol: float
        Newton terminates when the scaled norm of the residual falls below this.
    initial_step_factor: float
        Initial damping of the Newton update.
    step_growth: float, optional
        Growth of the damping factor on monotone progress. Defaults to 1.1 for finite
        differences and 1.2 for the complex step.
    krylov_reltol, krylov_abstol, krylov_dtol: float
        Relative, absolute and divergence tolerance of Krylov solves.
    krylov_itermax: int
        Maximum number of Krylov iterations per solve.
    krylov_gamma: float
        Exponent of the inexact-Newton update of the Krylov relative tolerance.
    recalc_prec_freq: int
        Number of Newton iterations between preconditioner rebuilds.
    newton_globalize_euler: bool
        Whether to use pseudo-transient continuation for the Newton correction.
    euler_tau: float
        Initial pseudo time step of the pseudo-transient continuation.
    write_jacobian: bool
        Whether to dump the dense Jacobian of every Newton iteration to a text file.
    jacobian_dump_dir: str
        Directory for the Jacobian dumps.
    verbosity: int
        0 is silent, 1 prints a summary per solve, 2 prints every iteration.
    """

    # This is the complete option surface, splitting it up would not help anyone.
    # pylint: disable=too-many-instance-attributes

    jac_type: JacobianType = JacobianType.DENSE
    jac_method: JacobianMethod = JacobianMethod.FINITE_DIFFERENCE
    epsilon: float | None = None
    itermax: int = 200
    step_tol: float = 1e-6
    res_tol: float = 1e-6
    initial_step_factor: float = 0.5
    step_growth: float | None = None
    krylov_reltol: float = 1e-2
    krylov_abstol: float = 1e-12
    krylov_dtol: float = 1e5
    krylov_itermax: int = 1000
    krylov_gamma: float = 2.0
    recalc_prec_freq: int = 1
    newton_globalize_euler: bool = False
    euler_tau: float = 1.0
    write_jacobian: bool = False
    jacobian_dump_dir: str = "."
    verbosity: int = 1

    def __post_init__(self):
        self.jac_type = self._to_enum(JacobianType, self.jac_type, "jac_type")
        self.jac_method = self._to_enum(JacobianMethod, self.jac_method, "jac_method")

        if self.epsilon is not None:
            self._check_positive("epsilon")
        if self.step_growth is not None and self.step_growth < 1.0:
            raise SetupError(f"step_growth must be >= 1.0, got {self.step_growth}")
        self._check_int("itermax")
        self._check_int("krylov_itermax")
        self._check_int("recalc_prec_freq")
        for name in ("step_tol", "res_tol", "krylov_abstol", "krylov_gamma"):
            if getattr(self, name) < 0.0:
                raise SetupError(f"{name} must be non-negative, got {getattr(self, name)}")
        for name in ("krylov_reltol", "euler_tau"):
            self._check_positive(name)
        if not 0.0 < self.initial_step_factor <= 1.0:
            raise SetupError(
                "initial_step_factor must be in (0, 1], got "
                f"{self.initial_step_factor}"
            )
        if self.krylov_dtol <= 1.0:
            raise SetupError(f"krylov_dtol must be > 1, got {self.krylov_dtol}")
        if not isinstance(self.verbosity, int) or self.verbosity < 0:
            raise SetupError(f"verbosity must be a non-negative int, got {self.verbosity}")

    @staticmethod
    def _to_enum(enum_type, value, name):
        if isinstance(value, enum_type):
            return value
        try:
            return enum_type(str(value).lower().replace("-", "_"))
        except ValueError as error:
            raise SetupError(
                f"Invalid {name} '{value}'. Options are "
                f"{[member.value for member in enum_type]}."
            ) from error

    def _check_int(self, name):
        value = getattr(self, name)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise SetupError(f"{name} must be a positive int, got {value}")

    def _check_positive(self, name):
        value = getattr(self, name)
        if not value > 0.0:
            raise SetupError(f"{name} must be positive, got {value}")

    @property
    def resolved_epsilon(self) -> float:
        """Perturbation size that is actually used."""
        if self.epsilon is None:
            return DEFAULT_EPSILON[self.jac_method]
        return self.epsilon

    @property
    def resolved_step_growth(self) -> float:
        """Damping growth factor that is actually used."""
        if self.step_growth is None:
            return DEFAULT_STEP_GROWTH[self.jac_method]
        return self.step_growth

    def to_dict(self) -> dict:
        """
        Exports the options into a dict of plain values.

        Returns
        -------
        options_dict: dict
            Options, with enums replaced by their string values.
        """
        options_dict = asdict(self)
        options_dict["jac_type"] = self.jac_type.value
        options_dict["jac_method"] = self.jac_method.value
        return options_dict

    @classmethod
    def from_dict(cls, options_dict: dict) -> SolverOptions:
        """
        Creates options from a dict. Dicts created by `to_dict` are supported, unknown
        keys raise a SetupError.

        Parameters
        ----------
        options_dict: dict
            Dictionary from which the options are created.
        """
        known = {option.name for option in fields(cls)}
        unknown = set(options_dict) - known
        if unknown:
            raise SetupError(f"Unknown solver options: {sorted(unknown)}")
        return cls(**options_dict)
