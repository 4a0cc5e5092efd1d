"""
Solver Options
==============

Immutable configuration passed into solver construction.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import InvalidInputError


class IntegratorType(Enum):
    """Explicit fixed-step Runge-Kutta families."""
    EULER = "euler"
    RK2 = "rk2"
    RK3 = "rk3"
    RK4 = "rk4"
    RK45 = "rk45"

    def __str__(self) -> str:
        return self.value


class Transcription(Enum):
    """How the continuous problem is turned into a finite NLP."""
    SINGLE_SHOOTING = "single_shooting"
    MULTIPLE_SHOOTING = "multiple_shooting"

    def __str__(self) -> str:
        return self.value


class HessianApproximation(Enum):
    """Hessian approximation used in the QP subproblems."""
    GAUSS_NEWTON = "gauss_newton"
    BFGS = "bfgs"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SolverOptions:
    """
    Configuration for the SQP solver and the real-time driver.

    Args:
        integrator: Runge-Kutta family used inside each interval
        integrator_steps: Fixed substeps per shooting interval
        transcription: Single or multiple shooting
        hessian: Hessian approximation; None picks Gauss-Newton for
            least-squares objectives and BFGS otherwise
        tolerance: KKT tolerance for convergence
        max_iterations: SQP iteration budget per solve
        max_iterations_per_tick: SQP iterations per real-time tick
        control_period: Real-time control period in seconds
        tick_time_budget: Optional wall-clock budget per tick in seconds
        line_search: Damp steps with an l1 merit line search
        line_search_max_steps: Maximum backtracking steps
        hessian_regularization: Multiple of identity added to the QP Hessian
        qp_tolerance: Tolerance of the QP kernel
        qp_max_iterations: Iteration limit of the QP kernel
        verbose: Log one line per SQP iteration at INFO level

    Example:
        >>> options = SolverOptions(
        ...     hessian=HessianApproximation.BFGS,
        ...     tolerance=1e-6,
        ...     max_iterations=200,
        ... )
    """
    integrator: IntegratorType = IntegratorType.RK4
    integrator_steps: int = 2
    transcription: Transcription = Transcription.MULTIPLE_SHOOTING
    hessian: Optional[HessianApproximation] = None
    tolerance: float = 1e-6
    max_iterations: int = 100
    max_iterations_per_tick: int = 1
    control_period: float = 0.1
    tick_time_budget: Optional[float] = None
    line_search: bool = True
    line_search_max_steps: int = 20
    hessian_regularization: float = 1e-8
    qp_tolerance: float = 1e-9
    qp_max_iterations: int = 200
    verbose: bool = False

    def __post_init__(self):
        """Coerce enum values and validate ranges."""
        for name, enum_type in (
            ("integrator", IntegratorType),
            ("transcription", Transcription),
            ("hessian", HessianApproximation),
        ):
            value = getattr(self, name)
            if value is None or isinstance(value, enum_type):
                continue
            try:
                object.__setattr__(self, name, enum_type(str(value).lower()))
            except ValueError:
                allowed = ", ".join(member.value for member in enum_type)
                raise InvalidInputError(
                    f"{name} must be one of {allowed}, got {value!r}"
                ) from None

        if not self.tolerance > 0:
            raise InvalidInputError(f"tolerance must be > 0, got {self.tolerance}")
        if not self.qp_tolerance > 0:
            raise InvalidInputError(
                f"qp_tolerance must be > 0, got {self.qp_tolerance}"
            )
        if not self.control_period > 0:
            raise InvalidInputError(
                f"control_period must be > 0, got {self.control_period}"
            )
        if self.tick_time_budget is not None and not self.tick_time_budget > 0:
            raise InvalidInputError(
                f"tick_time_budget must be > 0, got {self.tick_time_budget}"
            )
        if self.hessian_regularization < 0:
            raise InvalidInputError("hessian_regularization must be >= 0")
        for name in (
            "integrator_steps",
            "max_iterations",
            "max_iterations_per_tick",
            "line_search_max_steps",
            "qp_max_iterations",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidInputError(f"{name} must be an integer > 0, got {value!r}")

    def with_updates(self, **changes: Any) -> "SolverOptions":
        """Return a copy with some options replaced."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, params: Optional[Dict[str, Any]] = None) -> "SolverOptions":
        """
        Build options from a ``params`` dictionary.

        Accepts the short aliases ``max_iters`` and ``tol``.
        """
        params = dict(params or {})
        if "max_iters" in params:
            params.setdefault("max_iterations", params.pop("max_iters"))
        if "tol" in params:
            params.setdefault("tolerance", params.pop("tol"))
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(params) - known)
        if unknown:
            raise InvalidInputError(f"unknown options: {', '.join(unknown)}")
        return cls(**params)
