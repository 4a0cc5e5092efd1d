"""
Optimal Control Problems
========================

The ``OCP`` aggregates dynamics, a mesh, constraints and one objective
formulation, and checks the problem invariants before any numerics run.

Example:
    >>> s, v, m = DifferentialState("s"), DifferentialState("v"), DifferentialState("m")
    >>> u, T = Control("u"), Parameter("T")
    >>> f = DifferentialEquation(0.0, T)
    >>> f.add(dot(s) == v)
    >>> ...
    >>> ocp = OCP(0.0, T, 20)
    >>> ocp.minimize_mayer_term(T)
    >>> ocp.subject_to(f)
    >>> ocp.subject_to(AT_START, s == 0.0)
    >>> ocp.subject_to(between(-1.1, u, 1.1))
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from ..exceptions import ConstructionError, DimensionError
from ..model import (
    Constraint,
    Control,
    DifferentialEquation,
    DifferentialState,
    Expression,
    ExprLike,
    Parameter,
    TimeVariable,
    Variable,
    VariableLayout,
    as_expression,
)
from .constraints import ConstraintKind, OCPConstraint


class ObjectiveKind(Enum):
    """Active objective formulation."""
    MAYER = "mayer"
    LEAST_SQUARES = "least_squares"

    def __str__(self) -> str:
        return self.value


@dataclass
class LSQTerm:
    """
    Least-squares term 1/2 (h - r)^T W (h - r).

    Attributes:
        residuals: Residual expressions h (n_r,)
        weight: Weight matrix W (n_r, n_r), symmetric positive semi-definite
        reference: Reference r, (n_r,) or per-node (N, n_r)
    """
    residuals: List[Expression]
    weight: np.ndarray
    reference: np.ndarray

    @property
    def size(self) -> int:
        return len(self.residuals)


def _lsq_weight(weight, n: int) -> np.ndarray:
    if weight is None:
        return np.eye(n)
    W = np.asarray(weight, dtype=np.float64)
    if W.ndim == 0:
        return float(W) * np.eye(n)
    if W.ndim == 1:
        if len(W) != n:
            raise DimensionError(f"weight has {len(W)} entries but there are {n} residuals")
        W = np.diag(W)
    if W.shape != (n, n):
        raise DimensionError(f"weight has shape {W.shape} but there are {n} residuals")
    if not np.allclose(W, W.T):
        raise ConstructionError("weight matrix must be symmetric")
    if np.any(np.linalg.eigvalsh(W) < -1e-10 * max(1.0, np.abs(W).max())):
        raise ConstructionError("weight matrix must be positive semi-definite")
    return W


def _lsq_reference(reference, n: int) -> np.ndarray:
    if reference is None:
        return np.zeros(n)
    r = np.asarray(reference, dtype=np.float64)
    if r.ndim == 0:
        r = np.full(n, float(r))
    if r.shape[-1] != n or r.ndim > 2:
        raise DimensionError(f"reference has shape {r.shape} but there are {n} residuals")
    return r


class OCP:
    """
    Optimal control problem on [t0, tf] with n_intervals shooting intervals.

    Args:
        t0: Start time
        tf: End time, a number or a Parameter for free final time
        n_intervals: Number of equal mesh intervals

    Example:
        >>> ocp = OCP(0.0, 10.0, 20)
        >>> ocp.subject_to(f)
        >>> ocp.minimize_lsq([x, y, u], weight=[10, 10, 0.1], reference=[1, 0, 0])
    """

    def __init__(
        self,
        t0: float = 0.0,
        tf: Union[float, Parameter] = 1.0,
        n_intervals: int = 20,
    ) -> None:
        if isinstance(n_intervals, bool) or not isinstance(n_intervals, (int, np.integer)) or n_intervals < 1:
            raise ConstructionError(f"n_intervals must be a positive integer, got {n_intervals!r}")
        self.t0 = float(t0)
        if isinstance(tf, Parameter):
            self.tf: Union[float, Parameter] = tf
        elif isinstance(tf, Expression):
            raise ConstructionError("tf must be a number or a Parameter")
        else:
            self.tf = float(tf)
            if not self.tf > self.t0:
                raise ConstructionError(f"tf ({self.tf}) must be greater than t0 ({self.t0})")
        self.n_intervals = int(n_intervals)

        self.dynamics: Optional[DifferentialEquation] = None
        self.constraints: List[OCPConstraint] = []
        self.objective_kind: Optional[ObjectiveKind] = None
        self.mayer: Optional[Expression] = None
        self.lsq: Optional[LSQTerm] = None
        self.lsq_end: Optional[LSQTerm] = None

    # -- construction ---------------------------------------------------

    def subject_to(self, *args) -> "OCP":
        """
        Add dynamics or a constraint.

        Accepted forms:
            subject_to(f)                      differential equation
            subject_to(constraint)             path constraint
            subject_to(AT_START, constraint)   boundary constraint
            subject_to(AT_END, constraint)

        Returns:
            self for chaining
        """
        if len(args) == 1 and isinstance(args[0], DifferentialEquation):
            self._set_dynamics(args[0])
        elif len(args) == 1 and isinstance(args[0], Constraint):
            self.constraints.append(OCPConstraint(args[0], ConstraintKind.PATH))
        elif len(args) == 2 and isinstance(args[1], Constraint):
            try:
                kind = ConstraintKind(args[0])
            except ValueError:
                raise ConstructionError(f"unknown constraint kind {args[0]!r}") from None
            self.constraints.append(OCPConstraint(args[1], kind))
        else:
            raise ConstructionError(
                f"subject_to expects a DifferentialEquation, a constraint, or "
                f"(kind, constraint), got {args!r}"
            )
        return self

    def _set_dynamics(self, equation: DifferentialEquation) -> None:
        if self.dynamics is not None:
            raise ConstructionError("dynamics already set for this OCP")
        if len(equation) == 0:
            raise ConstructionError("differential equation defines no states")
        if equation.t0 is not None and equation.t0 != self.t0:
            raise ConstructionError(
                f"differential equation starts at {equation.t0} but the OCP at {self.t0}"
            )
        if equation.tf is not None:
            same = (
                equation.tf is self.tf
                if isinstance(equation.tf, Parameter) or isinstance(self.tf, Parameter)
                else equation.tf == self.tf
            )
            if not same:
                raise ConstructionError(
                    f"differential equation ends at {equation.tf!r} but the OCP at {self.tf!r}"
                )
        self.dynamics = equation

    def _require_formulation(self, kind: ObjectiveKind) -> None:
        if self.objective_kind is not None and self.objective_kind is not kind:
            raise ConstructionError(
                f"OCP already has a {self.objective_kind} objective; "
                f"cannot add a {kind} term"
            )
        self.objective_kind = kind

    def minimize_mayer_term(self, expression: ExprLike) -> "OCP":
        """Minimize a scalar function of the end state and parameters."""
        self._require_formulation(ObjectiveKind.MAYER)
        expression = as_expression(expression)
        self.mayer = expression if self.mayer is None else self.mayer + expression
        return self

    def maximize_mayer_term(self, expression: ExprLike) -> "OCP":
        """Maximize a scalar function of the end state and parameters."""
        return self.minimize_mayer_term(-as_expression(expression))

    def minimize_lsq(
        self,
        residuals: Sequence[ExprLike],
        weight=None,
        reference=None,
    ) -> "OCP":
        """
        Minimize 1/2 sum_k (h(x_k, u_k) - r_k)^T W (h(x_k, u_k) - r_k), k = 0..N-1.

        Args:
            residuals: Residual expressions h
            weight: Vector (diagonal) or PSD matrix W; identity if omitted
            reference: Reference r, (n_r,) or per node (N, n_r)
        """
        self._require_formulation(ObjectiveKind.LEAST_SQUARES)
        if self.lsq is not None:
            raise ConstructionError("running least-squares term already set")
        self.lsq = self._lsq_term(residuals, weight, reference)
        if self.lsq.reference.ndim == 2 and self.lsq.reference.shape[0] != self.n_intervals:
            raise DimensionError(
                f"reference has {self.lsq.reference.shape[0]} rows, expected {self.n_intervals}"
            )
        return self

    def minimize_lsq_end_term(
        self,
        residuals: Sequence[ExprLike],
        weight=None,
        reference=None,
    ) -> "OCP":
        """Minimize 1/2 (h(x_N) - r)^T W (h(x_N) - r) at the end of the horizon."""
        self._require_formulation(ObjectiveKind.LEAST_SQUARES)
        if self.lsq_end is not None:
            raise ConstructionError("least-squares end term already set")
        term = self._lsq_term(residuals, weight, reference)
        if term.reference.ndim != 1:
            raise DimensionError("end term reference must be a vector")
        self.lsq_end = term
        return self

    @staticmethod
    def _lsq_term(residuals, weight, reference) -> LSQTerm:
        if isinstance(residuals, (Expression, int, float)):
            residuals = [residuals]
        residuals = [as_expression(r) for r in residuals]
        if not residuals:
            raise ConstructionError("least-squares term needs at least one residual")
        n = len(residuals)
        return LSQTerm(residuals, _lsq_weight(weight, n), _lsq_reference(reference, n))

    # -- queries --------------------------------------------------------

    @property
    def free_final_time(self) -> bool:
        return isinstance(self.tf, Parameter)

    def expressions(self) -> List[Expression]:
        """Every expression the problem references."""
        found: List[Expression] = []
        if self.dynamics is not None:
            found.extend(self.dynamics.right_hand_sides)
        found.extend(c.constraint.expression for c in self.constraints)
        if self.mayer is not None:
            found.append(self.mayer)
        for term in (self.lsq, self.lsq_end):
            if term is not None:
                found.extend(term.residuals)
        return found

    def validate(self) -> VariableLayout:
        """
        Check the problem invariants.

        Returns:
            VariableLayout ordering states (dynamics order), controls and
            parameters (creation order)

        Raises:
            ConstructionError: On missing dynamics, undefined states or a
                missing objective
        """
        if self.dynamics is None:
            raise ConstructionError("OCP has no differential equation")
        if self.objective_kind is None:
            raise ConstructionError("OCP has no objective")

        variables: Dict[int, Variable] = {}
        for expr in self.expressions():
            variables.update(expr.variables())
        if isinstance(self.tf, Parameter):
            variables[self.tf.serial] = self.tf

        defined = {s.serial for s in self.dynamics.states}
        missing = sorted(
            v.name for v in variables.values()
            if isinstance(v, DifferentialState) and v.serial not in defined
        )
        if missing:
            raise ConstructionError(
                f"no differential equation for state(s): {', '.join(missing)}"
            )

        ordered = sorted(variables.values(), key=lambda v: v.serial)
        controls = [v for v in ordered if isinstance(v, Control)]
        parameters = [v for v in ordered if isinstance(v, Parameter)]
        unknown = [
            v.name for v in ordered
            if not isinstance(v, (DifferentialState, Control, Parameter, TimeVariable))
        ]
        if unknown:
            raise ConstructionError(f"unsupported variable(s): {', '.join(unknown)}")

        return VariableLayout(self.dynamics.states, controls, parameters)

    def __repr__(self) -> str:
        n_states = 0 if self.dynamics is None else self.dynamics.n_states
        return (
            f"OCP(t0={self.t0:g}, tf={self.tf!r}, N={self.n_intervals}, "
            f"states={n_states}, constraints={len(self.constraints)}, "
            f"objective={self.objective_kind})"
        )
