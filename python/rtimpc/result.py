"""
rtimpc Result Classes
=====================

Data classes for solver results and status.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

import numpy as np

from .exceptions import (
    ConvergenceTimeoutError,
    InfeasibleError,
    NumericalError,
    UnboundedError,
)


class Status(Enum):
    """
    Solver status codes, shared by the QP kernel and the SQP solver.

    Attributes:
        OPTIMAL: Solution found within tolerance
        PRIMAL_INFEASIBLE: Problem has no feasible solution
        DUAL_INFEASIBLE: Problem is unbounded (objective → -∞)
        MAX_ITERATIONS: Maximum iteration limit reached
        TIME_LIMIT: Time limit exceeded
        NUMERICAL_ERROR: Numerical issues encountered
        UNSOLVED: Problem not yet solved
    """
    OPTIMAL = "optimal"
    PRIMAL_INFEASIBLE = "primal_infeasible"
    DUAL_INFEASIBLE = "dual_infeasible"
    MAX_ITERATIONS = "max_iterations"
    TIME_LIMIT = "time_limit"
    NUMERICAL_ERROR = "numerical_error"
    UNSOLVED = "unsolved"
    INVALID_INPUT = "invalid_input"

    def __str__(self) -> str:
        return self.value

    @property
    def is_successful(self) -> bool:
        """True if an optimal solution was found."""
        return self == Status.OPTIMAL

    @property
    def has_solution(self) -> bool:
        """True if a (possibly suboptimal) solution is available."""
        return self in (
            Status.OPTIMAL,
            Status.MAX_ITERATIONS,
            Status.TIME_LIMIT,
        )


@dataclass
class SolveResult:
    """
    Result of solving an LP/QP problem.

    Attributes:
        status: Solver status
        objective: Optimal objective value
        x: Primal solution vector
        y: Dual solution vector for the constraint rows. A positive entry
            means the upper side of the row is active.
        iterations: Number of iterations performed
        solve_time: Wall clock time in seconds
        primal_residual: Final primal residual (feasibility)
        dual_residual: Final dual residual (optimality)
        gap: Duality gap
        y_bounds: Dual solution vector for the variable bounds

    Example:
        >>> result = solve(c=q, P=P, A=A, constraint_l=l, constraint_u=u)
        >>> if result.status == Status.OPTIMAL:
        ...     print(f"Optimal value: {result.objective}")
        ...     print(f"Solution: {result.x}")
    """

    status: Status
    objective: float
    x: np.ndarray
    y: np.ndarray
    iterations: int
    solve_time: float

    # Convergence metrics
    primal_residual: float = 0.0
    dual_residual: float = 0.0
    gap: float = 0.0

    y_bounds: np.ndarray = field(default_factory=lambda: np.zeros(0))

    # Optional metadata
    setup_time: float = 0.0
    problem_info: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"SolveResult(status={self.status}, "
            f"objective={self.objective:.6g}, "
            f"iterations={self.iterations}, "
            f"time={self.solve_time:.4f}s)"
        )

    def summary(self) -> str:
        """Return a formatted summary of the solve result."""
        lines = [
            "=" * 50,
            "rtimpc QP Solve Summary",
            "=" * 50,
            f"Status:           {self.status}",
            f"Objective:        {self.objective:.10g}",
            f"Iterations:       {self.iterations}",
            f"Solve time:       {self.solve_time:.4f} s",
            "-" * 50,
            f"Primal residual:  {self.primal_residual:.6e}",
            f"Dual residual:    {self.dual_residual:.6e}",
            f"Duality gap:      {self.gap:.6e}",
            "=" * 50,
        ]
        return "\n".join(lines)


@dataclass
class OCPSolution:
    """
    Result of an SQP solve (or of one real-time tick).

    Attributes:
        status: Solver status
        objective: Objective value at the returned iterate
        time: Physical time of the shooting nodes (N+1,)
        states: State trajectory at the nodes (N+1, n_x)
        controls: Piecewise-constant controls (N, n_u)
        parameters: Parameter values (n_p,)
        iterations: SQP iterations performed
        solve_time: Wall clock time in seconds
        kkt_residual: Final KKT residual
        constraint_violation: Maximum constraint violation
        constraint_residuals: Violation of every constraint row at the iterate

    Example:
        >>> solution = solver.solve()
        >>> if solution.status.is_successful:
        ...     print(solution.get_value(T))
    """

    status: Status
    objective: float
    time: np.ndarray
    states: np.ndarray
    controls: np.ndarray
    parameters: np.ndarray
    iterations: int
    solve_time: float = 0.0
    kkt_residual: float = float("inf")
    constraint_violation: float = float("inf")
    constraint_residuals: np.ndarray = field(default_factory=lambda: np.zeros(0))
    state_names: List[str] = field(default_factory=list)
    control_names: List[str] = field(default_factory=list)
    parameter_names: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"OCPSolution(status={self.status}, "
            f"objective={self.objective:.6g}, "
            f"iterations={self.iterations}, "
            f"kkt={self.kkt_residual:.2e})"
        )

    @property
    def optimal_control(self) -> np.ndarray:
        """First control action to apply (n_u,)."""
        return self.controls[0]

    def get_value(self, var: "Variable") -> np.ndarray:
        """
        Get the solution values for a specific variable.

        Args:
            var: DifferentialState, Control or Parameter of the problem

        Returns:
            Node trajectory (N+1,) for a state, interval values (N,) for a
            control, or a 0-d array for a parameter
        """
        name = var.name
        if name in self.state_names:
            return self.states[:, self.state_names.index(name)]
        if name in self.control_names:
            return self.controls[:, self.control_names.index(name)]
        if name in self.parameter_names:
            return np.asarray(self.parameters[self.parameter_names.index(name)])
        raise KeyError(f"Variable '{name}' is not part of this solution")

    def raise_for_status(self) -> None:
        """Raise the exception matching a failed status, if any."""
        if self.status == Status.OPTIMAL:
            return
        if self.status == Status.PRIMAL_INFEASIBLE:
            raise InfeasibleError("QP subproblem is infeasible")
        if self.status == Status.DUAL_INFEASIBLE:
            raise UnboundedError("QP subproblem is unbounded")
        if self.status == Status.NUMERICAL_ERROR:
            raise NumericalError("Integration produced non-finite values")
        if self.status in (Status.MAX_ITERATIONS, Status.TIME_LIMIT):
            raise ConvergenceTimeoutError(
                f"SQP stopped with status {self.status} "
                f"(KKT residual {self.kkt_residual:.3e})",
                iterations=self.iterations,
            )

    def summary(self) -> str:
        """Return a formatted summary of the solution."""
        lines = [
            "=" * 50,
            "rtimpc SQP Summary",
            "=" * 50,
            f"Status:           {self.status}",
            f"Objective:        {self.objective:.10g}",
            f"Iterations:       {self.iterations}",
            f"Solve time:       {self.solve_time:.4f} s",
            "-" * 50,
            f"KKT residual:     {self.kkt_residual:.6e}",
            f"Max violation:    {self.constraint_violation:.6e}",
        ]
        for name, value in zip(self.parameter_names, self.parameters):
            lines.append(f"{name + ':':<18}{value:.10g}")
        lines.append("=" * 50)
        return "\n".join(lines)


# Type alias for Variable (defined in model.py)
# This avoids circular imports
Variable = Any
