"""
SQP Solver
==========

Sequential quadratic programming on a shooting NLP.

Each iteration walks through the phases

    LINEARIZE -> SOLVE_QP -> LINE_SEARCH -> CONVERGENCE_CHECK

and ends in CONVERGED or FAILED. The QP subproblem

    minimize    1/2 dz' H dz + grad F' dz
    subject to  row_lower - g <= J dz <= row_upper - g
                lb - z <= dz <= ub - z

is handed to the QP kernel (``rtimpc.solve``). H is the Gauss-Newton matrix
for least-squares objectives or a damped BFGS approximation otherwise.

Multipliers follow the QP kernel convention: positive entries mean the
upper side of a row (or bound) is active, so the Lagrangian gradient is
grad F + J' y + y_bounds.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..exceptions import InvalidInputError, NumericalError
from ..options import HessianApproximation, SolverOptions
from ..result import OCPSolution, SolveResult, Status
from ..solver import solve as solve_qp
from ..utils.validation import is_infinite
from .problem import OCP, ObjectiveKind
from .transcription import NLPEvaluation, ShootingNLP

logger = logging.getLogger(__name__)

Listener = Callable[[OCPSolution], None]

# Armijo sufficient decrease constant
_ARMIJO = 1e-4


class SQPPhase(Enum):
    """Phase of the SQP state machine."""
    INIT = "init"
    LINEARIZE = "linearize"
    SOLVE_QP = "solve_qp"
    LINE_SEARCH = "line_search"
    CONVERGENCE_CHECK = "convergence_check"
    CONVERGED = "converged"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class SolverState:
    """
    Primal-dual iterate owned by whoever drives the solver.

    Attributes:
        z: Decision vector
        y: Constraint row multipliers
        y_bounds: Bound multipliers
        hessian: Current Hessian approximation (n_z, n_z)
        iteration: Total SQP iterations applied to this state
        phase: Current SQPPhase
        status: Status of the last solve or tick
        penalty: l1 merit penalty parameter
        version: Incremented on every change of the iterate
    """
    z: np.ndarray
    y: np.ndarray
    y_bounds: np.ndarray
    hessian: np.ndarray
    iteration: int = 0
    phase: SQPPhase = SQPPhase.INIT
    status: Status = Status.UNSOLVED
    penalty: float = 0.0
    version: int = 0
    kkt_residual: float = field(default=float("inf"))

    def copy(self) -> "SolverState":
        """Deep copy, used as a snapshot."""
        return SolverState(
            z=self.z.copy(),
            y=self.y.copy(),
            y_bounds=self.y_bounds.copy(),
            hessian=self.hessian.copy(),
            iteration=self.iteration,
            phase=self.phase,
            status=self.status,
            penalty=self.penalty,
            version=self.version,
            kkt_residual=self.kkt_residual,
        )


def _dual_and_complementarity(
    values: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    multipliers: np.ndarray,
) -> Tuple[float, float]:
    """Dual infeasibility and complementarity of one block of rows."""
    if len(values) == 0:
        return 0.0, 0.0
    up = np.maximum(multipliers, 0.0)
    lo = np.maximum(-multipliers, 0.0)
    up_inf = is_infinite(upper)
    lo_inf = is_infinite(lower)

    dual = max(
        float(up[up_inf].max(initial=0.0)),
        float(lo[lo_inf].max(initial=0.0)),
    )
    up_slack = np.where(up_inf, 0.0, upper - values)
    lo_slack = np.where(lo_inf, 0.0, values - lower)
    comp = max(
        float(np.abs(up * up_slack).max(initial=0.0)),
        float(np.abs(lo * lo_slack).max(initial=0.0)),
    )
    return dual, comp


class SQPSolver:
    """
    SQP solver for an optimal control problem.

    Args:
        ocp: Problem to solve
        options: SolverOptions; tolerance and iteration budget come only
            from here

    Example:
        >>> solver = SQPSolver(ocp, SolverOptions(max_iterations=200))
        >>> solution = solver.solve()
        >>> solution.status, solution.objective
        >>> # Warm start from the converged iterate
        >>> again = solver.solve(state=solver.state)
    """

    def __init__(self, ocp: OCP, options: Optional[SolverOptions] = None) -> None:
        self.ocp = ocp
        self.options = options or SolverOptions()
        self.nlp = ShootingNLP(ocp, self.options)

        hessian = self.options.hessian
        if hessian is None:
            hessian = (
                HessianApproximation.GAUSS_NEWTON
                if self.nlp.objective_kind is ObjectiveKind.LEAST_SQUARES
                else HessianApproximation.BFGS
            )
        elif (
            hessian is HessianApproximation.GAUSS_NEWTON
            and self.nlp.objective_kind is not ObjectiveKind.LEAST_SQUARES
        ):
            raise InvalidInputError("Gauss-Newton Hessian requires a least-squares objective")
        self.hessian_approximation = hessian

        self.state: Optional[SolverState] = None
        self._listeners: List[Listener] = []
        self._log = logger.info if self.options.verbose else logger.debug

    # -- plot sink ------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        """Register a callable receiving every published OCPSolution."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def publish(self, solution: OCPSolution) -> None:
        """Notify listeners; their failures never reach the solver."""
        for listener in list(self._listeners):
            try:
                listener(solution)
            except Exception:
                logger.warning("Solution listener %r failed", listener, exc_info=True)

    # -- state ----------------------------------------------------------

    def initialize(
        self,
        x: Optional[np.ndarray] = None,
        u: Optional[np.ndarray] = None,
        p: Optional[np.ndarray] = None,
    ) -> SolverState:
        """
        Create a fresh SolverState (phase INIT).

        Args:
            x: State guess (n_x,) or (N+1, n_x)
            u: Control guess (n_u,) or (N, n_u)
            p: Parameter guess (n_p,)
        """
        nlp = self.nlp
        n_z = nlp.n_variables
        if self.hessian_approximation is HessianApproximation.BFGS:
            hessian = np.eye(n_z)
        else:
            # Filled from the residual Jacobians at every linearization
            hessian = np.zeros((n_z, n_z))
        return SolverState(
            z=nlp.initial_guess(x=x, u=u, p=p),
            y=np.zeros(nlp.n_constraints),
            y_bounds=np.zeros(n_z),
            hessian=hessian,
        )

    def solve(
        self,
        state: Optional[SolverState] = None,
        x: Optional[np.ndarray] = None,
        u: Optional[np.ndarray] = None,
        p: Optional[np.ndarray] = None,
        deadline: Optional[float] = None,
    ) -> OCPSolution:
        """
        Iterate until convergence, failure or the iteration budget.

        Args:
            state: Warm start; a fresh state is built from x, u, p otherwise
            x, u, p: Initial guess (ignored when state is given)
            deadline: Optional ``time.perf_counter()`` value to stop at

        Returns:
            OCPSolution; the iterate stays available as ``self.state``
        """
        if state is None:
            state = self.initialize(x=x, u=u, p=p)
        self.state = state
        solution = self.iterate(state, self.options.max_iterations, deadline=deadline)
        self.publish(solution)
        return solution

    # -- iteration ------------------------------------------------------

    def iterate(
        self,
        state: SolverState,
        max_iterations: int,
        deadline: Optional[float] = None,
    ) -> OCPSolution:
        """
        Run at most ``max_iterations`` SQP iterations on ``state`` in place.

        A deadline stops before the next QP; the current iterate stays valid.
        """
        start = time.perf_counter()
        nlp = self.nlp
        tol = self.options.tolerance
        iterations = 0
        state.status = Status.UNSOLVED

        state.phase = SQPPhase.LINEARIZE
        try:
            ev = nlp.evaluate(state.z)
        except NumericalError as exc:
            logger.warning("SQP evaluation failed: %s", exc)
            return self._finish(state, None, Status.NUMERICAL_ERROR, iterations, start)

        state.phase = SQPPhase.CONVERGENCE_CHECK
        kkt, violation = self._kkt(state, ev)
        self._log_iteration(iterations, ev, kkt, violation, None)

        while kkt > tol:
            if iterations >= max_iterations:
                return self._finish(state, ev, Status.MAX_ITERATIONS, iterations, start)
            if deadline is not None and time.perf_counter() >= deadline:
                return self._finish(state, ev, Status.TIME_LIMIT, iterations, start)

            state.phase = SQPPhase.SOLVE_QP
            qp = self._solve_subproblem(state, ev)
            iterations += 1
            if qp.status == Status.MAX_ITERATIONS:
                logger.warning("QP subproblem hit its iteration limit; using approximate step")
            elif qp.status != Status.OPTIMAL:
                logger.warning("QP subproblem failed with status %s", qp.status)
                failed = qp.status if qp.status in (
                    Status.PRIMAL_INFEASIBLE, Status.DUAL_INFEASIBLE
                ) else Status.NUMERICAL_ERROR
                return self._finish(state, ev, failed, iterations, start)

            state.phase = SQPPhase.LINE_SEARCH
            try:
                ev = self._step(state, ev, qp)
            except NumericalError as exc:
                logger.warning("SQP step failed: %s", exc)
                return self._finish(state, None, Status.NUMERICAL_ERROR, iterations, start)

            state.phase = SQPPhase.CONVERGENCE_CHECK
            kkt, violation = self._kkt(state, ev)
            self._log_iteration(iterations, ev, kkt, violation, qp)

        return self._finish(state, ev, Status.OPTIMAL, iterations, start)

    def _solve_subproblem(self, state: SolverState, ev: NLPEvaluation) -> SolveResult:
        nlp = self.nlp
        reg = self.options.hessian_regularization
        if self.hessian_approximation is HessianApproximation.GAUSS_NEWTON:
            state.hessian = ev.gauss_newton
        H = state.hessian + reg * np.eye(nlp.n_variables)

        return solve_qp(
            c=ev.gradient,
            A=ev.jacobian,
            P=H,
            lb=nlp.bounds.lower - state.z,
            ub=nlp.bounds.upper - state.z,
            constraint_l=nlp.row_lower - ev.constraints,
            constraint_u=nlp.row_upper - ev.constraints,
            params={
                "max_iterations": self.options.qp_max_iterations,
                "tolerance": self.options.qp_tolerance,
            },
        )

    def _step(self, state: SolverState, ev: NLPEvaluation, qp: SolveResult) -> NLPEvaluation:
        """Line search, iterate update and Hessian update; returns the new linearization."""
        dz = qp.x
        alpha = self._line_search(state, ev, dz, qp) if self.options.line_search else 1.0

        z_old = state.z
        state.z = z_old + alpha * dz
        state.y = state.y + alpha * (qp.y - state.y)
        state.y_bounds = state.y_bounds + alpha * (qp.y_bounds - state.y_bounds)
        state.iteration += 1
        state.version += 1

        ev_new = self.nlp.evaluate(state.z)

        if self.hessian_approximation is HessianApproximation.BFGS:
            s = state.z - z_old
            # Gradient change of the Lagrangian at the new multipliers
            yv = (ev_new.gradient - ev.gradient) + (ev_new.jacobian - ev.jacobian).T @ state.y
            state.hessian = _damped_bfgs(state.hessian, s, yv)
        else:
            state.hessian = ev_new.gauss_newton

        return ev_new

    def _line_search(
        self,
        state: SolverState,
        ev: NLPEvaluation,
        dz: np.ndarray,
        qp: SolveResult,
    ) -> float:
        """Backtracking on the l1 merit function F + penalty * violation."""
        nlp = self.nlp
        violation = nlp.infeasibility(ev, state.z)
        slope = float(ev.gradient @ dz)

        multipliers = max(
            float(np.abs(qp.y).max(initial=0.0)),
            float(np.abs(qp.y_bounds).max(initial=0.0)),
        )
        required = 1.1 * multipliers
        if violation > 1e-12:
            curvature = 0.5 * float(dz @ (state.hessian @ dz))
            required = max(required, (slope + max(curvature, 0.0)) / (0.5 * violation))
        state.penalty = max(state.penalty, required)

        merit = ev.objective + state.penalty * violation
        directional = slope - state.penalty * violation
        if directional >= 0.0:
            # Not a descent direction for the merit function
            return 1.0

        alpha = 1.0
        for _ in range(self.options.line_search_max_steps):
            trial_z = state.z + alpha * dz
            try:
                trial = nlp.evaluate(trial_z, derivatives=False)
                trial_merit = trial.objective + state.penalty * nlp.infeasibility(trial, trial_z)
            except NumericalError:
                trial_merit = np.inf
            if trial_merit <= merit + _ARMIJO * alpha * directional:
                return alpha
            alpha *= 0.5

        alpha *= 2.0
        logger.warning("Line search found no sufficient decrease; taking step %.3g", alpha)
        return alpha

    def _kkt(self, state: SolverState, ev: NLPEvaluation) -> Tuple[float, float]:
        """KKT residual and maximum constraint violation."""
        nlp = self.nlp
        grad_lagrangian = ev.gradient + ev.jacobian.T @ state.y + state.y_bounds
        stationarity = float(np.abs(grad_lagrangian).max(initial=0.0))
        violation = nlp.max_violation(ev, state.z)

        dual_rows, comp_rows = _dual_and_complementarity(
            ev.constraints, nlp.row_lower, nlp.row_upper, state.y
        )
        dual_bounds, comp_bounds = _dual_and_complementarity(
            state.z, nlp.bounds.lower, nlp.bounds.upper, state.y_bounds
        )
        kkt = max(stationarity, violation, dual_rows, dual_bounds, comp_rows, comp_bounds)
        state.kkt_residual = kkt
        return kkt, violation

    def _log_iteration(self, iteration, ev, kkt, violation, qp) -> None:
        self._log(
            "SQP iter %3d | obj %.6e | kkt %.3e | viol %.3e | qp %s",
            iteration, ev.objective, kkt, violation, "-" if qp is None else qp.status,
        )

    def _finish(
        self,
        state: SolverState,
        ev: Optional[NLPEvaluation],
        status: Status,
        iterations: int,
        start: float,
    ) -> OCPSolution:
        state.status = status
        state.phase = SQPPhase.CONVERGED if status == Status.OPTIMAL else SQPPhase.FAILED
        if status != Status.OPTIMAL:
            self._log("SQP stopped after %d iterations: %s", iterations, status)
        return self.solution(state, ev, iterations=iterations, solve_time=time.perf_counter() - start)

    def solution(
        self,
        state: SolverState,
        ev: Optional[NLPEvaluation] = None,
        iterations: int = 0,
        solve_time: float = 0.0,
    ) -> OCPSolution:
        """Package a state (and its evaluation, if known) as an OCPSolution."""
        nlp = self.nlp
        state_names, control_names, parameter_names = nlp.variable_names()

        if ev is None:
            nodes, controls, parameters = nlp.unpack(state.z)
            states = np.full((nlp.n_intervals + 1, nlp.n_x), np.nan)
            states[:len(nodes)] = nodes
            return OCPSolution(
                status=state.status,
                objective=float("nan"),
                time=nlp.node_times(parameters),
                states=states,
                controls=controls.copy(),
                parameters=parameters.copy(),
                iterations=iterations,
                solve_time=solve_time,
                state_names=state_names,
                control_names=control_names,
                parameter_names=parameter_names,
            )

        g = ev.constraints
        return OCPSolution(
            status=state.status,
            objective=ev.objective,
            time=ev.times.copy(),
            states=ev.states.copy(),
            controls=ev.controls.copy(),
            parameters=ev.parameters.copy(),
            iterations=iterations,
            solve_time=solve_time,
            kkt_residual=state.kkt_residual,
            constraint_violation=nlp.max_violation(ev, state.z),
            constraint_residuals=g - np.clip(g, nlp.row_lower, nlp.row_upper),
            state_names=state_names,
            control_names=control_names,
            parameter_names=parameter_names,
        )


def _damped_bfgs(B: np.ndarray, s: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Powell-damped BFGS update; keeps B positive definite."""
    Bs = B @ s
    sBs = float(s @ Bs)
    if sBs <= 1e-14:
        return B
    sy = float(s @ y)
    if sy < 0.2 * sBs:
        theta = 0.8 * sBs / (sBs - sy)
        r = theta * y + (1.0 - theta) * Bs
    else:
        r = y
    B = B - np.outer(Bs, Bs) / sBs + np.outer(r, r) / float(s @ r)
    return 0.5 * (B + B.T)
