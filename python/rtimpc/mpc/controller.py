"""
Real-Time Iteration Controller
==============================

Receding-horizon nonlinear MPC by real-time iterations.

Every ``tick`` shifts the previous primal-dual iterate forward in time,
replaces the initial state by the latest measurement and runs a bounded
number of SQP iterations, so each control update has predictable latency.

Classes:
- TickResult: Outcome of one tick, unpacks to (failed, objective, control)
- RealTimeDriver: Owns the solver state between ticks
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Union

import numpy as np

from ..exceptions import InvalidInputError
from ..options import SolverOptions
from ..result import OCPSolution, Status
from .problem import OCP
from .sqp import SolverState, SQPSolver
from .trajectory import Trajectory

logger = logging.getLogger(__name__)

Reference = Union[np.ndarray, Trajectory]


@dataclass
class TickResult:
    """
    Outcome of one real-time tick.

    Attributes:
        failed: True when the SQP step failed; ``control`` is then the
            previously applied control (None before the first success)
        objective: Objective value of the new iterate
        control: Control to apply (n_u,)
        status: SQP status of the tick
        iterations: SQP iterations performed
        solve_time: Computation time (seconds)
        time: Time stamp of the tick
        solution: Full horizon solution published to listeners
    """
    failed: bool
    objective: float
    control: Optional[np.ndarray]
    status: Status
    iterations: int
    solve_time: float
    time: float
    solution: Optional[OCPSolution] = None

    def __iter__(self):
        return iter((self.failed, self.objective, self.control))

    def __repr__(self) -> str:
        return (
            f"TickResult(\n"
            f"  time={self.time:g},\n"
            f"  failed={self.failed},\n"
            f"  status={self.status},\n"
            f"  objective={self.objective:.6g},\n"
            f"  solve_time={self.solve_time*1000:.2f}ms\n"
            f")"
        )


class RealTimeDriver:
    """
    Real-time iteration driver around an SQPSolver.

    Args:
        ocp: Problem (an SQPSolver is built from it) or an existing SQPSolver
        options: SolverOptions; ignored when a solver is passed

    Example:
        >>> driver = RealTimeDriver(ocp, SolverOptions(control_period=0.5))
        >>> failed, objective, u = driver.tick(0.0, x_measured)
        >>> failed, objective, u = driver.tick(0.5, x_measured)
    """

    def __init__(
        self,
        ocp: Union[OCP, SQPSolver],
        options: Optional[SolverOptions] = None,
    ) -> None:
        if isinstance(ocp, SQPSolver):
            self.solver = ocp
        else:
            self.solver = SQPSolver(ocp, options)
        self.options = self.solver.options
        self.nlp = self.solver.nlp

        self._lock = threading.Lock()
        self._state: Optional[SolverState] = None
        # Pre-tick snapshot, reused when a tick is repeated at the same time
        self._snapshot: Optional[SolverState] = None
        self._snapshot_control: Optional[np.ndarray] = None
        self._control: Optional[np.ndarray] = None
        self._last_time: Optional[float] = None
        self._start_time: Optional[float] = None

    @property
    def n_states(self) -> int:
        return self.nlp.n_x

    @property
    def n_inputs(self) -> int:
        return self.nlp.n_u

    @property
    def state(self) -> Optional[SolverState]:
        """Copy of the current solver state."""
        return None if self._state is None else self._state.copy()

    @property
    def last_control(self) -> Optional[np.ndarray]:
        return None if self._control is None else self._control.copy()

    def initialize(
        self,
        x: Optional[np.ndarray] = None,
        u: Optional[np.ndarray] = None,
        p: Optional[np.ndarray] = None,
    ) -> None:
        """Set the initial guess used by the first tick."""
        with self._lock:
            self._state = self.solver.initialize(x=x, u=u, p=p)

    def reset(self) -> None:
        """Drop the solver state and tick history."""
        with self._lock:
            self._state = None
            self._snapshot = None
            self._snapshot_control = None
            self._control = None
            self._last_time = None
            self._start_time = None
            self.nlp.clear_initial_state()

    def tick(
        self,
        current_time: float,
        measured_state: np.ndarray,
        reference: Optional[Reference] = None,
        reference_end: Optional[np.ndarray] = None,
    ) -> TickResult:
        """
        Run one real-time iteration.

        Args:
            current_time: Time stamp of the measurement
            measured_state: Measured state (n_x,)
            reference: Running least-squares reference, (n_r,), (N, n_r) or
                a Trajectory indexed from the first tick
            reference_end: End term reference (n_r_end,)

        Returns:
            TickResult

        Raises:
            InvalidInputError: On a malformed state or time going backwards
        """
        with self._lock:
            return self._tick(current_time, measured_state, reference, reference_end)

    def _tick(self, current_time, measured_state, reference, reference_end) -> TickResult:
        start = time.perf_counter()
        nlp = self.nlp
        period = self.options.control_period

        current_time = float(current_time)
        if not np.isfinite(current_time):
            raise InvalidInputError(f"tick time must be finite, got {current_time}")
        x_meas = np.asarray(measured_state, dtype=np.float64).ravel()
        if len(x_meas) != nlp.n_x:
            raise InvalidInputError(
                f"measured state has {len(x_meas)} entries, expected {nlp.n_x}"
            )
        if not np.all(np.isfinite(x_meas)):
            raise InvalidInputError("measured state contains non-finite values")

        if self._last_time is not None:
            elapsed = current_time - self._last_time
            same_time = abs(elapsed) <= 1e-9 * period
            if elapsed < 0 and not same_time:
                raise InvalidInputError(
                    f"time went backwards: {current_time:g} < {self._last_time:g}"
                )
        else:
            elapsed, same_time = 0.0, False

        nlp.set_initial_state(x_meas)
        nlp.set_time_offset(current_time - nlp.t0)

        if self._state is None:
            self._state = self.solver.initialize(x=x_meas)

        if self._last_time is None:
            self._start_time = current_time
            self._snapshot = self._state.copy()
            self._snapshot_control = None
        elif not same_time:
            base = self._state.copy()
            n_shift = int(round(elapsed / period))
            if n_shift > 0:
                base.z, base.y, base.y_bounds = nlp.shift(base.z, base.y, base.y_bounds, n_shift)
                base.version += 1
            self._snapshot = base
            self._snapshot_control = self._control

        self._apply_reference(current_time, reference, reference_end)

        deadline = None
        if self.options.tick_time_budget is not None:
            deadline = start + self.options.tick_time_budget

        working = self._snapshot.copy()
        solution = self.solver.iterate(working, self.options.max_iterations_per_tick, deadline)
        failed = not solution.status.has_solution

        if failed:
            logger.warning(
                "Tick at t=%g failed with status %s; keeping previous control",
                current_time, solution.status,
            )
            self._state = self._snapshot.copy()
            self._state.status = solution.status
            control = None if self._snapshot_control is None else self._snapshot_control.copy()
        else:
            self._state = working
            control = solution.controls[0].copy() if nlp.n_u else np.zeros(0)

        self._control = control
        self._last_time = current_time
        self.solver.state = self._state
        self.solver.publish(solution)

        return TickResult(
            failed=failed,
            objective=solution.objective,
            control=None if control is None else control.copy(),
            status=solution.status,
            iterations=solution.iterations,
            solve_time=time.perf_counter() - start,
            time=current_time,
            solution=solution,
        )

    def _apply_reference(self, current_time, reference, reference_end) -> None:
        nlp = self.nlp
        N = nlp.n_intervals
        if isinstance(reference, Trajectory):
            step = int(round((current_time - self._start_time) / self.options.control_period))
            running, end = reference.lsq_reference(step, N)
            if nlp.reference is not None:
                nlp.set_reference(running=running)
            if reference_end is None and nlp.ocp.lsq_end is not None:
                reference_end = end
        elif reference is not None:
            nlp.set_reference(running=reference)
        if reference_end is not None:
            nlp.set_reference(end=reference_end)

    def simulate(
        self,
        x0: np.ndarray,
        n_steps: int,
        t0: float = 0.0,
        reference: Optional[Reference] = None,
        disturbance: Optional[np.ndarray] = None,
    ) -> Dict[str, np.ndarray]:
        """
        Simulate the closed loop against the model integrator.

        Args:
            x0: Initial state
            n_steps: Number of control periods
            t0: Time of the first tick
            reference: Reference passed to every tick
            disturbance: Additive disturbance (n_steps, n_x)

        Returns:
            Dictionary with 'x' (states), 'u' (inputs), 'objective',
            'failed' and 'time' (per tick)
        """
        period = self.options.control_period
        n_x, n_u = self.nlp.n_x, self.nlp.n_u
        x = np.zeros((n_steps + 1, n_x))
        u = np.zeros((n_steps, n_u))
        objective = np.zeros(n_steps)
        failed = np.zeros(n_steps, dtype=bool)
        times = t0 + period * np.arange(n_steps)

        x[0] = x0

        for k in range(n_steps):
            result = self.tick(times[k], x[k], reference=reference)
            objective[k] = result.objective
            failed[k] = result.failed
            if result.control is not None:
                u[k] = result.control

            # Plant model uses the current parameter estimate
            _, _, p = self.nlp.unpack(self._state.z)
            x[k + 1] = self.nlp.integrator.integrate(
                x[k], u[k], p, times[k], period, sensitivities=False
            ).x

            if disturbance is not None:
                x[k + 1] += disturbance[k]

        return {'x': x, 'u': u, 'objective': objective, 'failed': failed, 'time': times}
