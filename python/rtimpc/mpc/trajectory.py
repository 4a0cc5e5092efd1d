"""
Reference Trajectories
======================

Time-varying references for least-squares tracking objectives.

A Trajectory holds one row per control period. For a tracking objective
``minimize_lsq([x..., u...])`` the running reference at interval k is the
state row followed by the input row, and the end term reference is the
state row at the end of the horizon.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np


@dataclass
class Trajectory:
    """
    Reference trajectory sampled once per control period.

    Args:
        states: State reference (T, n_x)
        inputs: Input reference (T, n_u), optional
        time: Time stamps (T,), optional

    Example:
        >>> x_ref = np.zeros((100, 5))
        >>> x_ref[:, 0] = np.linspace(0, 10, 100)
        >>> traj = Trajectory(states=x_ref)
        >>> running, end = traj.lsq_reference(start=3, n_intervals=20)
    """
    states: np.ndarray
    inputs: Optional[np.ndarray] = None
    time: Optional[np.ndarray] = None

    def __post_init__(self):
        """Validate trajectory."""
        self.states = np.asarray(self.states, dtype=np.float64)
        if self.states.ndim == 1:
            self.states = self.states.reshape(-1, 1)

        if self.inputs is not None:
            self.inputs = np.asarray(self.inputs, dtype=np.float64)
            if self.inputs.ndim == 1:
                self.inputs = self.inputs.reshape(-1, 1)
            if len(self.inputs) != len(self.states):
                raise ValueError(
                    f"inputs have {len(self.inputs)} rows but states have {len(self.states)}"
                )

    @property
    def horizon(self) -> int:
        """Trajectory length."""
        return len(self.states)

    @property
    def n_states(self) -> int:
        return self.states.shape[1]

    @property
    def n_inputs(self) -> int:
        if self.inputs is None:
            return 0
        return self.inputs.shape[1]

    def get_state(self, k: int) -> np.ndarray:
        """State reference at step k (clamped to the trajectory)."""
        k = min(max(k, 0), len(self.states) - 1)
        return self.states[k]

    def get_input(self, k: int) -> Optional[np.ndarray]:
        """Input reference at step k."""
        if self.inputs is None:
            return None
        k = min(max(k, 0), len(self.inputs) - 1)
        return self.inputs[k]

    def get_window(self, start: int, length: int) -> "Trajectory":
        """
        Rows start..start+length-1; past the end the last row is repeated.
        """
        start = max(int(start), 0)
        rows = np.minimum(np.arange(start, start + length), len(self.states) - 1)
        inputs = None if self.inputs is None else self.inputs[rows]
        time = None if self.time is None else np.asarray(self.time)[rows]
        return Trajectory(states=self.states[rows], inputs=inputs, time=time)

    def lsq_reference(self, start: int, n_intervals: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        References for a horizon starting at row ``start``.

        Returns:
            (running (N, n_x + n_u), end (n_x,))
        """
        window = self.get_window(start, n_intervals + 1)
        running = window.states[:n_intervals]
        if window.inputs is not None:
            running = np.hstack([running, window.inputs[:n_intervals]])
        return running, window.states[n_intervals]


def constant_reference(
    x_ref: np.ndarray,
    horizon: int,
    u_ref: Optional[np.ndarray] = None,
) -> Trajectory:
    """
    Constant (setpoint) reference.

    Example:
        >>> traj = constant_reference([1.0, 0.0, 0.0, 0.0, 0.0], horizon=50, u_ref=[0.0, 0.0])
    """
    states = np.tile(np.asarray(x_ref, dtype=np.float64), (horizon, 1))

    inputs = None
    if u_ref is not None:
        inputs = np.tile(np.asarray(u_ref, dtype=np.float64), (horizon, 1))

    return Trajectory(states=states, inputs=inputs)


def step_reference(
    x_initial: np.ndarray,
    x_final: np.ndarray,
    horizon: int,
    step_time: int = 0,
    u_ref: Optional[np.ndarray] = None,
) -> Trajectory:
    """Reference that switches from x_initial to x_final at row step_time."""
    x_initial = np.asarray(x_initial, dtype=np.float64)
    x_final = np.asarray(x_final, dtype=np.float64)

    states = np.zeros((horizon, len(x_initial)))
    states[:step_time] = x_initial
    states[step_time:] = x_final

    inputs = None if u_ref is None else np.tile(np.asarray(u_ref, dtype=np.float64), (horizon, 1))
    return Trajectory(states=states, inputs=inputs)


def ramp_reference(
    x_initial: np.ndarray,
    x_final: np.ndarray,
    horizon: int,
    ramp_duration: Optional[int] = None,
) -> Trajectory:
    """Linear ramp from x_initial to x_final, then hold."""
    x_initial = np.asarray(x_initial, dtype=np.float64)
    x_final = np.asarray(x_final, dtype=np.float64)

    if ramp_duration is None:
        ramp_duration = horizon
    ramp_duration = min(ramp_duration, horizon)

    alpha = np.arange(ramp_duration) / max(ramp_duration - 1, 1)
    states = np.tile(x_final, (horizon, 1))
    states[:ramp_duration] = (1 - alpha)[:, None] * x_initial + alpha[:, None] * x_final

    return Trajectory(states=states)


def sampled_reference(
    fn: Callable[[float], np.ndarray],
    horizon: int,
    dt: float,
    t0: float = 0.0,
) -> Trajectory:
    """
    Sample a reference function x_ref(t) once per period.

    Example:
        >>> traj = sampled_reference(lambda t: [np.cos(t), np.sin(t), t, 0, 0], 200, 0.1)
    """
    time = t0 + dt * np.arange(horizon)
    states = np.array([np.asarray(fn(t), dtype=np.float64).ravel() for t in time])
    return Trajectory(states=states, time=time)
