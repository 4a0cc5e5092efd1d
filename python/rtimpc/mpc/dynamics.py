"""
System Dynamics Models
======================

Continuous-time dynamics x' = f(x, u, p, t) compiled for numerical use,
plus ready-made example systems.

Supported models:
- Any ``DifferentialEquation`` written with the expression builder
- Linear time-invariant systems: x' = Ac x + Bc u
- Example systems: rocket (free final time), tank drive (differential drive)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..exceptions import DimensionError
from ..model import (
    Control,
    DifferentialEquation,
    DifferentialState,
    Parameter,
    Variable,
    VariableLayout,
    VectorFunction,
    cos,
    dot,
    sin,
)
from ..options import IntegratorType


class DynamicsModel:
    """
    Compiled right-hand side of a differential equation.

    Args:
        equation: DifferentialEquation defining every state
        layout: Ordering of states, controls and parameters

    Example:
        >>> model = DynamicsModel(f, layout)
        >>> xdot = model.rhs(x, u, p, t)
        >>> f, fx, fu, fp, ft = model.jacobians(x, u, p, t)
    """

    def __init__(self, equation: DifferentialEquation, layout: VariableLayout) -> None:
        self.equation = equation
        self.layout = layout
        by_serial = {eq_state.serial: rhs for eq_state, rhs in zip(equation.states, equation.right_hand_sides)}
        # Right-hand sides in layout order
        self._function = VectorFunction(
            [by_serial[state.serial] for state in layout.states], layout
        )

    @property
    def n_states(self) -> int:
        """Number of states."""
        return self.layout.n_states

    @property
    def n_inputs(self) -> int:
        """Number of controls."""
        return self.layout.n_controls

    @property
    def n_parameters(self) -> int:
        """Number of parameters."""
        return self.layout.n_parameters

    def rhs(self, x: np.ndarray, u: np.ndarray, p: np.ndarray, t: float) -> np.ndarray:
        """Evaluate f(x, u, p, t)."""
        return self._function(x, u, p, t)

    def jacobians(
        self,
        x: np.ndarray,
        u: np.ndarray,
        p: np.ndarray,
        t: float,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Evaluate f and its Jacobians wrt x, u, p and t."""
        return self._function.jacobians(x, u, p, t)

    def simulate(
        self,
        x0: np.ndarray,
        u_sequence: np.ndarray,
        dt: float,
        p: Optional[np.ndarray] = None,
        t0: float = 0.0,
        method: IntegratorType = IntegratorType.RK4,
        steps: int = 4,
    ) -> np.ndarray:
        """
        Simulate the system over a sequence of held controls.

        Args:
            x0: Initial state (n_x,)
            u_sequence: Control sequence (N, n_u)
            dt: Hold time of each control
            p: Parameter values (n_p,)
            t0: Start time
            method: Integrator family
            steps: Integrator substeps per control interval

        Returns:
            State trajectory (N+1, n_x) including initial state
        """
        from .integrators import Integrator

        p = np.zeros(self.n_parameters) if p is None else np.asarray(p, dtype=np.float64)
        integrator = Integrator(self, method=method, steps=steps)
        return integrator.simulate(x0, u_sequence, p, t0, dt)


@dataclass
class SystemModel:
    """
    Example system: differential equation plus its variables.

    Variables can be fetched by name: ``model["v"]``.
    """
    equation: DifferentialEquation
    states: List[DifferentialState]
    controls: List[Control]
    parameters: List[Parameter] = field(default_factory=list)

    def __getitem__(self, name: str) -> Variable:
        for var in self.states + self.controls + self.parameters:
            if var.name == name:
                return var
        raise KeyError(name)

    @property
    def variables(self) -> Dict[str, Variable]:
        return {var.name: var for var in self.states + self.controls + self.parameters}


def linear_system(
    Ac: np.ndarray,
    Bc: np.ndarray,
    state_prefix: str = "x",
    control_prefix: str = "u",
) -> SystemModel:
    """
    Create a continuous-time linear system x' = Ac x + Bc u.

    Args:
        Ac: Continuous state matrix (n_x, n_x)
        Bc: Continuous input matrix (n_x, n_u)

    Returns:
        SystemModel with states x_0.. and controls u_0..
    """
    Ac = np.asarray(Ac, dtype=np.float64)
    Bc = np.asarray(Bc, dtype=np.float64)

    if Ac.ndim != 2 or Ac.shape[0] != Ac.shape[1]:
        raise DimensionError(f"Ac must be square, got shape {Ac.shape}")
    if Bc.ndim != 2 or Bc.shape[0] != Ac.shape[0]:
        raise DimensionError(f"Bc rows ({Bc.shape[0]}) must match Ac ({Ac.shape[0]})")

    n_x, n_u = Bc.shape
    states = [DifferentialState(f"{state_prefix}_{i}") for i in range(n_x)]
    controls = [Control(f"{control_prefix}_{j}") for j in range(n_u)]

    f = DifferentialEquation()
    for i, state in enumerate(states):
        rhs = 0.0
        for j in range(n_x):
            if Ac[i, j] != 0.0:
                rhs = Ac[i, j] * states[j] + rhs
        for j in range(n_u):
            if Bc[i, j] != 0.0:
                rhs = Bc[i, j] * controls[j] + rhs
        f.add(dot(state) == rhs)

    return SystemModel(f, states, controls)


def rocket(t0: float = 0.0) -> SystemModel:
    """
    Create the free final time rocket (point mass with drag and fuel).

    States: [s (distance), v (velocity), m (mass)]
    Input: thrust u
    Parameter: horizon length T

        s' = v
        v' = (u - 0.2 v^2) / m
        m' = -0.01 u^2

    Returns:
        SystemModel whose equation runs on [t0, T]
    """
    s = DifferentialState("s")
    v = DifferentialState("v")
    m = DifferentialState("m")
    u = Control("u")
    T = Parameter("T")

    f = DifferentialEquation(t0, T)
    f.add(dot(s) == v)
    f.add(dot(v) == (u - 0.2 * v * v) / m)
    f.add(dot(m) == -0.01 * u * u)

    return SystemModel(f, [s, v, m], [u], [T])


def tank_drive(track_width: float = 0.5, motor_time_constant: float = 0.5) -> SystemModel:
    """
    Create a differential-drive (tank) vehicle with first-order motors.

    States: [x, y, theta, v_left, v_right]
    Inputs: [u_left, u_right] (motor velocity commands)

        x'       = (v_left + v_right) / 2 * cos(theta)
        y'       = (v_left + v_right) / 2 * sin(theta)
        theta'   = (v_right - v_left) / track_width
        v_left'  = (u_left - v_left) / motor_time_constant
        v_right' = (u_right - v_right) / motor_time_constant

    Returns:
        SystemModel for the tank drive
    """
    x = DifferentialState("x")
    y = DifferentialState("y")
    theta = DifferentialState("theta")
    v_left = DifferentialState("v_left")
    v_right = DifferentialState("v_right")
    u_left = Control("u_left")
    u_right = Control("u_right")

    speed = 0.5 * (v_left + v_right)

    f = DifferentialEquation()
    f.add(dot(x) == speed * cos(theta))
    f.add(dot(y) == speed * sin(theta))
    f.add(dot(theta) == (v_right - v_left) / track_width)
    f.add(dot(v_left) == (u_left - v_left) / motor_time_constant)
    f.add(dot(v_right) == (u_right - v_right) / motor_time_constant)

    return SystemModel(f, [x, y, theta, v_left, v_right], [u_left, u_right])
