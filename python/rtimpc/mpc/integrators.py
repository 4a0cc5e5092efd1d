"""
Explicit Runge-Kutta Integrators
================================

Fixed-step integration of x' = f(x, u, p, t) over one shooting interval,
with forward sensitivities of the end state.

The sensitivities are the exact derivatives of the discrete integration
map (not of the exact flow), so SQP linearizations are consistent with the
values the NLP sees. Besides x0, u and p, the interval length dt and the
interval start time are treated as extra parameters; this is what free
final time problems need.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from ..exceptions import DimensionError, NumericalError
from ..options import IntegratorType

# Butcher tableaus: (A, b, c)
_TABLEAUS: Dict[IntegratorType, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {
    IntegratorType.EULER: (
        np.array([[0.0]]),
        np.array([1.0]),
        np.array([0.0]),
    ),
    # Heun
    IntegratorType.RK2: (
        np.array([[0.0, 0.0], [1.0, 0.0]]),
        np.array([0.5, 0.5]),
        np.array([0.0, 1.0]),
    ),
    # Bogacki-Shampine, third-order weights
    IntegratorType.RK3: (
        np.array([[0.0, 0.0, 0.0], [0.5, 0.0, 0.0], [0.0, 0.75, 0.0]]),
        np.array([2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0]),
        np.array([0.0, 0.5, 0.75]),
    ),
    IntegratorType.RK4: (
        np.array([
            [0.0, 0.0, 0.0, 0.0],
            [0.5, 0.0, 0.0, 0.0],
            [0.0, 0.5, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
        ]),
        np.array([1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0]),
        np.array([0.0, 0.5, 0.5, 1.0]),
    ),
    # Runge-Kutta-Fehlberg stages with the fourth-order weights
    IntegratorType.RK45: (
        np.array([
            [0.0, 0.0, 0.0, 0.0, 0.0],
            [1.0 / 4.0, 0.0, 0.0, 0.0, 0.0],
            [3.0 / 32.0, 9.0 / 32.0, 0.0, 0.0, 0.0],
            [1932.0 / 2197.0, -7200.0 / 2197.0, 7296.0 / 2197.0, 0.0, 0.0],
            [439.0 / 216.0, -8.0, 3680.0 / 513.0, -845.0 / 4104.0, 0.0],
        ]),
        np.array([25.0 / 216.0, 0.0, 1408.0 / 2565.0, 2197.0 / 4104.0, -1.0 / 5.0]),
        np.array([0.0, 1.0 / 4.0, 3.0 / 8.0, 12.0 / 13.0, 1.0]),
    ),
}


def butcher_tableau(method: IntegratorType) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return (A, b, c) of an integrator family."""
    return _TABLEAUS[IntegratorType(method)]


@dataclass
class IntegrationResult:
    """
    End state of one interval and its sensitivities.

    Attributes:
        x: End state (n_x,)
        dx_dx0: d x / d x0 (n_x, n_x)
        dx_du: d x / d u (n_x, n_u)
        dx_dp: d x / d p (n_x, n_p)
        dx_ddt: d x / d dt (n_x,)
        dx_dt0: d x / d t_start (n_x,)
    """
    x: np.ndarray
    dx_dx0: Optional[np.ndarray] = None
    dx_du: Optional[np.ndarray] = None
    dx_dp: Optional[np.ndarray] = None
    dx_ddt: Optional[np.ndarray] = None
    dx_dt0: Optional[np.ndarray] = None


class Integrator:
    """
    Fixed-step explicit Runge-Kutta integrator.

    Args:
        model: DynamicsModel providing rhs() and jacobians()
        method: Integrator family
        steps: Substeps per call of integrate()

    Example:
        >>> integrator = Integrator(model, IntegratorType.RK4, steps=2)
        >>> result = integrator.integrate(x0, u, p, t_start=0.0, dt=0.1)
        >>> result.x, result.dx_dx0
    """

    def __init__(self, model, method: IntegratorType = IntegratorType.RK4, steps: int = 1) -> None:
        if steps < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")
        self.model = model
        self.method = IntegratorType(method)
        self.steps = int(steps)
        self._A, self._b, self._c = _TABLEAUS[self.method]

    @property
    def n_stages(self) -> int:
        return len(self._b)

    def integrate(
        self,
        x0: np.ndarray,
        u: np.ndarray,
        p: np.ndarray,
        t_start: float,
        dt: float,
        sensitivities: bool = True,
    ) -> IntegrationResult:
        """
        Integrate over [t_start, t_start + dt] with u held constant.

        Args:
            x0: Start state (n_x,)
            u: Control (n_u,)
            p: Parameters (n_p,)
            t_start: Interval start time
            dt: Interval length
            sensitivities: Also propagate forward sensitivities

        Returns:
            IntegrationResult

        Raises:
            NumericalError: If the state or a sensitivity becomes non-finite
        """
        model = self.model
        n_x, n_u, n_p = model.n_states, model.n_inputs, model.n_parameters
        x = np.array(x0, dtype=np.float64).ravel()
        u = np.asarray(u, dtype=np.float64).ravel()
        p = np.asarray(p, dtype=np.float64).ravel()
        if len(x) != n_x or len(u) != n_u or len(p) != n_p:
            raise DimensionError(
                f"integrate expects x0({n_x}), u({n_u}), p({n_p}), "
                f"got x0({len(x)}), u({len(u)}), p({len(p)})"
            )

        A, b, c = self._A, self._b, self._c
        n_stages = len(b)
        h = 1.0 / self.steps
        dt = float(dt)
        t_start = float(t_start)

        # Sensitivity columns: [x0 | u | p | dt | t_start]
        n_w = n_x + n_u + n_p + 2
        cu = slice(n_x, n_x + n_u)
        cp = slice(n_x + n_u, n_x + n_u + n_p)
        S = np.zeros((n_x, n_w))
        S[:, :n_x] = np.eye(n_x)

        K = np.zeros((n_stages, n_x))
        dK = np.zeros((n_stages, n_x, n_w)) if sensitivities else None

        with np.errstate(all="ignore"):
            for step in range(self.steps):
                sigma0 = step * h
                for i in range(n_stages):
                    # Stages run in normalized time sigma in [0, 1]
                    X = x + h * (A[i, :i] @ K[:i])
                    sigma = sigma0 + c[i] * h
                    t = t_start + sigma * dt
                    if sensitivities:
                        f, fx, fu, fp, ft = model.jacobians(X, u, p, t)
                        dX = S + h * np.tensordot(A[i, :i], dK[:i], axes=1)
                        dk = dt * (fx @ dX)
                        dk[:, cu] += dt * fu
                        dk[:, cp] += dt * fp
                        dk[:, -2] += f + dt * sigma * ft
                        dk[:, -1] += dt * ft
                        dK[i] = dk
                    else:
                        f = model.rhs(X, u, p, t)
                    K[i] = dt * f

                x = x + h * (b @ K)
                if sensitivities:
                    S = S + h * np.tensordot(b, dK, axes=1)

                if not np.all(np.isfinite(x)) or (sensitivities and not np.all(np.isfinite(S))):
                    raise NumericalError(
                        f"integration diverged on [{t_start:g}, {t_start + dt:g}] "
                        f"(substep {step + 1}/{self.steps})"
                    )

        if not sensitivities:
            return IntegrationResult(x=x)

        return IntegrationResult(
            x=x,
            dx_dx0=S[:, :n_x],
            dx_du=S[:, cu],
            dx_dp=S[:, cp],
            dx_ddt=S[:, -2],
            dx_dt0=S[:, -1],
        )

    def simulate(
        self,
        x0: np.ndarray,
        u_sequence: np.ndarray,
        p: np.ndarray,
        t0: float,
        dt: float,
    ) -> np.ndarray:
        """
        Chain integrate() over a control sequence.

        Returns:
            State trajectory (N+1, n_x)
        """
        u_sequence = np.asarray(u_sequence, dtype=np.float64)
        if u_sequence.ndim == 1 and self.model.n_inputs > 0:
            u_sequence = u_sequence.reshape(-1, self.model.n_inputs)
        n_steps = u_sequence.shape[0]
        x = np.zeros((n_steps + 1, self.model.n_states))
        x[0] = x0

        for k in range(n_steps):
            result = self.integrate(x[k], u_sequence[k], p, t0 + k * dt, dt, sensitivities=False)
            x[k + 1] = result.x

        return x
