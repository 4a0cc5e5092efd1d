"""
Shooting Transcription
======================

Turns an ``OCP`` into a finite-dimensional nonlinear program.

Decision vector:
    multiple shooting  z = [s_0, ..., s_N, q_0, ..., q_{N-1}, p]
    single shooting    z = [s_0, q_0, ..., q_{N-1}, p]

Constraint rows g(z), bounded by row_lower <= g(z) <= row_upper:
    continuity (multiple shooting only)  Phi(s_k, q_k, p) - s_{k+1} = 0
    nonlinear constraints per node       AT_START at node 0, PATH at nodes
                                         0..N, AT_END at node N

Bounds on a bare decision variable go straight into the bounds on z.

Time is normalized: node k sits at tau_k = k / N and its physical time is
t_k = t_offset + t0 + tau_k * (tf - t0), so a free final time is just one
more parameter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..exceptions import ConstructionError, DimensionError, InvalidInputError, NumericalError
from ..model import Control, DifferentialState, Parameter, Variable, VectorFunction
from ..options import SolverOptions, Transcription
from .constraints import BoxConstraints, ConstraintKind
from .dynamics import DynamicsModel
from .integrators import IntegrationResult, Integrator
from .problem import OCP, ObjectiveKind

logger = logging.getLogger(__name__)

# Row group identifiers
_CONTINUITY, _START, _PATH, _END = range(4)


@dataclass
class NLPEvaluation:
    """
    Values (and optionally derivatives) of the NLP at one point.

    Attributes:
        objective: Objective value F(z)
        gradient: dF/dz (n_z,)
        constraints: Row values g(z) (m,)
        jacobian: dg/dz (m, n_z)
        gauss_newton: Sum of J_r^T W J_r over least-squares terms (n_z, n_z)
        times: Node times (N+1,)
        states: Node states (N+1, n_x); integrated in single shooting
        controls: Interval controls (N, n_u)
        parameters: Parameters (n_p,)
    """
    objective: float
    constraints: np.ndarray
    times: np.ndarray
    states: np.ndarray
    controls: np.ndarray
    parameters: np.ndarray
    gradient: Optional[np.ndarray] = None
    jacobian: Optional[np.ndarray] = None
    gauss_newton: Optional[np.ndarray] = None

    @property
    def has_derivatives(self) -> bool:
        return self.jacobian is not None


class ShootingNLP:
    """
    Nonlinear program obtained by single or multiple shooting.

    Args:
        ocp: Problem to transcribe; validated on construction
        options: SolverOptions (integrator, substeps, transcription)

    Example:
        >>> nlp = ShootingNLP(ocp, SolverOptions(transcription="single_shooting"))
        >>> z = nlp.initial_guess()
        >>> ev = nlp.evaluate(z)
        >>> ev.objective, ev.constraints, ev.jacobian
    """

    def __init__(self, ocp: OCP, options: Optional[SolverOptions] = None) -> None:
        self.ocp = ocp
        self.options = options or SolverOptions()
        self.layout = ocp.validate()
        self.model = DynamicsModel(ocp.dynamics, self.layout)
        self.integrator = Integrator(
            self.model,
            method=self.options.integrator,
            steps=self.options.integrator_steps,
        )
        self.multiple_shooting = self.options.transcription is Transcription.MULTIPLE_SHOOTING

        N = ocp.n_intervals
        self.n_intervals = N
        self.n_x = self.layout.n_states
        self.n_u = self.layout.n_controls
        self.n_p = self.layout.n_parameters
        self.taus = np.linspace(0.0, 1.0, N + 1)
        self.t0 = ocp.t0
        self.time_offset = 0.0

        n_nodes = N + 1 if self.multiple_shooting else 1
        self._u_start = n_nodes * self.n_x
        self._p_start = self._u_start + N * self.n_u
        self.n_variables = self._p_start + self.n_p
        self._p_slice = slice(self._p_start, self.n_variables)

        self._tf_index: Optional[int] = None
        if isinstance(ocp.tf, Parameter):
            self._tf_index = self.layout.locate(ocp.tf)[1]

        self._build_bounds_and_rows()
        self._build_objective()
        self._build_shift_maps()

        logger.debug(
            "Transcribed %s: %d variables, %d constraint rows (%s)",
            ocp, self.n_variables, self.n_constraints, self.options.transcription,
        )

    # -- index helpers --------------------------------------------------

    def state_slice(self, k: int) -> slice:
        """Entries of node state s_k in z (multiple shooting, or k = 0)."""
        if not self.multiple_shooting and k != 0:
            raise IndexError("single shooting only has the initial node state")
        return slice(k * self.n_x, (k + 1) * self.n_x)

    def control_slice(self, k: int) -> slice:
        """Entries of interval control q_k in z."""
        start = self._u_start + k * self.n_u
        return slice(start, start + self.n_u)

    @property
    def parameter_slice(self) -> slice:
        return self._p_slice

    def unpack(self, z: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split z into (node states, controls (N, n_u), parameters)."""
        z = np.asarray(z, dtype=np.float64)
        states = z[:self._u_start].reshape(-1, self.n_x)
        controls = z[self._u_start:self._p_start].reshape(self.n_intervals, self.n_u)
        return states, controls, z[self._p_slice]

    def _decision_indices(self, var: Variable, kind: ConstraintKind) -> Optional[np.ndarray]:
        N = self.n_intervals
        _, index = self.layout.locate(var)
        if isinstance(var, Parameter):
            return np.array([self._p_start + index])
        if isinstance(var, Control):
            if kind is ConstraintKind.AT_START:
                nodes = [0]
            elif kind is ConstraintKind.AT_END:
                nodes = [N - 1]
            else:
                nodes = range(N)
            return np.array([self._u_start + k * self.n_u + index for k in nodes])
        if isinstance(var, DifferentialState):
            if kind is ConstraintKind.AT_START:
                nodes = [0]
            elif not self.multiple_shooting:
                return None
            elif kind is ConstraintKind.AT_END:
                nodes = [N]
            else:
                nodes = range(N + 1)
            return np.array([k * self.n_x + index for k in nodes])
        return None

    # -- construction ---------------------------------------------------

    @staticmethod
    def _intersect(box: BoxConstraints, indices: np.ndarray, constraint) -> None:
        try:
            box.intersect(indices, constraint.lower, constraint.upper)
        except ConstructionError:
            name = constraint.bound_variable.name
            raise ConstructionError(f"bounds on '{name}' are empty after adding {constraint!r}") from None

    def _build_bounds_and_rows(self) -> None:
        N = self.n_intervals
        bounds = BoxConstraints.unbounded(self.n_variables)
        # State bounds per node, checked whether or not they end up as rows
        node_states = BoxConstraints.unbounded((N + 1) * self.n_x)
        groups: Dict[int, List] = {_START: [], _PATH: [], _END: []}
        kind_group = {
            ConstraintKind.AT_START: _START,
            ConstraintKind.PATH: _PATH,
            ConstraintKind.AT_END: _END,
        }

        for item in self.ocp.constraints:
            constraint = item.constraint
            var = constraint.bound_variable
            indices = None if var is None else self._decision_indices(var, item.kind)
            if isinstance(var, DifferentialState):
                _, index = self.layout.locate(var)
                nodes = np.array(list(item.nodes(N)))
                self._intersect(node_states, nodes * self.n_x + index, constraint)
            if indices is not None:
                self._intersect(bounds, indices, constraint)
            else:
                groups[kind_group[item.kind]].append(constraint)

        self._static_bounds = bounds
        self.bounds = bounds.copy()

        functions = {
            group: VectorFunction([c.expression for c in items], self.layout)
            for group, items in groups.items()
            if items
        }

        lower: List[np.ndarray] = []
        upper: List[np.ndarray] = []
        # (group, node) -> (first row, number of rows)
        self._row_start: Dict[Tuple[int, int], Tuple[int, int]] = {}
        # (node, function, rows)
        self._row_blocks: List[Tuple[int, VectorFunction, slice]] = []

        offset = 0
        if self.multiple_shooting:
            for k in range(N):
                self._row_start[(_CONTINUITY, k)] = (offset, self.n_x)
                offset += self.n_x
            lower.append(np.zeros(N * self.n_x))
            upper.append(np.zeros(N * self.n_x))
        self.n_continuity = offset

        for k in range(N + 1):
            for group in (_START, _PATH, _END):
                if group not in functions:
                    continue
                if (group == _START and k != 0) or (group == _END and k != N):
                    continue
                fn = functions[group]
                self._row_start[(group, k)] = (offset, fn.size)
                self._row_blocks.append((k, fn, slice(offset, offset + fn.size)))
                lower.append(np.array([c.lower for c in groups[group]]))
                upper.append(np.array([c.upper for c in groups[group]]))
                offset += fn.size

        self.n_constraints = offset
        self.row_lower = np.concatenate(lower) if lower else np.zeros(0)
        self.row_upper = np.concatenate(upper) if upper else np.zeros(0)

    def _build_objective(self) -> None:
        ocp = self.ocp
        N = self.n_intervals
        self.objective_kind = ocp.objective_kind
        self._mayer: Optional[VectorFunction] = None
        self._lsq: Optional[VectorFunction] = None
        self._lsq_end: Optional[VectorFunction] = None

        if self.objective_kind is ObjectiveKind.MAYER:
            self._mayer = VectorFunction([ocp.mayer], self.layout)
            return

        if ocp.lsq is not None:
            self._lsq = VectorFunction(ocp.lsq.residuals, self.layout)
            self._weight = ocp.lsq.weight
            self._reference = np.broadcast_to(
                ocp.lsq.reference, (N, ocp.lsq.size)
            ).copy()
        if ocp.lsq_end is not None:
            self._lsq_end = VectorFunction(ocp.lsq_end.residuals, self.layout)
            self._weight_end = ocp.lsq_end.weight
            self._reference_end = ocp.lsq_end.reference.copy()

    def _build_shift_maps(self) -> None:
        N = self.n_intervals
        z_map = np.arange(self.n_variables)
        if self.multiple_shooting:
            for k in range(N):
                z_map[self.state_slice(k)] = np.arange(self.n_variables)[self.state_slice(k + 1)]
        for k in range(N - 1):
            z_map[self.control_slice(k)] = np.arange(self.n_variables)[self.control_slice(k + 1)]
        self._z_shift = z_map

        row_map = np.arange(self.n_constraints)
        for (group, k), (start, size) in self._row_start.items():
            last = N - 1 if group == _CONTINUITY else N
            if group in (_CONTINUITY, _PATH) and k < last:
                source = self._row_start[(group, k + 1)][0]
                row_map[start:start + size] = np.arange(source, source + size)
        self._row_shift = row_map

    # -- runtime updates ------------------------------------------------

    def set_initial_state(self, x0: np.ndarray) -> None:
        """
        Fix s_0 to a measured state (replaces its bounds).

        Raises:
            InvalidInputError: On wrong length or non-finite values
        """
        x0 = np.asarray(x0, dtype=np.float64).ravel()
        if len(x0) != self.n_x:
            raise InvalidInputError(f"state has {len(x0)} entries, expected {self.n_x}")
        if not np.all(np.isfinite(x0)):
            raise InvalidInputError("state contains non-finite values")
        sl = self.state_slice(0)
        self.bounds.lower[sl] = x0
        self.bounds.upper[sl] = x0

    def clear_initial_state(self) -> None:
        """Restore the bounds of s_0 declared in the problem."""
        sl = self.state_slice(0)
        self.bounds.lower[sl] = self._static_bounds.lower[sl]
        self.bounds.upper[sl] = self._static_bounds.upper[sl]

    def set_time_offset(self, offset: float) -> None:
        """Shift the physical time of the whole horizon."""
        self.time_offset = float(offset)

    def set_reference(
        self,
        running: Optional[np.ndarray] = None,
        end: Optional[np.ndarray] = None,
    ) -> None:
        """
        Replace least-squares references.

        Args:
            running: (n_r,) or per interval (N, n_r)
            end: End term reference (n_r_end,)
        """
        if self.objective_kind is not ObjectiveKind.LEAST_SQUARES:
            raise InvalidInputError("references require a least-squares objective")
        if running is not None:
            if self._lsq is None:
                raise InvalidInputError("problem has no running least-squares term")
            running = np.asarray(running, dtype=np.float64)
            shape = (self.n_intervals, self._lsq.size)
            if running.shape not in (shape, shape[1:]):
                raise DimensionError(f"reference has shape {running.shape}, expected {shape}")
            self._reference = np.broadcast_to(running, shape).copy()
        if end is not None:
            if self._lsq_end is None:
                raise InvalidInputError("problem has no least-squares end term")
            end = np.asarray(end, dtype=np.float64).ravel()
            if len(end) != self._lsq_end.size:
                raise DimensionError(
                    f"end reference has {len(end)} entries, expected {self._lsq_end.size}"
                )
            self._reference_end = end

    @property
    def reference(self) -> Optional[np.ndarray]:
        return None if self._lsq is None else self._reference

    def shift(
        self,
        z: np.ndarray,
        y: np.ndarray,
        y_bounds: np.ndarray,
        n: int = 1,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Shift a primal-dual iterate n intervals forward in time.

        The last node state, control and constraint block are duplicated.
        """
        z, y, y_bounds = np.array(z), np.array(y), np.array(y_bounds)
        for _ in range(max(int(n), 0)):
            z = z[self._z_shift]
            y = y[self._row_shift]
            y_bounds = y_bounds[self._z_shift]
        return z, y, y_bounds

    # -- evaluation -----------------------------------------------------

    def horizon(self, p: np.ndarray) -> Tuple[float, np.ndarray]:
        """Horizon length tf - t0 and its gradient wrt p."""
        grad = np.zeros(self.n_p)
        if self._tf_index is None:
            return self.ocp.tf - self.t0, grad
        grad[self._tf_index] = 1.0
        return p[self._tf_index] - self.t0, grad

    def node_times(self, p: np.ndarray) -> np.ndarray:
        duration, _ = self.horizon(p)
        return self.time_offset + self.t0 + self.taus * duration

    def _parameter_sensitivity(self, res: IntegrationResult, k: int, d_duration: np.ndarray) -> np.ndarray:
        # dt = D / N and t_start = offset + t0 + tau_k * D both depend on p through D
        return (
            res.dx_dp
            + np.outer(res.dx_ddt, d_duration / self.n_intervals)
            + np.outer(res.dx_dt0, self.taus[k] * d_duration)
        )

    def _chain(self, node, Jx, Ju, Jp, Jt, dX, d_duration) -> np.ndarray:
        """Jacobian wrt z of a function evaluated at a node."""
        out = Jx @ dX[node]
        out[:, self.control_slice(min(node, self.n_intervals - 1))] += Ju
        out[:, self._p_slice] += Jp + np.outer(Jt, self.taus[node] * d_duration)
        return out

    def evaluate(self, z: np.ndarray, derivatives: bool = True) -> NLPEvaluation:
        """
        Evaluate objective and constraint rows at z.

        Args:
            z: Decision vector (n_z,)
            derivatives: Also compute gradient, Jacobian and (least squares)
                the Gauss-Newton matrix

        Raises:
            NumericalError: If integration or evaluation gives non-finite values
        """
        z = np.asarray(z, dtype=np.float64)
        if z.shape != (self.n_variables,):
            raise DimensionError(f"z has shape {z.shape}, expected ({self.n_variables},)")

        N, n_x, n_z = self.n_intervals, self.n_x, self.n_variables
        nodes, U, p = self.unpack(z)
        duration, d_duration = self.horizon(p)
        if not duration > 0:
            raise NumericalError(f"horizon length must be positive, got {duration:g}")
        dt = duration / N
        times = self.time_offset + self.t0 + self.taus * duration

        X = np.zeros((N + 1, n_x))
        dX = np.zeros((N + 1, n_x, n_z)) if derivatives else None
        g = np.zeros(self.n_constraints)
        J = np.zeros((self.n_constraints, n_z)) if derivatives else None
        eye = np.eye(n_x)

        if self.multiple_shooting:
            X[:] = nodes
            for k in range(N):
                if derivatives:
                    dX[k][:, self.state_slice(k)] = eye
                res = self.integrator.integrate(X[k], U[k], p, times[k], dt, sensitivities=derivatives)
                rows = slice(k * n_x, (k + 1) * n_x)
                g[rows] = res.x - X[k + 1]
                if derivatives:
                    J[rows, self.state_slice(k)] = res.dx_dx0
                    J[rows, self.control_slice(k)] = res.dx_du
                    J[rows, self._p_slice] = self._parameter_sensitivity(res, k, d_duration)
                    J[rows, self.state_slice(k + 1)] = -eye
            if derivatives:
                dX[N][:, self.state_slice(N)] = eye
        else:
            X[0] = nodes[0]
            if derivatives:
                dX[0][:, self.state_slice(0)] = eye
            for k in range(N):
                res = self.integrator.integrate(X[k], U[k], p, times[k], dt, sensitivities=derivatives)
                X[k + 1] = res.x
                if derivatives:
                    dX[k + 1] = res.dx_dx0 @ dX[k]
                    dX[k + 1][:, self.control_slice(k)] += res.dx_du
                    dX[k + 1][:, self._p_slice] += self._parameter_sensitivity(res, k, d_duration)

        with np.errstate(all="ignore"):
            for node, fn, rows in self._row_blocks:
                args = (X[node], U[min(node, N - 1)], p, times[node])
                if derivatives:
                    values, Jx, Ju, Jp, Jt = fn.jacobians(*args)
                    J[rows] = self._chain(node, Jx, Ju, Jp, Jt, dX, d_duration)
                else:
                    values = fn(*args)
                g[rows] = values

            objective, gradient, gauss_newton = self._objective(X, U, p, times, dX, d_duration, derivatives)

        if not (np.isfinite(objective) and np.all(np.isfinite(g))):
            raise NumericalError("objective or constraint evaluation produced non-finite values")
        if derivatives and not (np.all(np.isfinite(gradient)) and np.all(np.isfinite(J))):
            raise NumericalError("derivative evaluation produced non-finite values")

        return NLPEvaluation(
            objective=objective,
            constraints=g,
            times=times,
            states=X,
            controls=U.copy(),
            parameters=p.copy(),
            gradient=gradient,
            jacobian=J,
            gauss_newton=gauss_newton,
        )

    def _objective(self, X, U, p, times, dX, d_duration, derivatives):
        N, n_z = self.n_intervals, self.n_variables
        gradient = np.zeros(n_z) if derivatives else None

        if self.objective_kind is ObjectiveKind.MAYER:
            args = (X[N], U[N - 1], p, times[N])
            if derivatives:
                values, Jx, Ju, Jp, Jt = self._mayer.jacobians(*args)
                gradient = self._chain(N, Jx, Ju, Jp, Jt, dX, d_duration)[0]
            else:
                values = self._mayer(*args)
            return float(values[0]), gradient, None

        objective = 0.0
        gauss_newton = np.zeros((n_z, n_z)) if derivatives else None
        terms = []
        if self._lsq is not None:
            terms.extend((k, k, self._lsq, self._weight, self._reference[k]) for k in range(N))
        if self._lsq_end is not None:
            terms.append((N, N - 1, self._lsq_end, self._weight_end, self._reference_end))

        for node, control, fn, W, ref in terms:
            args = (X[node], U[control], p, times[node])
            if derivatives:
                values, Jx, Ju, Jp, Jt = fn.jacobians(*args)
            else:
                values = fn(*args)
            e = values - ref
            We = W @ e
            objective += 0.5 * float(e @ We)
            if derivatives:
                Jr = self._chain(node, Jx, Ju, Jp, Jt, dX, d_duration)
                gradient += Jr.T @ We
                gauss_newton += Jr.T @ W @ Jr

        return objective, gradient, gauss_newton

    # -- feasibility ----------------------------------------------------

    def row_violation(self, g: np.ndarray) -> np.ndarray:
        """Elementwise violation of the constraint rows."""
        return np.maximum(np.maximum(self.row_lower - g, g - self.row_upper), 0.0)

    def infeasibility(self, ev: NLPEvaluation, z: np.ndarray) -> float:
        """l1 norm of row and bound violations."""
        return float(self.row_violation(ev.constraints).sum() + self.bounds.violation(z).sum())

    def max_violation(self, ev: NLPEvaluation, z: np.ndarray) -> float:
        """Largest row or bound violation."""
        worst = 0.0
        if self.n_constraints:
            worst = float(self.row_violation(ev.constraints).max())
        if self.n_variables:
            worst = max(worst, float(self.bounds.violation(z).max()))
        return worst

    # -- initialization -------------------------------------------------

    def initial_guess(
        self,
        x: Optional[np.ndarray] = None,
        u: Optional[np.ndarray] = None,
        p: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Build a starting point.

        Unspecified entries start at the middle of two-sided bounds, or at
        zero projected into the bounds. In multiple shooting, node states
        not given are filled by forward simulation from s_0, or hold s_0
        when that simulation diverges.

        Args:
            x: State guess (n_x,) or per node (N+1, n_x)
            u: Control guess (n_u,) or per interval (N, n_u)
            p: Parameter guess (n_p,)
        """
        N = self.n_intervals
        z = self.bounds.default_point()

        if p is not None:
            p = np.asarray(p, dtype=np.float64).ravel()
            if len(p) != self.n_p:
                raise DimensionError(f"parameter guess has {len(p)} entries, expected {self.n_p}")
            z[self._p_slice] = p
        if u is not None:
            u = self._per_node(u, N, self.n_u, "control")
            z[self._u_start:self._p_start] = u.ravel()

        z = self.bounds.project(z)

        if x is not None:
            x = self._per_node(x, N + 1, self.n_x, "state")
            if self.multiple_shooting:
                z[:self._u_start] = x.ravel()
            else:
                z[self.state_slice(0)] = x[0]
        elif self.multiple_shooting:
            _, U, p_values = self.unpack(z)
            s0 = z[self.state_slice(0)]
            times = self.node_times(p_values)
            duration, _ = self.horizon(p_values)
            try:
                trajectory = self.integrator.simulate(s0, U, p_values, times[0], duration / N)
            except NumericalError as exc:
                logger.warning("Forward simulation of the initial guess failed: %s", exc)
                z[:self._u_start] = np.tile(s0, N + 1)
            else:
                z[:self._u_start] = trajectory.ravel()
                logger.debug("Initialized node states by forward simulation")

        return self.bounds.project(z)

    @staticmethod
    def _per_node(values, rows: int, cols: int, what: str) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.ndim <= 1 and values.size == cols:
            return np.tile(values.ravel(), (rows, 1))
        if values.shape != (rows, cols):
            raise DimensionError(
                f"{what} guess has shape {values.shape}, expected ({cols},) or ({rows}, {cols})"
            )
        return values

    def variable_names(self) -> Tuple[List[str], List[str], List[str]]:
        """Names of states, controls and parameters."""
        return (
            [v.name for v in self.layout.states],
            [v.name for v in self.layout.controls],
            [v.name for v in self.layout.parameters],
        )
