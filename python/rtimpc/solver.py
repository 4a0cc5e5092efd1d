"""rtimpc QP Kernel.

Dense primal-dual interior point method (Mehrotra predictor-corrector) for

    minimize    (1/2) x' P x + c' x
    subject to  constraint_l <= A x <= constraint_u
                lb <= x <= ub

Rows and bounds with equal lower/upper values are handled as equalities.
When the iteration does not converge, HiGHS (through ``scipy.optimize.linprog``)
certifies primal infeasibility or an unbounded descent ray.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Union

import numpy as np
from scipy import linalg, sparse
from scipy.optimize import linprog

from .exceptions import DimensionError, InvalidInputError
from .result import SolveResult, Status
from .utils.validation import INF_BOUND, validate_problem

logger = logging.getLogger(__name__)

_EQ_TOL = 1e-10
_BLOWUP = 1e12
_REGULARIZATION = 1e-10


def solve(
    c: np.ndarray,
    A: Optional[Union[np.ndarray, sparse.spmatrix]] = None,
    b: Optional[np.ndarray] = None,
    P: Optional[Union[np.ndarray, sparse.spmatrix]] = None,
    lb: Optional[np.ndarray] = None,
    ub: Optional[np.ndarray] = None,
    constraint_l: Optional[np.ndarray] = None,
    constraint_u: Optional[np.ndarray] = None,
    constraint_senses: Optional[List[str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> SolveResult:
    """
    Solve LP or QP.

    Args:
        c: Linear cost (n,)
        A: Constraint matrix (m, n), dense or sparse
        b: Right-hand side used with ``constraint_senses`` or as equality
        P: Quadratic cost (n, n), positive semi-definite; None for an LP
        lb: Variable lower bounds (default: 0)
        ub: Variable upper bounds (default: +inf)
        constraint_l: Row lower bounds
        constraint_u: Row upper bounds
        constraint_senses: Per-row '<=', '>=' or '==' relative to b
        params: 'max_iterations' ('max_iters'), 'tolerance' ('tol'), 'verbose'

    Returns:
        SolveResult with primal solution, row duals ``y`` and bound duals
        ``y_bounds``
    """
    start_time = time.perf_counter()
    params = params or {}
    max_iters = params.get('max_iterations', params.get('max_iters', 200))
    tol = params.get('tolerance', params.get('tol', 1e-9))
    verbose = params.get('verbose', False)

    c = np.asarray(c, dtype=np.float64).ravel()
    n = len(c)
    lb = np.zeros(n) if lb is None else np.asarray(lb, dtype=np.float64).ravel()
    ub = np.full(n, np.inf) if ub is None else np.asarray(ub, dtype=np.float64).ravel()

    if len(lb) != n or len(ub) != n:
        raise DimensionError(f"Bounds mismatch: lb={len(lb)}, ub={len(ub)}, n={n}")

    if A is not None:
        A = A.toarray() if sparse.issparse(A) else np.asarray(A, dtype=np.float64)
        if A.ndim == 1:
            A = A.reshape(1, -1)
        m = A.shape[0]
        if A.shape[1] != n:
            raise DimensionError(f"A columns {A.shape[1]} != n={n}")
    else:
        m = 0
        A = np.zeros((0, n))

    if constraint_senses is not None:
        if b is None:
            raise InvalidInputError("b required with constraint_senses")
        b = np.asarray(b, dtype=np.float64).ravel()
        constr_l = np.full(m, -np.inf)
        constr_u = np.full(m, np.inf)
        for i, sense in enumerate(constraint_senses):
            if sense in ('=', '=='):
                constr_l[i] = constr_u[i] = b[i]
            elif sense in ('<=', '<'):
                constr_u[i] = b[i]
            elif sense in ('>=', '>'):
                constr_l[i] = b[i]
            else:
                raise InvalidInputError(f"unknown constraint sense {sense!r}")
    elif constraint_l is not None or constraint_u is not None:
        constr_l = np.asarray(constraint_l, dtype=np.float64).ravel() if constraint_l is not None else np.full(m, -np.inf)
        constr_u = np.asarray(constraint_u, dtype=np.float64).ravel() if constraint_u is not None else np.full(m, np.inf)
    elif b is not None:
        b = np.asarray(b, dtype=np.float64).ravel()
        constr_l = constr_u = b
    else:
        constr_l = np.full(m, -np.inf)
        constr_u = np.full(m, np.inf)

    if len(constr_l) != m or len(constr_u) != m:
        raise DimensionError(
            f"A has {m} rows but constraint bounds have {len(constr_l)}/{len(constr_u)} entries"
        )

    if P is not None:
        P = P.toarray() if sparse.issparse(P) else np.asarray(P, dtype=np.float64)
        if P.shape != (n, n):
            raise DimensionError(f"P must be ({n},{n}), got {P.shape}")
    else:
        P = np.zeros((n, n))

    valid, message = validate_problem(c, A, constr_l, constr_u, lb, ub)
    if not valid:
        raise InvalidInputError(message)

    result = _solve_interior_point(c, A, P, lb, ub, constr_l, constr_u, max_iters, tol, verbose)
    result.solve_time = time.perf_counter() - start_time
    return result


def _max_step(v: np.ndarray, dv: np.ndarray) -> float:
    """Largest alpha in (0, 1] keeping v + alpha*dv >= 0."""
    neg = dv < 0
    if not neg.any():
        return 1.0
    return float(min(1.0, np.min(-v[neg] / dv[neg])))


def _norm_inf(v: np.ndarray) -> float:
    return float(np.max(np.abs(v))) if v.size else 0.0


def _solve_interior_point(c, A, P, lb, ub, constr_l, constr_u, max_iters, tol, verbose):
    n, m = len(c), A.shape[0]

    if np.any(lb > ub + _EQ_TOL) or np.any(constr_l > constr_u + _EQ_TOL):
        return SolveResult(status=Status.PRIMAL_INFEASIBLE, objective=float('nan'), x=np.zeros(n),
                           y=np.zeros(m), iterations=0, solve_time=0.0, y_bounds=np.zeros(n))

    # Split rows and bounds into equalities and one-sided inequalities
    row_lo = constr_l > -INF_BOUND
    row_up = constr_u < INF_BOUND
    row_eq = row_lo & row_up & (np.abs(constr_u - constr_l) < _EQ_TOL)
    var_lo = lb > -INF_BOUND
    var_up = ub < INF_BOUND
    var_eq = var_lo & var_up & (np.abs(ub - lb) < _EQ_TOL)
    row_up &= ~row_eq
    row_lo &= ~row_eq
    var_up &= ~var_eq
    var_lo &= ~var_eq

    eye = np.eye(n)
    A_e = np.vstack([A[row_eq], eye[var_eq]])
    b_e = np.concatenate([constr_l[row_eq], lb[var_eq]])
    G = np.vstack([A[row_up], -A[row_lo], eye[var_up], -eye[var_lo]])
    h = np.concatenate([constr_u[row_up], -constr_l[row_lo], ub[var_up], -lb[var_lo]])
    me, mi = len(b_e), len(h)

    x = np.zeros(n)
    y = np.zeros(me)
    s = np.maximum(h - G @ x, 1.0)
    z = np.ones(mi)

    scale_p = 1.0 + max(_norm_inf(b_e), _norm_inf(h))
    scale_d = 1.0 + _norm_inf(c)
    status = Status.MAX_ITERATIONS
    res_p = res_d = mu = float('inf')
    iters = 0

    for iters in range(1, max_iters + 1):
        r_d = P @ x + c + A_e.T @ y + G.T @ z
        r_e = A_e @ x - b_e
        r_i = G @ x + s - h
        mu = float(s @ z / mi) if mi else 0.0
        res_p = max(_norm_inf(r_e), _norm_inf(r_i))
        res_d = _norm_inf(r_d)

        if verbose:
            logger.info("QP iter %3d: primal %.3e dual %.3e mu %.3e", iters, res_p, res_d, mu)

        if res_p <= tol * scale_p and res_d <= tol * scale_d and mu <= tol:
            status = Status.OPTIMAL
            break
        if _norm_inf(x) > _BLOWUP or max(_norm_inf(y), _norm_inf(z)) > _BLOWUP:
            status = Status.NUMERICAL_ERROR
            break

        w = z / s
        K = np.block([
            [P + (G.T * w) @ G + _REGULARIZATION * eye, A_e.T],
            [A_e, -_REGULARIZATION * np.eye(me)],
        ])
        lu_piv = linalg.lu_factor(K, check_finite=False)

        def newton(r_sz):
            rhs = np.concatenate([-r_d + G.T @ ((r_sz - z * r_i) / s), -r_e])
            sol = linalg.lu_solve(lu_piv, rhs, check_finite=False)
            dx, dy = sol[:n], sol[n:]
            ds = -r_i - G @ dx
            dz = (-r_sz - z * ds) / s
            return dx, dy, ds, dz

        # Predictor (affine scaling) step
        dx, dy, ds, dz = newton(s * z)
        if mi:
            alpha_aff = min(_max_step(s, ds), _max_step(z, dz))
            mu_aff = float((s + alpha_aff * ds) @ (z + alpha_aff * dz) / mi)
            sigma = (mu_aff / mu) ** 3 if mu > 0 else 0.0
            # Corrector with centering
            dx, dy, ds, dz = newton(s * z + ds * dz - sigma * mu)
            alpha = min(1.0, 0.99 * min(_max_step(s, ds), _max_step(z, dz)))
        else:
            alpha = 1.0

        if not (np.all(np.isfinite(dx)) and np.all(np.isfinite(dy)) and np.all(np.isfinite(dz))):
            status = Status.NUMERICAL_ERROR
            break

        x = x + alpha * dx
        y = y + alpha * dy
        s = s + alpha * ds
        z = z + alpha * dz

    if status != Status.OPTIMAL:
        status = _classify_failure(P, c, A_e, b_e, G, h, status)
        logger.debug("QP did not converge after %d iterations: %s", iters, status)

    # Map multipliers back to rows and bounds: positive means upper side active
    n_row_eq = int(row_eq.sum())
    z_parts = np.split(z, np.cumsum([row_up.sum(), row_lo.sum(), var_up.sum()]))
    y_rows = np.zeros(m)
    y_rows[row_eq] = y[:n_row_eq]
    y_rows[row_up] += z_parts[0]
    y_rows[row_lo] -= z_parts[1]
    y_bounds = np.zeros(n)
    y_bounds[var_eq] = y[n_row_eq:]
    y_bounds[var_up] += z_parts[2]
    y_bounds[var_lo] -= z_parts[3]

    objective = float(0.5 * x @ P @ x + c @ x)
    return SolveResult(status=status, objective=objective, x=x, y=y_rows, iterations=iters,
                       solve_time=0.0, primal_residual=res_p, dual_residual=res_d,
                       gap=mu, y_bounds=y_bounds)


def _classify_failure(P, c, A_e, b_e, G, h, status):
    """Certify infeasibility or unboundedness with HiGHS."""
    n = len(c)
    free = [(None, None)] * n
    feasibility = linprog(np.zeros(n), A_ub=G if len(h) else None, b_ub=h if len(h) else None,
                          A_eq=A_e if len(b_e) else None, b_eq=b_e if len(b_e) else None,
                          bounds=free, method='highs')
    if feasibility.status == 2:
        return Status.PRIMAL_INFEASIBLE

    # Descent ray: P d = 0, A_e d = 0, G d <= 0, c'd < 0 within the unit box
    A_ray = np.vstack([P, A_e])
    ray = linprog(c, A_ub=G if len(h) else None, b_ub=np.zeros(len(h)) if len(h) else None,
                  A_eq=A_ray, b_eq=np.zeros(A_ray.shape[0]), bounds=[(-1.0, 1.0)] * n,
                  method='highs')
    if ray.status == 0 and ray.fun < -1e-9 * (1.0 + _norm_inf(c)):
        return Status.DUAL_INFEASIBLE

    return status


def solve_batch(problems: List[Dict[str, Any]], params: Optional[Dict[str, Any]] = None) -> List[SolveResult]:
    """Solve multiple problems in batch."""
    return [solve(c=p.get('c'), A=p.get('A'), b=p.get('b'), P=p.get('P'), lb=p.get('lb'), ub=p.get('ub'),
                  constraint_l=p.get('constraint_l'), constraint_u=p.get('constraint_u'),
                  constraint_senses=p.get('constraint_senses'), params=params) for p in problems]
