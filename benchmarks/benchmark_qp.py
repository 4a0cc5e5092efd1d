#!/usr/bin/env python3
"""
rtimpc QP Kernel Benchmark: dense interior point vs OSQP on QPs shaped
like SQP subproblems, and vs HiGHS on LPs.
"""

import time

import numpy as np
from scipy import sparse
from scipy.optimize import linprog

import rtimpc

print(f"rtimpc version: {rtimpc.__version__}")

try:
    import osqp
    HAS_OSQP = True
    print("OSQP available")
except ImportError:
    HAS_OSQP = False
    print("OSQP not available (pip install osqp)")

print()


def generate_qp(n, m, seed=42):
    """Random strictly convex QP with two-sided rows and boxes."""
    rng = np.random.default_rng(seed)

    M = rng.standard_normal((n, n))
    P = M @ M.T / n + 0.1 * np.eye(n)
    q = rng.standard_normal(n)
    A = rng.standard_normal((m, n))

    l = -np.ones(m) * 10
    u = np.ones(m) * 10
    lb = -np.ones(n) * 5
    ub = np.ones(n) * 5

    return P, q, A, l, u, lb, ub


def generate_lp(n, m, seed=42):
    """Random feasible, bounded LP in inequality form."""
    rng = np.random.default_rng(seed)

    A = rng.standard_normal((m, n))
    x_feas = np.abs(rng.standard_normal(n))
    b = A @ x_feas + 0.1
    c = rng.standard_normal(n)

    return c, A, b, np.zeros(n), np.full(n, 10.0)


def time_rtimpc_qp(P, q, A, l, u, lb, ub, tol=1e-8):
    start = time.perf_counter()
    result = rtimpc.solve(
        c=q, A=A, P=P, lb=lb, ub=ub,
        constraint_l=l, constraint_u=u,
        params={'tolerance': tol},
    )
    elapsed = time.perf_counter() - start
    return {
        'time': elapsed,
        'x': result.x,
        'objective': result.objective,
        'status': result.status.value,
        'iterations': result.iterations,
    }


def solve_osqp(P, q, A, l, u, lb, ub, tol=1e-8, max_iters=100000):
    """Solve the same QP with OSQP, variable bounds stacked under the rows."""
    n = len(q)
    start = time.perf_counter()

    prob = osqp.OSQP()
    prob.setup(P=sparse.triu(P, format='csc'), q=q,
               A=sparse.vstack([sparse.csc_matrix(A), sparse.eye(n)], format='csc'),
               l=np.concatenate([l, lb]), u=np.concatenate([u, ub]),
               verbose=False, eps_abs=tol, eps_rel=tol,
               max_iter=max_iters, polish=True)
    result = prob.solve()

    elapsed = time.perf_counter() - start

    # Status strings are stable across OSQP releases, the numeric codes are not
    status_map = {
        'solved': 'optimal',
        'solved inaccurate': 'optimal_inaccurate',
        'maximum iterations reached': 'max_iterations',
        'primal infeasible': 'primal_infeasible',
        'dual infeasible': 'dual_infeasible',
    }

    return {
        'time': elapsed,
        'x': result.x,
        'objective': 0.5 * result.x @ P @ result.x + q @ result.x,
        'status': status_map.get(result.info.status, result.info.status),
        'iterations': result.info.iter,
    }


def benchmark_qp_scaling():
    """QP kernel across sizes typical for horizon subproblems, checked against OSQP."""
    print("=" * 70)
    print("QP Scaling Benchmark")
    print("=" * 70)

    sizes = [(20, 10), (50, 30), (100, 60), (200, 120), (400, 250)]

    print(f"{'n':>6} {'m':>6} {'time (ms)':>10} {'iters':>6} {'status':>10} "
          f"{'OSQP (ms)':>10} {'|x diff|':>10} {'|obj diff|':>10}")
    print("-" * 78)
    for n, m in sizes:
        problem = generate_qp(n, m)
        res = time_rtimpc_qp(*problem)
        line = (f"{n:>6} {m:>6} {res['time']*1000:>10.2f} {res['iterations']:>6} "
                f"{res['status']:>10}")
        if HAS_OSQP:
            ref = solve_osqp(*problem)
            x_diff = np.abs(res['x'] - ref['x']).max()
            obj_diff = abs(res['objective'] - ref['objective'])
            line += f" {ref['time']*1000:>10.2f} {x_diff:>10.2e} {obj_diff:>10.2e}"
        print(line)


def benchmark_lp_vs_highs():
    """LP objective and time against scipy's HiGHS."""
    print("\n" + "=" * 70)
    print("LP Benchmark vs HiGHS")
    print("=" * 70)

    sizes = [(40, 20), (100, 50), (200, 100), (400, 200)]

    print(f"{'n':>8} {'m':>8} {'rtimpc (ms)':>12} {'HiGHS (ms)':>12} {'|obj diff|':>12}")
    print("-" * 70)
    for n, m in sizes:
        c, A, b, lb, ub = generate_lp(n, m)

        start = time.perf_counter()
        ours = rtimpc.solve(c=c, A=A, b=b, lb=lb, ub=ub, constraint_senses=['<'] * m)
        ours_time = time.perf_counter() - start

        start = time.perf_counter()
        ref = linprog(c, A_ub=A, b_ub=b, bounds=list(zip(lb, ub)), method='highs')
        highs_time = time.perf_counter() - start

        diff = abs(ours.objective - ref.fun)
        print(f"{n:>8} {m:>8} {ours_time*1000:>12.2f} {highs_time*1000:>12.2f} {diff:>12.2e}")


if __name__ == "__main__":
    benchmark_qp_scaling()
    benchmark_lp_vs_highs()
