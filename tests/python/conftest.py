"""
pytest configuration and fixtures for rtimpc tests.
"""

import pytest
import numpy as np


# ============================================================================
# QP kernel fixtures
# ============================================================================

@pytest.fixture
def simple_lp():
    """
    Simple LP problem for testing.

    minimize: -x - y
    subject to: x + 2y <= 10
                3x + y <= 15
                x, y >= 0

    Optimal: x=4, y=3, obj=-7
    """
    c = np.array([-1.0, -1.0])
    A = np.array([
        [1.0, 2.0],
        [3.0, 1.0],
    ])
    b = np.array([10.0, 15.0])
    lb = np.array([0.0, 0.0])
    ub = np.array([np.inf, np.inf])

    return {
        "c": c,
        "A": A,
        "b": b,
        "lb": lb,
        "ub": ub,
        "expected_obj": -7.0,
        "expected_x": np.array([4.0, 3.0]),
    }


@pytest.fixture
def random_lp():
    """Generate a random feasible, bounded LP."""
    np.random.seed(42)
    n, m = 40, 20

    A = np.random.randn(m, n)
    x_feas = np.abs(np.random.randn(n))
    b = A @ x_feas + 0.1
    c = np.random.randn(n)
    lb = np.zeros(n)
    ub = np.full(n, 10.0)

    return {
        "c": c,
        "A": A,
        "b": b,
        "lb": lb,
        "ub": ub,
    }


@pytest.fixture
def simple_qp():
    """
    Simple QP problem for testing.

    minimize: (1/2)(2x^2 + 2y^2) - 2x - 4y = x^2 + y^2 - 2x - 4y
    subject to: x + y <= 2
                x, y >= 0

    Unconstrained optimum (1, 2) violates x + y <= 2; optimum is (0.5, 1.5),
    obj = -4.5, with row multiplier 1.
    """
    P = np.array([
        [2.0, 0.0],
        [0.0, 2.0],
    ])
    q = np.array([-2.0, -4.0])
    A = np.array([[1.0, 1.0]])
    b = np.array([2.0])
    lb = np.array([0.0, 0.0])
    ub = np.array([np.inf, np.inf])

    return {
        "P": P,
        "c": q,
        "A": A,
        "b": b,
        "lb": lb,
        "ub": ub,
        "expected_obj": -4.5,
        "expected_x": np.array([0.5, 1.5]),
    }


# ============================================================================
# Optimal control fixtures
# ============================================================================

@pytest.fixture
def double_integrator_ocp():
    """
    Factory for a linear-quadratic double integrator OCP.

    x' = v, v' = u on [0, 2], x(0) = 1, v(0) = 0, |u| <= 2,
    tracking the origin with a least-squares objective.
    """
    from rtimpc import Control, DifferentialEquation, DifferentialState, between, dot
    from rtimpc.mpc import AT_START, OCP

    def build(n_intervals=10, x0=1.0):
        x = DifferentialState("x")
        v = DifferentialState("v")
        u = Control("u")

        f = DifferentialEquation()
        f.add(dot(x) == v)
        f.add(dot(v) == u)

        ocp = OCP(0.0, 2.0, n_intervals)
        ocp.subject_to(f)
        ocp.subject_to(AT_START, x == x0)
        ocp.subject_to(AT_START, v == 0.0)
        ocp.subject_to(between(-2.0, u, 2.0))
        ocp.minimize_lsq([x, v, u], weight=[10.0, 1.0, 0.1])
        ocp.minimize_lsq_end_term([x, v], weight=[10.0, 1.0])
        return ocp, {"x": x, "v": v, "u": u}

    return build


@pytest.fixture
def rocket_ocp():
    """
    Free final time rocket: reach s = 10 at rest in minimum time T.
    """
    from rtimpc import between
    from rtimpc.mpc import AT_END, AT_START, OCP, rocket

    def build(n_intervals=20):
        model = rocket()
        s, v, m = model.states
        u = model["u"]
        T = model["T"]

        ocp = OCP(0.0, T, n_intervals)
        ocp.minimize_mayer_term(T)
        ocp.subject_to(model.equation)
        ocp.subject_to(AT_START, s == 0.0)
        ocp.subject_to(AT_START, v == 0.0)
        ocp.subject_to(AT_START, m == 1.0)
        ocp.subject_to(AT_END, s == 10.0)
        ocp.subject_to(AT_END, v == 0.0)
        ocp.subject_to(between(-0.1, v, 1.7))
        ocp.subject_to(between(-1.1, u, 1.1))
        ocp.subject_to(between(5.0, T, 15.0))
        return ocp, model

    return build


@pytest.fixture
def rocket_guess():
    """Reasonable initial guess for the rocket with 20 intervals."""
    n = 20
    x = np.zeros((n + 1, 3))
    x[:, 0] = np.linspace(0.0, 10.0, n + 1)
    x[:, 1] = 1.0
    x[:, 2] = 1.0
    return {"x": x, "u": np.zeros((n, 1)), "p": np.array([10.0])}


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "benchmark: marks benchmark tests")
    config.addinivalue_line("markers", "integration: marks integration tests")
