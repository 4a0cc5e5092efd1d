"""
Tests for dynamics models and Runge-Kutta integrators.
"""

import numpy as np
import pytest


def _time_varying_model():
    """x1' = sin(t) x1 + p u, x2' = x1 x2 / (1 + t) - p."""
    from rtimpc import (
        Control,
        DifferentialEquation,
        DifferentialState,
        Parameter,
        TimeVariable,
        VariableLayout,
        dot,
        sin,
    )
    from rtimpc.mpc import DynamicsModel

    x1, x2 = DifferentialState("x1"), DifferentialState("x2")
    u = Control("u")
    p = Parameter("p")
    t = TimeVariable()

    f = DifferentialEquation()
    f.add(dot(x1) == sin(t) * x1 + p * u)
    f.add(dot(x2) == x1 * x2 / (1 + t) - p)

    return DynamicsModel(f, VariableLayout([x1, x2], [u], [p]))


class TestDynamicsModel:
    """Tests for compiled dynamics."""

    def test_tank_drive_rhs(self):
        """Straight driving along the heading."""
        from rtimpc import VariableLayout
        from rtimpc.mpc import DynamicsModel, tank_drive

        system = tank_drive(track_width=0.5, motor_time_constant=0.5)
        model = DynamicsModel(system.equation, VariableLayout(system.states, system.controls, []))

        assert model.n_states == 5
        assert model.n_inputs == 2
        assert model.n_parameters == 0

        x = np.array([0.0, 0.0, 0.0, 1.0, 1.0])
        xdot = model.rhs(x, np.array([1.0, 1.0]), np.zeros(0), 0.0)
        np.testing.assert_allclose(xdot, [1.0, 0.0, 0.0, 0.0, 0.0], atol=1e-12)

        # Turning on the spot
        x = np.array([0.0, 0.0, 0.0, -0.5, 0.5])
        xdot = model.rhs(x, np.zeros(2), np.zeros(0), 0.0)
        np.testing.assert_allclose(xdot, [0.0, 0.0, 2.0, 1.0, -1.0], atol=1e-12)

    def test_rocket_model(self):
        """Rocket states, control and free horizon parameter."""
        from rtimpc import Parameter
        from rtimpc.mpc import rocket

        system = rocket()
        assert [s.name for s in system.states] == ["s", "v", "m"]
        assert system["u"] is system.controls[0]
        assert isinstance(system.equation.tf, Parameter)
        assert system.equation.tf is system["T"]
        assert set(system.variables) == {"s", "v", "m", "u", "T"}

        with pytest.raises(KeyError):
            system["missing"]

    def test_linear_system_matches_matrix(self):
        """Expression dynamics reproduce Ac x + Bc u."""
        from rtimpc import VariableLayout
        from rtimpc.mpc import DynamicsModel, linear_system

        Ac = np.array([[0.0, 1.0], [-2.0, -0.5]])
        Bc = np.array([[0.0], [1.0]])
        system = linear_system(Ac, Bc)
        model = DynamicsModel(system.equation, VariableLayout(system.states, system.controls, []))

        x = np.array([0.3, -1.2])
        u = np.array([0.7])
        np.testing.assert_allclose(model.rhs(x, u, np.zeros(0), 0.0), Ac @ x + Bc @ u)

        _, fx, fu, _, _ = model.jacobians(x, u, np.zeros(0), 0.0)
        np.testing.assert_allclose(fx, Ac)
        np.testing.assert_allclose(fu, Bc)

    def test_linear_system_dimension_check(self):
        from rtimpc import DimensionError
        from rtimpc.mpc import linear_system

        with pytest.raises(DimensionError):
            linear_system(np.eye(2), np.ones((3, 1)))
        with pytest.raises(DimensionError):
            linear_system(np.ones((2, 3)), np.ones((2, 1)))

    def test_simulate_exponential_decay(self):
        """x' = -x simulated over held (empty) controls."""
        from rtimpc import DifferentialEquation, DifferentialState, VariableLayout, dot
        from rtimpc.mpc import DynamicsModel

        x = DifferentialState("x")
        f = DifferentialEquation()
        f.add(dot(x) == -x)
        model = DynamicsModel(f, VariableLayout([x], [], []))

        trajectory = model.simulate(np.array([1.0]), np.zeros((10, 0)), dt=0.1)

        assert trajectory.shape == (11, 1)
        np.testing.assert_allclose(trajectory[:, 0], np.exp(-0.1 * np.arange(11)), rtol=1e-8)


class TestIntegrators:
    """Tests for the fixed-step Runge-Kutta integrators."""

    @pytest.mark.parametrize(
        "method, order",
        [("euler", 1), ("rk2", 2), ("rk3", 3), ("rk4", 4), ("rk45", 4)],
    )
    def test_convergence_order(self, method, order):
        """Halving the step reduces the error by about 2^order."""
        from rtimpc import DifferentialEquation, DifferentialState, IntegratorType, VariableLayout, dot
        from rtimpc.mpc import DynamicsModel, Integrator

        x = DifferentialState("x")
        f = DifferentialEquation()
        f.add(dot(x) == -x)
        model = DynamicsModel(f, VariableLayout([x], [], []))

        errors = []
        for steps in (8, 16):
            integrator = Integrator(model, IntegratorType(method), steps=steps)
            result = integrator.integrate(np.array([1.0]), np.zeros(0), np.zeros(0), 0.0, 1.0)
            errors.append(abs(result.x[0] - np.exp(-1.0)))

        ratio = errors[0] / errors[1]
        assert 0.7 * 2 ** order < ratio < 1.4 * 2 ** order

    @pytest.mark.parametrize("method", ["euler", "rk2", "rk3", "rk4", "rk45"])
    def test_tableau_consistency(self, method):
        """Weights sum to one and nodes are the row sums of A."""
        from rtimpc.mpc import butcher_tableau

        A, b, c = butcher_tableau(method)
        assert abs(b.sum() - 1.0) < 1e-12
        np.testing.assert_allclose(A.sum(axis=1), c, atol=1e-12)
        # Explicit: strictly lower triangular
        assert np.all(np.triu(A) == 0.0)

    @pytest.mark.parametrize("method", ["euler", "rk4", "rk45"])
    def test_sensitivities_match_finite_differences(self, method):
        """Forward sensitivities are the derivatives of the discrete map."""
        from rtimpc import IntegratorType
        from rtimpc.mpc import Integrator

        model = _time_varying_model()
        integrator = Integrator(model, IntegratorType(method), steps=3)

        x0 = np.array([0.4, -0.8])
        u = np.array([0.3])
        p = np.array([1.5])
        t_start, dt = 0.2, 0.5
        result = integrator.integrate(x0, u, p, t_start, dt)

        def end_state(x0=x0, u=u, p=p, t_start=t_start, dt=dt):
            return integrator.integrate(x0, u, p, t_start, dt, sensitivities=False).x

        eps = 1e-6
        fd_x0 = np.column_stack([
            (end_state(x0=x0 + eps * e) - end_state(x0=x0 - eps * e)) / (2 * eps)
            for e in np.eye(2)
        ])
        fd_u = (end_state(u=u + eps) - end_state(u=u - eps)) / (2 * eps)
        fd_p = (end_state(p=p + eps) - end_state(p=p - eps)) / (2 * eps)
        fd_dt = (end_state(dt=dt + eps) - end_state(dt=dt - eps)) / (2 * eps)
        fd_t0 = (end_state(t_start=t_start + eps) - end_state(t_start=t_start - eps)) / (2 * eps)

        np.testing.assert_allclose(result.dx_dx0, fd_x0, atol=1e-7)
        np.testing.assert_allclose(result.dx_du[:, 0], fd_u, atol=1e-7)
        np.testing.assert_allclose(result.dx_dp[:, 0], fd_p, atol=1e-7)
        np.testing.assert_allclose(result.dx_ddt, fd_dt, atol=1e-7)
        np.testing.assert_allclose(result.dx_dt0, fd_t0, atol=1e-7)

    def test_without_sensitivities(self):
        from rtimpc.mpc import Integrator

        integrator = Integrator(_time_varying_model())
        result = integrator.integrate(np.zeros(2), np.zeros(1), np.ones(1), 0.0, 0.1, sensitivities=False)
        assert result.dx_dx0 is None
        assert result.x.shape == (2,)

    def test_wrong_sizes(self):
        from rtimpc import DimensionError
        from rtimpc.mpc import Integrator

        integrator = Integrator(_time_varying_model())
        with pytest.raises(DimensionError):
            integrator.integrate(np.zeros(3), np.zeros(1), np.ones(1), 0.0, 0.1)

    def test_divergence_raises_numerical_error(self):
        """Finite-time blow-up of x' = x^2 is detected."""
        from rtimpc import (
            DifferentialEquation,
            DifferentialState,
            IntegratorType,
            NumericalError,
            VariableLayout,
            dot,
        )
        from rtimpc.mpc import DynamicsModel, Integrator

        x = DifferentialState("x")
        f = DifferentialEquation()
        f.add(dot(x) == x * x)
        model = DynamicsModel(f, VariableLayout([x], [], []))
        integrator = Integrator(model, IntegratorType.EULER, steps=20)

        with pytest.raises(NumericalError):
            integrator.integrate(np.array([10.0]), np.zeros(0), np.zeros(0), 0.0, 1.0)

    def test_simulate_reshapes_flat_controls(self):
        from rtimpc.mpc import Integrator

        integrator = Integrator(_time_varying_model())
        trajectory = integrator.simulate(np.zeros(2), np.zeros(5), np.ones(1), 0.0, 0.1)
        assert trajectory.shape == (6, 2)
