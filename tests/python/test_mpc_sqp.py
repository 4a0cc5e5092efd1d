"""
Tests for the SQP solver.
"""

import logging
import time

import numpy as np
import pytest

from rtimpc import SolverOptions, Status


def _constant_state_ocp(n_intervals=5):
    """
    x' = 0, x(0) = 1, minimize 1/2 sum (x_k^2 + (u_k - 2)^2).

    The guess already satisfies the dynamics; one Gauss-Newton step
    reaches the optimum u = 2 with objective N / 2.
    """
    from rtimpc import Control, DifferentialEquation, DifferentialState, dot
    from rtimpc.mpc import AT_START, OCP

    x = DifferentialState("x")
    u = Control("u")
    f = DifferentialEquation()
    f.add(dot(x) == 0.0)

    ocp = OCP(0.0, 1.0, n_intervals)
    ocp.subject_to(f)
    ocp.subject_to(AT_START, x == 1.0)
    ocp.minimize_lsq([x, u], weight=[1.0, 1.0], reference=[0.0, 2.0])
    return ocp, x, u


class TestSQPBasics:
    """Convergence on small problems."""

    def test_one_iteration_on_quadratic_problem(self):
        from rtimpc.mpc import SQPPhase, SQPSolver

        ocp, x, u = _constant_state_ocp(n_intervals=5)
        solver = SQPSolver(ocp)
        solution = solver.solve()

        assert solution.status == Status.OPTIMAL
        assert solution.iterations == 1
        np.testing.assert_allclose(solution.objective, 2.5, atol=1e-6)
        np.testing.assert_allclose(solution.get_value(u), 2.0, atol=1e-6)
        np.testing.assert_allclose(solution.get_value(x), 1.0, atol=1e-7)
        assert solution.kkt_residual <= 1e-6
        assert solver.state.phase is SQPPhase.CONVERGED

    def test_warm_start_needs_no_iterations(self):
        from rtimpc.mpc import SQPSolver

        ocp, _, _ = _constant_state_ocp()
        solver = SQPSolver(ocp)
        first = solver.solve()
        again = solver.solve(state=solver.state)

        assert again.status == Status.OPTIMAL
        assert again.iterations == 0
        np.testing.assert_allclose(again.objective, first.objective)

    def test_default_hessian_choice(self, double_integrator_ocp, rocket_ocp):
        from rtimpc import HessianApproximation
        from rtimpc.mpc import SQPSolver

        lsq, _ = double_integrator_ocp()
        mayer, _ = rocket_ocp(n_intervals=5)
        assert SQPSolver(lsq).hessian_approximation is HessianApproximation.GAUSS_NEWTON
        assert SQPSolver(mayer).hessian_approximation is HessianApproximation.BFGS

    def test_gauss_newton_requires_lsq(self, rocket_ocp):
        from rtimpc import InvalidInputError
        from rtimpc.mpc import SQPSolver

        ocp, _ = rocket_ocp(n_intervals=5)
        with pytest.raises(InvalidInputError):
            SQPSolver(ocp, SolverOptions(hessian="gauss_newton"))

    @pytest.mark.parametrize("transcription", ["multiple_shooting", "single_shooting"])
    def test_bfgs_on_mayer_problem(self, transcription):
        """maximize x(2) with x' = u, |u| <= 1, x(0) = 1: x(2) = 3."""
        from rtimpc import Control, DifferentialEquation, DifferentialState, between, dot
        from rtimpc.mpc import AT_START, OCP, SQPSolver

        x = DifferentialState("x")
        u = Control("u")
        f = DifferentialEquation()
        f.add(dot(x) == u)

        ocp = OCP(0.0, 2.0, 8)
        ocp.subject_to(f)
        ocp.subject_to(AT_START, x == 1.0)
        ocp.subject_to(between(-1.0, u, 1.0))
        ocp.maximize_mayer_term(x)

        solution = SQPSolver(ocp, SolverOptions(transcription=transcription)).solve()

        assert solution.status == Status.OPTIMAL
        np.testing.assert_allclose(solution.objective, -3.0, atol=1e-6)
        np.testing.assert_allclose(solution.get_value(u), 1.0, atol=1e-5)

    def test_single_and_multiple_shooting_agree(self, double_integrator_ocp):
        from rtimpc.mpc import SQPSolver

        ocp, _ = double_integrator_ocp(n_intervals=10)
        ms = SQPSolver(ocp, SolverOptions(transcription="multiple_shooting")).solve()
        ss = SQPSolver(ocp, SolverOptions(transcription="single_shooting")).solve()

        assert ms.status == Status.OPTIMAL
        assert ss.status == Status.OPTIMAL
        np.testing.assert_allclose(ms.controls, ss.controls, atol=1e-5)
        np.testing.assert_allclose(ms.states, ss.states, atol=1e-5)
        np.testing.assert_allclose(ms.objective, ss.objective, rtol=1e-6)

    def test_solution_fields(self, double_integrator_ocp):
        from rtimpc import Control
        from rtimpc.mpc import SQPSolver

        ocp, variables = double_integrator_ocp(n_intervals=10)
        solution = SQPSolver(ocp).solve()

        assert solution.states.shape == (11, 2)
        assert solution.controls.shape == (10, 1)
        assert solution.parameters.shape == (0,)
        np.testing.assert_allclose(solution.time, np.linspace(0.0, 2.0, 11))
        np.testing.assert_allclose(solution.optimal_control, solution.controls[0])
        assert solution.state_names == ["x", "v"]
        assert solution.constraint_violation < 1e-6
        np.testing.assert_allclose(solution.constraint_residuals, 0.0, atol=1e-6)
        assert "SQP Summary" in solution.summary()
        with pytest.raises(KeyError):
            solution.get_value(Control("unrelated"))


class TestSQPFailures:
    """Failure statuses and their exceptions."""

    def test_infeasible_subproblem(self, double_integrator_ocp):
        from rtimpc import InfeasibleError
        from rtimpc.mpc import SQPPhase, SQPSolver

        ocp, v = double_integrator_ocp(n_intervals=5)
        ocp.subject_to(v["x"] + v["v"] <= -5.0)
        solver = SQPSolver(ocp)
        solution = solver.solve()

        assert solution.status == Status.PRIMAL_INFEASIBLE
        assert solver.state.phase is SQPPhase.FAILED
        with pytest.raises(InfeasibleError):
            solution.raise_for_status()

    def test_diverging_integration(self):
        from rtimpc import (
            Control,
            DifferentialEquation,
            DifferentialState,
            NumericalError,
            dot,
        )
        from rtimpc.mpc import AT_START, OCP, SQPSolver

        x = DifferentialState("x")
        u = Control("u")
        f = DifferentialEquation()
        f.add(dot(x) == x * x + u)

        ocp = OCP(0.0, 1.0, 10)
        ocp.subject_to(f)
        ocp.subject_to(AT_START, x == 10.0)
        ocp.minimize_lsq([u])

        options = SolverOptions(transcription="single_shooting", integrator="euler", integrator_steps=2)
        solution = SQPSolver(ocp, options).solve()

        assert solution.status == Status.NUMERICAL_ERROR
        assert solution.iterations == 0
        with pytest.raises(NumericalError):
            solution.raise_for_status()

    def test_iteration_budget(self, rocket_ocp, rocket_guess):
        from rtimpc import ConvergenceTimeoutError
        from rtimpc.mpc import SQPSolver

        ocp, _ = rocket_ocp(n_intervals=20)
        solver = SQPSolver(ocp, SolverOptions(max_iterations=2))
        solution = solver.solve(**rocket_guess)

        assert solution.status == Status.MAX_ITERATIONS
        assert solution.status.has_solution
        assert solution.iterations == 2
        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            solution.raise_for_status()
        assert exc_info.value.iterations == 2

    def test_deadline(self, double_integrator_ocp):
        from rtimpc.mpc import SQPSolver

        ocp, _ = double_integrator_ocp()
        solution = SQPSolver(ocp).solve(deadline=time.perf_counter() - 1.0)

        assert solution.status == Status.TIME_LIMIT
        assert solution.iterations == 0


class TestListeners:
    """Published solutions."""

    def test_listener_receives_solution(self):
        from rtimpc.mpc import SolutionRecorder, SQPSolver

        ocp, _, _ = _constant_state_ocp()
        solver = SQPSolver(ocp)
        recorder = SolutionRecorder()
        solver.add_listener(recorder)

        solution = solver.solve()

        assert len(recorder) == 1
        assert recorder.latest is solution

        solver.remove_listener(recorder)
        solver.solve()
        assert len(recorder) == 1

    def test_failing_listener_is_isolated(self, caplog):
        from rtimpc.mpc import SolutionRecorder, SQPSolver

        def broken(solution):
            raise RuntimeError("display closed")

        ocp, _, _ = _constant_state_ocp()
        solver = SQPSolver(ocp)
        recorder = SolutionRecorder()
        solver.add_listener(broken)
        solver.add_listener(recorder)

        with caplog.at_level(logging.WARNING, logger="rtimpc"):
            solution = solver.solve()

        assert solution.status == Status.OPTIMAL
        assert len(recorder) == 1
        assert any("listener" in record.getMessage() for record in caplog.records)


class TestSolverState:
    """Iterate bookkeeping."""

    def test_copy_is_independent(self):
        from rtimpc.mpc import SQPSolver

        ocp, _, _ = _constant_state_ocp()
        solver = SQPSolver(ocp)
        state = solver.initialize()
        snapshot = state.copy()
        state.z[:] = 42.0
        state.iteration = 3

        assert not np.any(snapshot.z == 42.0)
        assert snapshot.iteration == 0

    def test_version_counts_updates(self):
        from rtimpc.mpc import SQPSolver

        ocp, _, _ = _constant_state_ocp()
        solver = SQPSolver(ocp)
        solver.solve()
        assert solver.state.version == 1
        assert solver.state.iteration == 1
