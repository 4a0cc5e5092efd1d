"""
Integration Tests for the MPC Module.

End-to-end tests covering:
1. The free final time rocket solved to convergence
2. Receding-horizon control of a nonlinear vehicle
3. Reference tracking with listeners attached
"""

import numpy as np
import pytest

from rtimpc import SolverOptions, Status


@pytest.mark.slow
@pytest.mark.integration
class TestRocket:
    """Minimum-time rocket with drag and fuel consumption."""

    @pytest.mark.parametrize("transcription", ["multiple_shooting", "single_shooting"])
    def test_minimum_time(self, rocket_ocp, rocket_guess, transcription):
        from rtimpc.mpc import SQPSolver

        ocp, model = rocket_ocp(n_intervals=20)
        options = SolverOptions(transcription=transcription, max_iterations=200)
        solution = SQPSolver(ocp, options).solve(**rocket_guess)

        assert solution.status == Status.OPTIMAL
        assert solution.constraint_violation <= 1e-4

        T = float(solution.get_value(model["T"]))
        assert 6.5 < T < 8.5
        np.testing.assert_allclose(solution.objective, T)

        s = solution.get_value(model["s"])
        v = solution.get_value(model["v"])
        u = solution.get_value(model["u"])
        np.testing.assert_allclose(s[[0, -1]], [0.0, 10.0], atol=1e-5)
        np.testing.assert_allclose(v[[0, -1]], [0.0, 0.0], atol=1e-5)
        assert np.all(v <= 1.7 + 1e-5)
        assert np.all(np.abs(u) <= 1.1 + 1e-6)
        np.testing.assert_allclose(solution.time[-1], T)

    @pytest.mark.parametrize("transcription", ["multiple_shooting", "single_shooting"])
    def test_minimum_time_without_guess(self, rocket_ocp, transcription):
        """The default start puts T inside its bounds, so the first QP is feasible."""
        from rtimpc.mpc import SQPSolver

        ocp, model = rocket_ocp(n_intervals=20)
        options = SolverOptions(transcription=transcription, max_iterations=200)
        solution = SQPSolver(ocp, options).solve()

        assert solution.status == Status.OPTIMAL
        assert solution.constraint_violation <= 1e-4

        T = float(solution.get_value(model["T"]))
        assert 5.0 <= T <= 15.0
        s = solution.get_value(model["s"])
        np.testing.assert_allclose(s[[0, -1]], [0.0, 10.0], atol=1e-5)

    def test_mass_decreases(self, rocket_ocp, rocket_guess):
        from rtimpc.mpc import SQPSolver

        ocp, model = rocket_ocp(n_intervals=20)
        solution = SQPSolver(ocp, SolverOptions(max_iterations=200)).solve(**rocket_guess)

        m = solution.get_value(model["m"])
        assert m[0] == pytest.approx(1.0)
        assert np.all(np.diff(m) <= 1e-6)


@pytest.mark.integration
class TestTankDrive:
    """Real-time iterations on the differential-drive vehicle."""

    def _driver(self, **options):
        from rtimpc import between
        from rtimpc.mpc import OCP, RealTimeDriver, tank_drive

        system = tank_drive()
        x, y, theta, v_left, v_right = system.states
        u_left, u_right = system.controls

        ocp = OCP(0.0, 10.0, 20)
        ocp.subject_to(system.equation)
        ocp.subject_to(between(-1.0, u_left, 1.0))
        ocp.subject_to(between(-1.0, u_right, 1.0))
        ocp.minimize_lsq(
            [x, y, theta, v_left, v_right, u_left, u_right],
            weight=[10.0, 10.0, 1.0, 0.1, 0.1, 0.1, 0.1],
            reference=[1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
        )
        ocp.minimize_lsq_end_term(
            [x, y, theta, v_left, v_right],
            weight=[10.0, 10.0, 1.0, 0.1, 0.1],
            reference=[1.0, 0.0, 0.0, 0.0, 0.0],
        )

        options.setdefault("control_period", 0.5)
        options.setdefault("hessian", "gauss_newton")
        return RealTimeDriver(ocp, SolverOptions(**options))

    def test_drives_to_target(self):
        driver = self._driver()
        result = driver.simulate(np.array([0.0, 0.0, 0.1, 0.0, 0.0]), n_steps=30)

        assert not result["failed"].any()
        start_error = np.linalg.norm(result["x"][0, :2] - [1.0, 0.0])
        final_error = np.linalg.norm(result["x"][-1, :2] - [1.0, 0.0])
        assert final_error < 0.5 * start_error
        assert result["objective"][-1] < result["objective"][0]
        assert np.all(np.abs(result["u"]) <= 1.0 + 1e-6)

    def test_objective_non_increasing(self):
        """Once in the basin the tick objective never goes up over 20 ticks."""
        driver = self._driver()
        result = driver.simulate(np.array([0.0, 0.0, 0.1, 0.0, 0.0]), n_steps=20)

        assert not result["failed"].any()
        objective = result["objective"][2:]
        assert np.all(np.isfinite(objective))
        assert np.all(np.diff(objective) <= 1e-8 * (1.0 + np.abs(objective[:-1])))
        assert objective[-1] < 1e-1 * objective[0]

    def test_multiple_iterations_per_tick(self):
        one = self._driver()
        several = self._driver(max_iterations_per_tick=5)
        x0 = [0.0, 0.0, 0.1, 0.0, 0.0]

        first = one.tick(0.0, x0)
        better = several.tick(0.0, x0)

        assert first.iterations == 1
        assert better.iterations > 1 or better.status == Status.OPTIMAL
        assert not better.failed

    def test_listener_sees_every_tick(self):
        from rtimpc.mpc import SolutionRecorder

        driver = self._driver()
        recorder = SolutionRecorder(maxlen=3)
        driver.solver.add_listener(recorder)

        driver.simulate(np.array([0.0, 0.0, 0.1, 0.0, 0.0]), n_steps=5)

        assert len(recorder) == 3
        np.testing.assert_allclose(recorder.latest.time[0], 2.0)
        assert recorder.objectives.shape == (3,)

    def test_tracks_moving_reference(self):
        from rtimpc.mpc import Trajectory, ramp_reference

        driver = self._driver()
        states = ramp_reference([0.0, 0.0, 0.0, 0.0, 0.0], [2.0, 0.0, 0.0, 0.0, 0.0], 60, 40).states

        reference = Trajectory(states=states, inputs=np.zeros((60, 2)))
        result = driver.simulate(np.zeros(5), n_steps=20, reference=reference)

        assert not result["failed"].any()
        assert result["x"][-1, 0] > 0.3
