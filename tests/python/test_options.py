"""
Tests for solver options.
"""

import dataclasses

import pytest

from rtimpc import (
    HessianApproximation,
    IntegratorType,
    InvalidInputError,
    SolverOptions,
    Transcription,
)


class TestSolverOptions:
    """Defaults, coercion and validation."""

    def test_defaults(self):
        options = SolverOptions()
        assert options.integrator is IntegratorType.RK4
        assert options.transcription is Transcription.MULTIPLE_SHOOTING
        assert options.hessian is None
        assert options.max_iterations_per_tick == 1
        assert options.line_search

    def test_string_values_are_coerced(self):
        options = SolverOptions(
            integrator="rk45",
            transcription="SINGLE_SHOOTING",
            hessian="bfgs",
        )
        assert options.integrator is IntegratorType.RK45
        assert options.transcription is Transcription.SINGLE_SHOOTING
        assert options.hessian is HessianApproximation.BFGS

    def test_unknown_enum_value(self):
        with pytest.raises(InvalidInputError, match="integrator"):
            SolverOptions(integrator="rk7")

    @pytest.mark.parametrize(
        "field, value",
        [
            ("tolerance", 0.0),
            ("tolerance", -1e-6),
            ("qp_tolerance", 0.0),
            ("control_period", 0.0),
            ("tick_time_budget", -1.0),
            ("hessian_regularization", -1.0),
            ("max_iterations", 0),
            ("integrator_steps", 1.5),
            ("max_iterations_per_tick", True),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(InvalidInputError):
            SolverOptions(**{field: value})

    def test_frozen(self):
        options = SolverOptions()
        with pytest.raises(dataclasses.FrozenInstanceError):
            options.tolerance = 1.0

    def test_with_updates(self):
        options = SolverOptions(max_iterations=10)
        updated = options.with_updates(max_iterations=20, hessian="gauss_newton")
        assert options.max_iterations == 10
        assert updated.max_iterations == 20
        assert updated.hessian is HessianApproximation.GAUSS_NEWTON

    def test_from_dict_aliases(self):
        options = SolverOptions.from_dict({"max_iters": 7, "tol": 1e-4})
        assert options.max_iterations == 7
        assert options.tolerance == 1e-4

    def test_from_dict_unknown_key(self):
        with pytest.raises(InvalidInputError, match="unknown options"):
            SolverOptions.from_dict({"warm_start": True})

    def test_error_message_prefix(self):
        with pytest.raises(InvalidInputError) as exc_info:
            SolverOptions(tolerance=0.0)
        assert str(exc_info.value).startswith("Invalid input: ")
