"""
Tests for OCP construction and validation.
"""

import numpy as np
import pytest

from rtimpc import (
    ConstructionError,
    Control,
    DifferentialEquation,
    DifferentialState,
    DimensionError,
    Parameter,
    between,
    dot,
)
from rtimpc.mpc import AT_END, AT_START, OCP, ConstraintKind, ObjectiveKind


def _integrator_dynamics():
    x = DifferentialState("x")
    u = Control("u")
    f = DifferentialEquation()
    f.add(dot(x) == u)
    return f, x, u


class TestOCPConstruction:
    """Building problems."""

    def test_subject_to_forms(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5)
        ocp.subject_to(f).subject_to(between(-1, u, 1))
        ocp.subject_to(AT_START, x == 0.0)
        ocp.subject_to(AT_END, x == 1.0)
        ocp.subject_to("at_end", u == 0.0)

        kinds = [c.kind for c in ocp.constraints]
        assert kinds == [
            ConstraintKind.PATH,
            ConstraintKind.AT_START,
            ConstraintKind.AT_END,
            ConstraintKind.AT_END,
        ]
        assert ocp.dynamics is f
        assert list(ocp.constraints[1].nodes(5)) == [0]
        assert list(ocp.constraints[2].nodes(5)) == [5]
        assert list(ocp.constraints[0].nodes(5)) == list(range(6))

    def test_bad_subject_to(self):
        ocp = OCP(0.0, 1.0, 5)
        with pytest.raises(ConstructionError):
            ocp.subject_to("x <= 1")
        with pytest.raises(ConstructionError):
            ocp.subject_to("somewhere", Control("u") <= 1.0)

    def test_second_dynamics_rejected(self):
        f, _, _ = _integrator_dynamics()
        g, _, _ = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        with pytest.raises(ConstructionError):
            ocp.subject_to(g)

    def test_dynamics_horizon_must_match(self):
        x = DifferentialState("x")
        f = DifferentialEquation(0.0, 2.0)
        f.add(dot(x) == -x)
        with pytest.raises(ConstructionError):
            OCP(0.0, 1.0, 5).subject_to(f)

    def test_free_final_time(self):
        T = Parameter("T")
        ocp = OCP(0.0, T, 10)
        assert ocp.free_final_time
        assert not OCP(0.0, 3.0, 10).free_final_time

    @pytest.mark.parametrize("n_intervals", [0, -3, 2.5, True])
    def test_invalid_mesh(self, n_intervals):
        with pytest.raises(ConstructionError):
            OCP(0.0, 1.0, n_intervals)

    def test_invalid_horizon(self):
        with pytest.raises(ConstructionError):
            OCP(1.0, 1.0, 10)


class TestObjectives:
    """Objective formulations."""

    def test_mayer_terms_accumulate(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        ocp.minimize_mayer_term(x)
        ocp.maximize_mayer_term(2 * x)
        assert ocp.objective_kind is ObjectiveKind.MAYER
        assert ocp.mayer.evaluate({x: 3.0}) == -3.0

    def test_formulations_cannot_mix(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        ocp.minimize_lsq([x, u])
        with pytest.raises(ConstructionError):
            ocp.minimize_mayer_term(x)

    def test_lsq_weight_forms(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        ocp.minimize_lsq([x, u], weight=[2.0, 3.0], reference=[1.0, 0.0])
        np.testing.assert_allclose(ocp.lsq.weight, np.diag([2.0, 3.0]))
        np.testing.assert_allclose(ocp.lsq.reference, [1.0, 0.0])

        ocp.minimize_lsq_end_term(x, weight=5.0)
        np.testing.assert_allclose(ocp.lsq_end.weight, [[5.0]])

    def test_lsq_weight_dimension(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        with pytest.raises(DimensionError):
            ocp.minimize_lsq([x, u], weight=[1.0, 2.0, 3.0])

    def test_lsq_weight_must_be_psd(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        with pytest.raises(ConstructionError):
            ocp.minimize_lsq([x, u], weight=[[1.0, 0.0], [0.0, -1.0]])
        with pytest.raises(ConstructionError):
            ocp.minimize_lsq([x, u], weight=[[1.0, 0.5], [0.0, 1.0]])

    def test_per_node_reference_rows(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        with pytest.raises(DimensionError):
            ocp.minimize_lsq([x], reference=np.zeros((4, 1)))

    def test_running_term_only_once(self):
        f, x, u = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        ocp.minimize_lsq([x])
        with pytest.raises(ConstructionError):
            ocp.minimize_lsq([u])


class TestValidation:
    """Problem invariants checked before numerics run."""

    def test_missing_dynamics(self):
        ocp = OCP(0.0, 1.0, 5)
        ocp.minimize_mayer_term(Parameter("p"))
        with pytest.raises(ConstructionError, match="differential equation"):
            ocp.validate()

    def test_missing_objective(self):
        f, _, _ = _integrator_dynamics()
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        with pytest.raises(ConstructionError, match="objective"):
            ocp.validate()

    def test_state_without_equation(self):
        f, x, u = _integrator_dynamics()
        orphan = DifferentialState("orphan")
        ocp = OCP(0.0, 1.0, 5).subject_to(f)
        ocp.subject_to(orphan <= 1.0)
        ocp.minimize_lsq([x])
        with pytest.raises(ConstructionError, match="orphan"):
            ocp.validate()

    def test_layout_order(self):
        """States in dynamics order, controls and parameters by creation."""
        b = DifferentialState("b")
        a = DifferentialState("a")
        u2 = Control("u2")
        u1 = Control("u1")
        p = Parameter("p")
        T = Parameter("T")

        f = DifferentialEquation(0.0, T)
        f.add(dot(b) == u1)
        f.add(dot(a) == p * u2)

        ocp = OCP(0.0, T, 4).subject_to(f)
        ocp.minimize_mayer_term(a)
        layout = ocp.validate()

        assert layout.states == [b, a]
        assert layout.controls == [u2, u1]
        assert layout.parameters == [p, T]

    def test_error_message_prefix(self):
        ocp = OCP(0.0, 1.0, 5)
        with pytest.raises(ConstructionError) as exc_info:
            ocp.validate()
        assert str(exc_info.value).startswith("Invalid problem: ")
