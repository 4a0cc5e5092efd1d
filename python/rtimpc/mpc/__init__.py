"""
rtimpc Nonlinear Model Predictive Control
=========================================

Optimal control problems transcribed by shooting, solved by SQP and
driven in real-time iterations.

Quick Start
-----------
>>> from rtimpc import DifferentialState, Control, DifferentialEquation, dot
>>> from rtimpc.mpc import OCP, SQPSolver, RealTimeDriver, AT_START, AT_END
>>>
>>> x, v = DifferentialState("x"), DifferentialState("v")
>>> u = Control("u")
>>> f = DifferentialEquation()
>>> f.add(dot(x) == v)
>>> f.add(dot(v) == u)
>>>
>>> ocp = OCP(0.0, 2.0, 20)
>>> ocp.subject_to(f)
>>> ocp.subject_to(AT_START, x == 1.0)
>>> ocp.subject_to(AT_START, v == 0.0)
>>> ocp.subject_to(between(-1.0, u, 1.0))
>>> ocp.minimize_lsq([x, v, u], weight=[10.0, 1.0, 0.1])
>>>
>>> solution = SQPSolver(ocp).solve()
>>> solution.status, solution.objective

Real-Time Iterations
--------------------
>>> driver = RealTimeDriver(ocp, SolverOptions(control_period=0.1))
>>> failed, objective, u_apply = driver.tick(0.0, x_measured)

Classes
-------
OCP
    Dynamics, mesh, constraints and objective
ShootingNLP
    Single or multiple shooting transcription
SQPSolver
    Gauss-Newton / BFGS SQP with an l1 merit line search
RealTimeDriver
    Shift, measure, iterate once per control period

Theory
------
Each SQP iteration solves the QP

    minimize    1/2 dz' H dz + grad F(z)' dz
    subject to  row_lower - g(z) <= J(z) dz <= row_upper - g(z)
                lb - z <= dz <= ub - z

where g stacks the shooting continuity conditions and the path and
boundary constraints evaluated at the nodes.

See Also
--------
- Diehl, Bock & Schloeder (2005): "A real-time iteration scheme for
  nonlinear optimization in optimal feedback control"
- Nocedal & Wright (2006): "Numerical Optimization", chapter 18
"""

from .constraints import AT_END, AT_START, BoxConstraints, ConstraintKind, OCPConstraint
from .controller import RealTimeDriver, TickResult
from .dynamics import DynamicsModel, SystemModel, linear_system, rocket, tank_drive
from .integrators import IntegrationResult, Integrator, butcher_tableau
from .plotting import PlotWindow, SolutionRecorder
from .problem import OCP, LSQTerm, ObjectiveKind
from .sqp import SolverState, SQPPhase, SQPSolver
from .trajectory import (
    Trajectory,
    constant_reference,
    ramp_reference,
    sampled_reference,
    step_reference,
)
from .transcription import NLPEvaluation, ShootingNLP

__all__ = [
    # Problem
    "OCP",
    "ObjectiveKind",
    "LSQTerm",
    "ConstraintKind",
    "OCPConstraint",
    "AT_START",
    "AT_END",
    # Dynamics
    "DynamicsModel",
    "SystemModel",
    "linear_system",
    "rocket",
    "tank_drive",
    "Integrator",
    "IntegrationResult",
    "butcher_tableau",
    # Transcription
    "ShootingNLP",
    "NLPEvaluation",
    "BoxConstraints",
    # Solving
    "SQPSolver",
    "SolverState",
    "SQPPhase",
    # Real-time
    "RealTimeDriver",
    "TickResult",
    # Trajectories
    "Trajectory",
    "constant_reference",
    "step_reference",
    "ramp_reference",
    "sampled_reference",
    # Sinks
    "PlotWindow",
    "SolutionRecorder",
]
