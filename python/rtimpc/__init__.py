"""
rtimpc: Real-Time Iteration Nonlinear MPC
=========================================

rtimpc transcribes continuous-time optimal control problems by single or
multiple shooting, solves them with SQP (Gauss-Newton or BFGS Hessians)
and drives them in real-time iterations for closed-loop control.

Quick Start
-----------
>>> import rtimpc
>>> from rtimpc import DifferentialState, Control, Parameter, DifferentialEquation, dot, between
>>> from rtimpc.mpc import OCP, SQPSolver, AT_START, AT_END
>>>
>>> s, v, m = DifferentialState("s"), DifferentialState("v"), DifferentialState("m")
>>> u, T = Control("u"), Parameter("T")
>>> f = DifferentialEquation(0.0, T)
>>> f.add(dot(s) == v)
>>> f.add(dot(v) == (u - 0.2 * v * v) / m)
>>> f.add(dot(m) == -0.01 * u * u)
>>>
>>> ocp = OCP(0.0, T, 20)
>>> ocp.minimize_mayer_term(T)
>>> ocp.subject_to(f)
>>> ocp.subject_to(AT_START, s == 0.0)
>>> ...
>>> solution = SQPSolver(ocp, rtimpc.SolverOptions(max_iterations=200)).solve()
>>> print(solution.status, solution.get_value(T))

The QP kernel used for the subproblems is available on its own:

>>> result = rtimpc.solve(c=c, A=A, P=P, constraint_l=l, constraint_u=u, lb=lb, ub=ub)
"""

import logging

__version__ = "0.1.0"
__author__ = "rtimpc Contributors"

logging.getLogger(__name__).addHandler(logging.NullHandler())

# Import public API
from .model import (
    Constraint,
    Control,
    DifferentialEquation,
    DifferentialState,
    Expression,
    IntermediateState,
    Parameter,
    TimeVariable,
    Variable,
    VariableLayout,
    VectorFunction,
    atan,
    between,
    cos,
    dot,
    exp,
    log,
    sin,
    sqrt,
    tan,
    tanh,
)
from .options import HessianApproximation, IntegratorType, SolverOptions, Transcription
from .solver import solve, solve_batch
from .result import OCPSolution, SolveResult, Status
from .exceptions import (
    RtimpcError,
    ConstructionError,
    DimensionError,
    InvalidInputError,
    NumericalError,
    InfeasibleError,
    UnboundedError,
    ConvergenceTimeoutError,
)

__all__ = [
    # Version
    "__version__",

    # Model building
    "Expression",
    "Variable",
    "DifferentialState",
    "Control",
    "Parameter",
    "TimeVariable",
    "IntermediateState",
    "DifferentialEquation",
    "Constraint",
    "VariableLayout",
    "VectorFunction",
    "between",
    "dot",
    "sin",
    "cos",
    "tan",
    "exp",
    "log",
    "sqrt",
    "tanh",
    "atan",

    # Configuration
    "SolverOptions",
    "IntegratorType",
    "Transcription",
    "HessianApproximation",

    # QP kernel
    "solve",
    "solve_batch",

    # Results
    "SolveResult",
    "OCPSolution",
    "Status",

    # Exceptions
    "RtimpcError",
    "ConstructionError",
    "DimensionError",
    "InvalidInputError",
    "NumericalError",
    "InfeasibleError",
    "UnboundedError",
    "ConvergenceTimeoutError",
]


def info() -> str:
    """Return information about the rtimpc installation."""
    import platform

    import numpy
    import scipy

    lines = [
        f"rtimpc version: {__version__}",
        f"Python version: {platform.python_version()}",
        f"Platform: {platform.platform()}",
        f"NumPy version: {numpy.__version__}",
        f"SciPy version: {scipy.__version__}",
    ]

    try:
        import matplotlib
        lines.append(f"Matplotlib version: {matplotlib.__version__}")
    except ImportError:
        lines.append("Matplotlib: not installed (plotting disabled)")

    return "\n".join(lines)
