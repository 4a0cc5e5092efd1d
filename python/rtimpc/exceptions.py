"""
rtimpc Exception Classes
========================

Custom exceptions for rtimpc error handling.

Construction errors are raised while an optimal control problem is being
assembled. Failures that happen while solving are reported as ``Status``
values and only turned into exceptions on request
(see ``OCPSolution.raise_for_status``).
"""

from typing import Optional


class RtimpcError(Exception):
    """Base exception for all rtimpc errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConstructionError(RtimpcError):
    """
    Raised when an optimal control problem is malformed.

    Examples: a declared state without a differential equation, a bound with
    lower > upper, an objective weight that does not match its residual.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid problem: {message}")


class DimensionError(ConstructionError):
    """
    Raised when matrix/vector dimensions are incompatible.
    """

    def __init__(self, message: str) -> None:
        RtimpcError.__init__(self, f"Dimension mismatch: {message}")


class InvalidInputError(RtimpcError):
    """
    Raised when input data or options are invalid.

    Examples: NaN values, non-positive tolerance, time running backwards.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid input: {message}")


class NumericalError(RtimpcError):
    """
    Raised when numerical issues are encountered.

    The integrator raises this when a step produces non-finite values.
    """

    def __init__(self, message: str = "Numerical error encountered") -> None:
        super().__init__(message)


class InfeasibleError(RtimpcError):
    """
    Raised when a quadratic subproblem is primal infeasible.

    No usable iterate is guaranteed after this failure.
    """

    def __init__(self, message: str = "Problem is infeasible") -> None:
        super().__init__(message)


class UnboundedError(RtimpcError):
    """
    Raised when a quadratic subproblem is unbounded (dual infeasible).
    """

    def __init__(self, message: str = "Problem is unbounded") -> None:
        super().__init__(message)


class ConvergenceTimeoutError(RtimpcError):
    """
    Raised when the iteration or time budget is exhausted.

    The best iterate so far remains usable as an approximate solution.
    """

    def __init__(
        self,
        message: str = "Iteration budget exhausted",
        iterations: Optional[int] = None,
    ) -> None:
        self.iterations = iterations
        super().__init__(message)
