"""
OCP Constraints
===============

Constraint handling for optimal control problems.

Supports:
- Path constraints, enforced at every shooting node
- Boundary constraints at the start or end of the horizon
- Box (bound) constraints on the NLP decision vector
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np

from ..exceptions import ConstructionError
from ..model import Constraint
from ..utils.validation import is_infinite


class ConstraintKind(Enum):
    """Where on the horizon a constraint is enforced."""
    PATH = "path"
    AT_START = "at_start"
    AT_END = "at_end"

    def __str__(self) -> str:
        return self.value


AT_START = ConstraintKind.AT_START
AT_END = ConstraintKind.AT_END


@dataclass
class OCPConstraint:
    """
    A constraint together with where it applies.

    Args:
        constraint: ``lower <= expression <= upper``
        kind: PATH, AT_START or AT_END
    """
    constraint: Constraint
    kind: ConstraintKind = ConstraintKind.PATH

    def __post_init__(self):
        if not isinstance(self.constraint, Constraint):
            raise ConstructionError(f"expected a constraint, got {self.constraint!r}")
        self.kind = ConstraintKind(self.kind)

    def nodes(self, n_intervals: int) -> range:
        """Shooting nodes the constraint is enforced at."""
        if self.kind is ConstraintKind.AT_START:
            return range(0, 1)
        if self.kind is ConstraintKind.AT_END:
            return range(n_intervals, n_intervals + 1)
        return range(0, n_intervals + 1)

    def __repr__(self) -> str:
        return f"OCPConstraint({self.kind}: {self.constraint!r})"


@dataclass
class BoxConstraints:
    """
    Box (bound) constraints.

    Represents: lb <= z <= ub

    Args:
        lower: Lower bound (scalar or vector)
        upper: Upper bound (scalar or vector)
        dim: Dimension (required if bounds are scalar)

    Example:
        >>> box = BoxConstraints.unbounded(4)
        >>> box.intersect(0, -1.0, 1.0)
        >>> box.project(np.zeros(4))
    """
    lower: Union[float, np.ndarray]
    upper: Union[float, np.ndarray]
    dim: Optional[int] = None

    def __post_init__(self):
        """Process bounds."""
        if np.isscalar(self.lower):
            if self.dim is None:
                raise ValueError("dim required when bounds are scalar")
            self.lower = np.full(self.dim, float(self.lower))
        else:
            self.lower = np.array(self.lower, dtype=np.float64)
            if self.dim is None:
                self.dim = len(self.lower)

        if np.isscalar(self.upper):
            self.upper = np.full(self.dim, float(self.upper))
        else:
            self.upper = np.array(self.upper, dtype=np.float64)

        if len(self.lower) != len(self.upper):
            raise ValueError("lower and upper must have same length")

    @property
    def lb(self) -> np.ndarray:
        """Lower bounds."""
        return self.lower

    @property
    def ub(self) -> np.ndarray:
        """Upper bounds."""
        return self.upper

    def intersect(self, index: Union[int, slice, np.ndarray], lower: float, upper: float) -> None:
        """
        Tighten the bounds of some entries to [lower, upper].

        Raises:
            ConstructionError: If the tightened bounds are empty
        """
        new_lower = np.maximum(self.lower[index], lower)
        new_upper = np.minimum(self.upper[index], upper)
        if np.any(new_lower > new_upper):
            raise ConstructionError(
                f"bounds [{lower:g}, {upper:g}] are incompatible with earlier bounds"
            )
        self.lower[index] = new_lower
        self.upper[index] = new_upper

    def is_satisfied(self, x: np.ndarray, tol: float = 1e-6) -> bool:
        """Check if x satisfies constraints."""
        return bool((x >= self.lower - tol).all() and (x <= self.upper + tol).all())

    def project(self, x: np.ndarray) -> np.ndarray:
        """Project x onto feasible set."""
        return np.clip(x, self.lower, self.upper)

    def default_point(self) -> np.ndarray:
        """
        Starting point without a user guess.

        Entries bounded on both sides start at the middle of their bounds,
        all others at zero projected into the box.
        """
        x = self.project(np.zeros(len(self.lower)))
        two_sided = ~is_infinite(self.lower) & ~is_infinite(self.upper)
        x[two_sided] = 0.5 * (self.lower[two_sided] + self.upper[two_sided])
        return x

    def violation(self, x: np.ndarray) -> np.ndarray:
        """Elementwise constraint violation (zero where satisfied)."""
        return np.maximum(np.maximum(self.lower - x, x - self.upper), 0.0)

    def copy(self) -> "BoxConstraints":
        return BoxConstraints(self.lower.copy(), self.upper.copy())

    @classmethod
    def unbounded(cls, dim: int) -> "BoxConstraints":
        """Create unbounded constraints."""
        return cls(
            lower=np.full(dim, -np.inf),
            upper=np.full(dim, np.inf),
            dim=dim
        )
