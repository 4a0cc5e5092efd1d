"""Input validation utilities."""

from typing import Any, Optional, Tuple

import numpy as np

# Magnitudes at or above this are treated as infinite bounds
INF_BOUND = 1e20


def validate_problem(
    c: np.ndarray,
    A: Any,
    constraint_l: np.ndarray,
    constraint_u: np.ndarray,
    lb: Optional[np.ndarray] = None,
    ub: Optional[np.ndarray] = None,
) -> Tuple[bool, str]:
    """
    Validate QP problem data.

    Returns:
        (is_valid, error_message) tuple
    """
    n = len(c)
    m = A.shape[0]

    if A.shape[1] != n:
        return False, f"A has {A.shape[1]} columns but c has {n} elements"
    if len(constraint_l) != m or len(constraint_u) != m:
        return False, (
            f"A has {m} rows but constraint bounds have "
            f"{len(constraint_l)}/{len(constraint_u)} elements"
        )

    if lb is not None and len(lb) != n:
        return False, f"lb has {len(lb)} elements, expected {n}"

    if ub is not None and len(ub) != n:
        return False, f"ub has {len(ub)} elements, expected {n}"

    if np.any(np.isnan(c)):
        return False, "c contains NaN values"

    for name, values in (
        ("constraint_l", constraint_l),
        ("constraint_u", constraint_u),
        ("lb", lb),
        ("ub", ub),
    ):
        if values is not None and np.any(np.isnan(values)):
            return False, f"{name} contains NaN values"

    return True, ""


def is_infinite(values: np.ndarray) -> np.ndarray:
    """Mask of entries that count as infinite bounds."""
    return np.abs(values) >= INF_BOUND
