"""Shared helpers."""

from .validation import validate_problem, is_infinite, INF_BOUND

__all__ = ["validate_problem", "is_infinite", "INF_BOUND"]
