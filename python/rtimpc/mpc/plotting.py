"""
Solution Sinks
==============

One-way listeners for published ``OCPSolution`` objects.

    >>> window = PlotWindow("Rocket")
    >>> window.add_subplot(s, "Distance").add_subplot(u, "Thrust")
    >>> solver.add_listener(window)
    >>> solver.solve()
    >>> window.plot()
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np

from ..result import OCPSolution


class SolutionRecorder:
    """
    Keep published solutions in memory.

    Args:
        maxlen: Keep only the most recent solutions (None keeps all)
    """

    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.solutions: Deque[OCPSolution] = deque(maxlen=maxlen)

    def __call__(self, solution: OCPSolution) -> None:
        self.solutions.append(solution)

    def __len__(self) -> int:
        return len(self.solutions)

    @property
    def latest(self) -> Optional[OCPSolution]:
        return self.solutions[-1] if self.solutions else None

    @property
    def objectives(self) -> np.ndarray:
        """Objective of every recorded solution."""
        return np.array([s.objective for s in self.solutions])

    def clear(self) -> None:
        self.solutions.clear()


class PlotWindow:
    """
    Plot selected variables of the latest published solution.

    States are drawn over the node times, controls as steps over the
    intervals and parameters as constant lines. Plotting needs matplotlib
    (``pip install rtimpc[plot]``); collecting data does not.

    Args:
        title: Figure title
    """

    def __init__(self, title: Optional[str] = None) -> None:
        self.title = title
        self._subplots: List[Tuple[object, str]] = []
        self.solution: Optional[OCPSolution] = None

    def add_subplot(self, variable, title: Optional[str] = None) -> "PlotWindow":
        """Add a subplot for a state, control or parameter; returns self."""
        self._subplots.append((variable, title or variable.name))
        return self

    def __call__(self, solution: OCPSolution) -> None:
        self.solution = solution

    def series(self, solution: Optional[OCPSolution] = None) -> Dict[str, Tuple[np.ndarray, np.ndarray]]:
        """(time, values) per subplot title."""
        solution = solution or self.solution
        if solution is None:
            return {}
        data = {}
        for variable, title in self._subplots:
            values = solution.get_value(variable)
            if values.ndim == 0:
                values = np.full(len(solution.time), float(values))
                data[title] = (solution.time, values)
            elif len(values) == len(solution.time):
                data[title] = (solution.time, values)
            else:
                data[title] = (solution.time[:-1], values)
        return data

    def plot(self, figsize: Optional[Tuple[float, float]] = None):
        """
        Draw the latest solution.

        Returns:
            matplotlib figure (if matplotlib available and data published)
        """
        try:
            import matplotlib.pyplot as plt
        except ImportError:
            print("matplotlib required for plotting. Install with: pip install matplotlib")
            return None

        data = self.series()
        if not data:
            return None

        n = len(data)
        if figsize is None:
            figsize = (8.0, 2.5 * n)
        fig, axes = plt.subplots(n, 1, figsize=figsize, sharex=True, squeeze=False)

        for ax, (title, (t, values)) in zip(axes[:, 0], data.items()):
            if len(values) == len(t) and len(t) < len(self.solution.time):
                ax.step(t, values, where="post")
            else:
                ax.plot(t, values)
            ax.set_title(title)
            ax.grid(True, alpha=0.3)

        axes[-1, 0].set_xlabel("time")
        if self.title:
            fig.suptitle(self.title)
        fig.tight_layout()
        return fig
