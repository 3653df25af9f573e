"""Pick one threshold off a Pareto front where the trade-off rate bends the most."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from mineclusters.models.optimize import ParetoFront, ParetoPoint


def _scaled(values: np.ndarray) -> np.ndarray:
    span = values.max() - values.min()
    if span == 0:
        return np.zeros_like(values)
    return (values - values.min()) / span


def find_elbow(front: ParetoFront | Sequence[ParetoPoint]) -> ParetoPoint:
    """Return the point with the sharpest change in slope between its neighbours.

    Both objectives are min-max scaled and the points ordered by the first one, so the
    slopes compare like with like. Fronts of one or two points have no bend; their first
    point is returned.
    """

    points = sorted(front, key=lambda p: (p.objectives, p.threshold))
    if not points:
        raise ValueError("Cannot pick an elbow from an empty Pareto front.")
    if len(points) < 3:
        return points[0]

    objectives = np.array([p.objectives[:2] for p in points], dtype=float)
    x = _scaled(objectives[:, 0])
    y = _scaled(objectives[:, 1])
    dx = np.diff(x)
    dy = np.diff(y)
    slopes = np.divide(dy, dx, out=np.zeros_like(dy), where=dx > 0)
    bends = np.abs(np.diff(slopes))
    return points[int(np.argmax(bends)) + 1]
