"""NSGA-II style search of the clustering threshold against a vector of objectives.

The search state moves through ``Initialized -> Evaluating -> Selecting -> Varying``,
repeating the last three for a fixed number of generations before ``Converged``. All
randomness is drawn in the calling process, and candidate evaluations are gathered by
index, so results only depend on ``seed`` and never on worker timing.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from mineclusters.config import GENERATIONS, MUTATION_SCALE, POPULATION_SIZE, ComputeConfig
from mineclusters.errors import ConfigurationError
from mineclusters.models.fitness import FitnessVector

LOGGER = logging.getLogger(__name__)

Objectives = Tuple[float, ...]
FitnessFn = Callable[[float], Sequence[float]]


class OptimizerState(str, enum.Enum):
    INITIALIZED = "initialized"
    EVALUATING = "evaluating"
    SELECTING = "selecting"
    VARYING = "varying"
    CONVERGED = "converged"


@dataclass(frozen=True)
class ParetoPoint:
    threshold: float
    objectives: Objectives


@dataclass(frozen=True)
class Evaluation:
    generation: int
    threshold: float
    objectives: Objectives
    failed: bool = False


@dataclass
class ParetoFront:
    """Non-dominated thresholds plus every evaluation made while searching."""

    points: List[ParetoPoint]
    history: List[Evaluation] = field(default_factory=list)
    objective_names: Tuple[str, ...] = FitnessVector._fields

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[ParetoPoint]:
        return iter(self.points)

    def _names(self, width: int) -> List[str]:
        if len(self.objective_names) == width:
            return list(self.objective_names)
        return [f"objective_{i}" for i in range(width)]

    def to_frame(self) -> pd.DataFrame:
        width = len(self.points[0].objectives) if self.points else len(self.objective_names)
        names = self._names(width)
        rows = [{"threshold": p.threshold, **dict(zip(names, p.objectives))} for p in self.points]
        return pd.DataFrame(rows, columns=["threshold", *names])

    def history_frame(self) -> pd.DataFrame:
        width = len(self.history[0].objectives) if self.history else len(self.objective_names)
        names = self._names(width)
        rows = [
            {"generation": e.generation, "threshold": e.threshold, **dict(zip(names, e.objectives)), "failed": e.failed}
            for e in self.history
        ]
        return pd.DataFrame(rows, columns=["generation", "threshold", *names, "failed"])


def dominates(a: Sequence[float], b: Sequence[float]) -> bool:
    """True if ``a`` is no worse than ``b`` everywhere and strictly better somewhere (minimization)."""

    return all(x <= y for x, y in zip(a, b)) and any(x < y for x, y in zip(a, b))


def non_dominated_sort(objectives: Sequence[Objectives]) -> List[List[int]]:
    """Fast non-dominated sorting; returns fronts of indices, best front first."""

    n = len(objectives)
    dominated_by: List[List[int]] = [[] for _ in range(n)]
    domination_counts = [0] * n
    for i in range(n):
        for j in range(i + 1, n):
            if dominates(objectives[i], objectives[j]):
                dominated_by[i].append(j)
                domination_counts[j] += 1
            elif dominates(objectives[j], objectives[i]):
                dominated_by[j].append(i)
                domination_counts[i] += 1

    fronts = []
    current = [i for i in range(n) if domination_counts[i] == 0]
    while current:
        fronts.append(current)
        following = []
        for i in current:
            for j in dominated_by[i]:
                domination_counts[j] -= 1
                if domination_counts[j] == 0:
                    following.append(j)
        current = sorted(following)
    return fronts


def crowding_distance(objectives: Sequence[Objectives], front: Sequence[int]) -> Dict[int, float]:
    """Crowding distance of each index in ``front``; boundary solutions get infinity."""

    distances = {i: 0.0 for i in front}
    if len(front) <= 2:
        return {i: math.inf for i in front}

    for k in range(len(objectives[front[0]])):
        ordered = sorted(front, key=lambda i: objectives[i][k])
        distances[ordered[0]] = math.inf
        distances[ordered[-1]] = math.inf
        span = objectives[ordered[-1]][k] - objectives[ordered[0]][k]
        if span == 0:
            continue
        for pos in range(1, len(ordered) - 1):
            idx = ordered[pos]
            if distances[idx] != math.inf:
                distances[idx] += (objectives[ordered[pos + 1]][k] - objectives[ordered[pos - 1]][k]) / span
    return distances


def non_dominated(points: Sequence[ParetoPoint]) -> List[ParetoPoint]:
    """Non-dominated subset, one point per objective vector (lowest threshold), sorted by objectives."""

    best: Dict[Objectives, ParetoPoint] = {}
    for point in points:
        kept = best.get(point.objectives)
        if kept is None or point.threshold < kept.threshold:
            best[point.objectives] = point
    unique = list(best.values())
    front = [p for p in unique if not any(dominates(q.objectives, p.objectives) for q in unique)]
    return sorted(front, key=lambda p: (p.objectives, p.threshold))


def _validate_search(lower_bound, upper_bound, population_size, generations, mutation_scale) -> None:
    if not (np.isfinite(lower_bound) and np.isfinite(upper_bound)):
        raise ConfigurationError(f"Search bounds must be finite; got [{lower_bound}, {upper_bound}].")
    if lower_bound >= upper_bound:
        raise ConfigurationError(f"lower_bound ({lower_bound}) must be smaller than upper_bound ({upper_bound}).")
    if population_size < 2:
        raise ConfigurationError(f"population_size must be at least 2; got {population_size}.")
    if generations < 0:
        raise ConfigurationError(f"generations must be non-negative; got {generations}.")
    if not np.isfinite(mutation_scale) or mutation_scale <= 0:
        raise ConfigurationError(f"mutation_scale must be positive; got {mutation_scale}.")


def _safe_fitness(fitness_fn: FitnessFn, threshold: float, width: int) -> Tuple[Objectives, bool]:
    try:
        result = tuple(float(v) for v in fitness_fn(threshold))
        if len(result) != width or not all(np.isfinite(result)):
            raise ValueError(f"expected {width} finite objectives, got {result}")
        return result, False
    except Exception as exc:
        LOGGER.warning("Fitness evaluation failed at threshold %.3f (%s); scoring it as zero.", threshold, exc)
        return (0.0,) * width, True


class ThresholdOptimizer:
    """Evolutionary multi-objective search over a single bounded threshold."""

    def __init__(
        self,
        fitness_fn: FitnessFn,
        lower_bound: float,
        upper_bound: float,
        population_size: int = POPULATION_SIZE,
        generations: int = GENERATIONS,
        mutation_scale: float = MUTATION_SCALE,
        seed: Optional[int] = None,
        compute: ComputeConfig = ComputeConfig(),
        objective_names: Tuple[str, ...] = FitnessVector._fields,
    ) -> None:
        _validate_search(lower_bound, upper_bound, population_size, generations, mutation_scale)
        self.fitness_fn = fitness_fn
        self.lower_bound = float(lower_bound)
        self.upper_bound = float(upper_bound)
        self.population_size = int(population_size)
        self.generations = int(generations)
        self.sigma = float(mutation_scale) * (self.upper_bound - self.lower_bound)
        self.compute = compute
        self.objective_names = tuple(objective_names)
        self.rng = np.random.default_rng(seed)
        self.history: List[Evaluation] = []
        self.state = OptimizerState.INITIALIZED

    def _transition(self, state: OptimizerState) -> None:
        LOGGER.debug("Optimizer state %s -> %s", self.state.value, state.value)
        self.state = state

    def _evaluate(self, thresholds: np.ndarray, generation: int) -> List[Objectives]:
        self._transition(OptimizerState.EVALUATING)
        width = len(self.objective_names)
        results = Parallel(n_jobs=self.compute.resolved_n_jobs(), backend=self.compute.fitness_backend)(
            delayed(_safe_fitness)(self.fitness_fn, float(t), width) for t in thresholds
        )
        for threshold, (objectives, failed) in zip(thresholds, results):
            self.history.append(Evaluation(generation, float(threshold), objectives, failed))
        return [objectives for objectives, _ in results]

    def _select(self, objectives: Sequence[Objectives]) -> Tuple[List[int], Dict[int, int], Dict[int, float]]:
        self._transition(OptimizerState.SELECTING)
        survivors: List[int] = []
        ranks: Dict[int, int] = {}
        crowding: Dict[int, float] = {}
        for rank, front in enumerate(non_dominated_sort(objectives)):
            slots = self.population_size - len(survivors)
            if slots <= 0:
                break
            distances = crowding_distance(objectives, front)
            if len(front) > slots:
                front = sorted(front, key=lambda i: -distances[i])[:slots]
            for i in front:
                ranks[i] = rank
                crowding[i] = distances[i]
            survivors.extend(front)
        return survivors, ranks, crowding

    def _tournament(self, survivors: Sequence[int], ranks: Dict[int, int], crowding: Dict[int, float]) -> int:
        a, b = self.rng.choice(len(survivors), size=2, replace=False)
        first, second = survivors[a], survivors[b]
        if ranks[first] != ranks[second]:
            return first if ranks[first] < ranks[second] else second
        if crowding[first] != crowding[second]:
            return first if crowding[first] > crowding[second] else second
        return first if self.rng.random() < 0.5 else second

    def _vary(self, parents: np.ndarray) -> np.ndarray:
        self._transition(OptimizerState.VARYING)
        children = parents + self.rng.normal(0.0, self.sigma, size=len(parents))
        return np.clip(children, self.lower_bound, self.upper_bound)

    def run(self) -> ParetoFront:
        LOGGER.info(
            "Threshold search in [%.1f, %.1f]: population=%d generations=%d",
            self.lower_bound,
            self.upper_bound,
            self.population_size,
            self.generations,
        )
        thresholds = self.rng.uniform(self.lower_bound, self.upper_bound, size=self.population_size)
        objectives = self._evaluate(thresholds, generation=0)

        for generation in range(1, self.generations + 1):
            survivors, ranks, crowding = self._select(objectives)
            parent_idx = [self._tournament(survivors, ranks, crowding) for _ in range(self.population_size)]
            offspring = self._vary(thresholds[parent_idx])
            offspring_objectives = self._evaluate(offspring, generation=generation)

            thresholds = np.concatenate([thresholds[survivors], offspring])
            objectives = [objectives[i] for i in survivors] + offspring_objectives
            LOGGER.info(
                "Generation %d/%d: %d candidates, first front size %d",
                generation,
                self.generations,
                len(thresholds),
                len(non_dominated_sort(objectives)[0]),
            )

        self._transition(OptimizerState.CONVERGED)
        points = non_dominated([ParetoPoint(e.threshold, e.objectives) for e in self.history])
        LOGGER.info("Threshold search converged: %d evaluations, %d Pareto points", len(self.history), len(points))
        return ParetoFront(points=points, history=list(self.history), objective_names=self.objective_names)


def optimize(
    fitness_fn: FitnessFn,
    lower_bound: float,
    upper_bound: float,
    population_size: int = POPULATION_SIZE,
    generations: int = GENERATIONS,
    *,
    mutation_scale: float = MUTATION_SCALE,
    seed: Optional[int] = None,
    compute: ComputeConfig = ComputeConfig(),
) -> ParetoFront:
    """Search ``[lower_bound, upper_bound]`` for thresholds trading off the fitness objectives."""

    optimizer = ThresholdOptimizer(
        fitness_fn,
        lower_bound,
        upper_bound,
        population_size=population_size,
        generations=generations,
        mutation_scale=mutation_scale,
        seed=seed,
        compute=compute,
    )
    return optimizer.run()
