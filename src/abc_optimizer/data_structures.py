"""
Data structures for the Artificial Bee Colony optimizer.
"""

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


FAILED_COST = float("inf")


class RollingBuffer:
    """
    Fixed-size rolling buffer for bounded history tracking.

    Holds at most ``max_size`` entries; appending to a full buffer discards
    the oldest entry.
    """

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")

        self.buffer = []
        self.max_size = max_size

    def append(self, value):
        self.buffer.append(value)

        if len(self.buffer) > self.max_size:
            self.buffer.pop(0)

    def clear(self):
        self.buffer = []

    def is_full(self) -> bool:
        return len(self.buffer) >= self.max_size

    def __len__(self):
        return len(self.buffer)

    def __getitem__(self, index):
        return self.buffer[index]

    def __iter__(self):
        return iter(self.buffer)

    def to_list(self):
        return list(self.buffer)


@dataclass
class EvaluationResult:
    """Outcome of one cost function call."""

    cost: float
    metrics: Dict[str, float] = field(default_factory=dict)
    failed: bool = False
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "EvaluationResult":
        return cls(cost=FAILED_COST, metrics={}, failed=True, error=error)

    @property
    def succeeded(self) -> bool:
        return not self.failed and math.isfinite(self.cost)


@dataclass
class Candidate:
    """A food source: position in the search space, its cost and metrics."""

    position: np.ndarray
    cost: float = FAILED_COST
    metrics: Dict[str, float] = field(default_factory=dict)

    def copy(self) -> "Candidate":
        return Candidate(
            position=np.array(self.position, dtype=np.float64, copy=True),
            cost=float(self.cost),
            metrics=dict(self.metrics),
        )

    @classmethod
    def from_result(cls, position: np.ndarray, result: EvaluationResult) -> "Candidate":
        return cls(
            position=np.array(position, dtype=np.float64, copy=True),
            cost=float(result.cost),
            metrics=dict(result.metrics),
        )

    def __eq__(self, other):
        if not isinstance(other, Candidate):
            return NotImplemented
        return (
            np.array_equal(self.position, other.position)
            and (self.cost == other.cost or (math.isnan(self.cost) and math.isnan(other.cost)))
            and self.metrics == other.metrics
        )


@dataclass
class ConvergenceRecord:
    """Statistics recorded after one iteration (iteration 0 is the initial population)."""

    iteration: int
    best_cost: float             # BestRecord cost after the iteration
    iteration_best_cost: float   # Best cost in the population
    mean_cost: float
    std_cost: float
    diversity: float             # Mean per-gene std of positions
    num_scouts: int
    num_failures: int
    best_position: List[float]
    elapsed: float = 0.0


@dataclass(eq=False)
class PopulationRecord:
    """Full population state of one iteration, kept for the history cache."""

    iteration: int
    positions: np.ndarray        # (N, D)
    costs: np.ndarray            # (N,)
    trial_counters: np.ndarray   # (N,)


@dataclass(frozen=True, eq=False)
class OptimizationSnapshot:
    """
    Immutable point-in-time copy of the optimizer state.

    This is the unit of checkpointing. ``convergence_history`` always has
    ``iteration_index + 1`` entries.
    """

    iteration_index: int
    population: Tuple[Candidate, ...]
    trial_counters: np.ndarray
    best: Candidate
    convergence_history: Tuple[ConvergenceRecord, ...]
    rng_state: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    population_window: Tuple[PopulationRecord, ...] = ()   # records not yet in the history cache

    @classmethod
    def capture(cls, iteration_index, population, trial_counters, best,
                convergence_history, rng_state=None, config=None, timestamp=None,
                population_window=()):
        """Deep-copy the given live state into a new snapshot."""
        counters = np.array(trial_counters, dtype=np.int64, copy=True)
        counters.setflags(write=False)
        return cls(
            iteration_index=int(iteration_index),
            population=tuple(c.copy() for c in population),
            trial_counters=counters,
            best=best.copy(),
            convergence_history=tuple(copy.deepcopy(list(convergence_history))),
            rng_state=copy.deepcopy(rng_state),
            config=copy.deepcopy(config),
            timestamp=timestamp,
            population_window=tuple(copy.deepcopy(list(population_window))),
        )

    @property
    def population_size(self) -> int:
        return len(self.population)

    @property
    def dimensions(self) -> int:
        return len(self.population[0].position) if self.population else 0

    @property
    def best_cost(self) -> float:
        return self.best.cost
