"""
Main Artificial Bee Colony optimizer class.

This module provides the ArtificialBeeColony engine: it owns the population,
the trial counters and the best record, and runs the employed, onlooker and
scout phases once per iteration. Each phase makes exactly one call to the
ParallelDispatcher and applies the results single-threaded once every
evaluation of the phase has finished.
"""

import os
import copy
import time
import logging
import datetime
from enum import Enum

import numpy as np

from .cache import TieredCache, CacheIOFailure
from .checkpoint import CheckpointStore, CorruptCheckpoint
from .data_structures import Candidate, OptimizationSnapshot, RollingBuffer
from .evaluator import EvaluatorGateway
from .history import (
    build_convergence_record,
    build_population_record,
    summarize_history,
)
from .multiprocessing_eval import ParallelDispatcher
from .utils import create_console, log_message, log_error, format_eta


logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "population_history_"


class EngineState(Enum):
    INIT = "init"
    RUNNING = "running"
    CHECKPOINTING = "checkpointing"
    TERMINATED = "terminated"


def selection_probabilities(costs):
    """
    Onlooker selection probabilities from a cost vector.

    Uses ``exp(-cost / mean(cost))`` normalized to sum to one. Failed
    evaluations (non-finite costs) get zero weight. Finite costs are shifted
    up by their minimum when it is negative; when the shifted mean is zero
    every finite slot gets the same weight, and when no cost is finite the
    distribution is uniform over all slots.

    Parameters
    ----------
    costs : array-like
        Cost of every population slot

    Returns
    -------
    numpy.ndarray
        Probabilities, same length as ``costs``
    """
    costs = np.asarray(costs, dtype=np.float64)
    n = costs.size
    finite = np.isfinite(costs)
    if not finite.any():
        return np.full(n, 1.0 / n)

    finite_costs = costs[finite]
    min_cost = finite_costs.min()
    if min_cost < 0:
        finite_costs = finite_costs - min_cost
    mean_cost = finite_costs.mean()

    weights = np.zeros(n)
    if mean_cost > 0 and np.isfinite(mean_cost):
        weights[finite] = np.exp(-finite_costs / mean_cost)
    else:
        weights[finite] = 1.0
    return weights / weights.sum()


def roulette_wheel_selection(probabilities, rng):
    """
    Pick the first slot whose cumulative probability is >= r, r ~ U(0, 1).

    Zero-probability slots are never returned: a draw landing on one moves to
    the next weighted slot, and a draw past a cumulative sum that rounded
    below 1 falls back to the last weighted slot.
    """
    probabilities = np.asarray(probabilities, dtype=np.float64)
    r = rng.random()
    cumulative = np.cumsum(probabilities)
    idx = int(np.searchsorted(cumulative, r, side="left"))
    if idx < len(probabilities) and probabilities[idx] > 0:
        return idx

    weighted = np.flatnonzero(probabilities > 0)
    later = weighted[weighted >= idx]
    return int(later[0]) if later.size else int(weighted[-1])


def history_key(iteration):
    """Cache key of the population window stored at ``iteration``."""
    return f"{HISTORY_KEY_PREFIX}{int(iteration):05d}"


def history_key_iteration(key):
    return int(key[len(HISTORY_KEY_PREFIX):])


class ArtificialBeeColony:
    """
    Artificial Bee Colony optimizer with checkpointing and a tiered history cache.

    Attributes
    ----------
    config : ABCConfig
        Validated configuration
    state : EngineState
        Current state of the INIT -> RUNNING -> CHECKPOINTING -> TERMINATED
        state machine
    iteration : int
        Index of the last completed iteration (0 after initialization)

    Examples
    --------
    >>> config = ABCConfig(lower_bounds=[0, 0], upper_bounds=[1, 1],
    ...                    population_size=20, n_onlooker=10, limit=20,
    ...                    max_iterations=50)
    >>> with ArtificialBeeColony(config, lambda x: float(np.sum(x ** 2))) as colony:
    ...     best_cost, best_position = colony.optimize()
    """

    def __init__(self, config, cost_function=None, console=None, watch_path=None,
                 checkpoint_store=None, cache=None, dispatcher=None):
        """
        Parameters
        ----------
        config : ABCConfig
            Optimizer configuration, validated here
        cost_function : callable, optional
            ``f(position) -> float | (float, dict) | dict``; required unless
            ``dispatcher`` is given
        console : rich.console.Console, optional
            Console for progress output (created when ``config.verbose``)
        watch_path : str, optional
            File receiving console output
        checkpoint_store : CheckpointStore, optional
            Defaults to ``<base_dir>/checkpoints`` when ``base_dir`` is set
        cache : TieredCache, optional
            Defaults to a cache in ``<base_dir>/cache`` or a temporary directory
        dispatcher : ParallelDispatcher, optional
            Defaults to a dispatcher over ``cost_function``
        """
        self.config = config.validate()
        self.n_food_sources = config.population_size
        self.dimensions = config.dimensions
        self.lower_bounds, self.upper_bounds = config.bounds

        if console is None and config.verbose:
            console = create_console()
        self.console = console
        self.watch_path = watch_path

        self.rng = np.random.default_rng(config.seed)

        if dispatcher is None:
            if cost_function is None:
                raise ValueError("Either cost_function or dispatcher must be provided")
            gateway = EvaluatorGateway(cost_function, timeout=config.evaluation_timeout)
            dispatcher = ParallelDispatcher(
                gateway,
                num_workers=config.num_workers,
                batch_size=config.effective_batch_size,
                console=self.console,
                watch_path=self.watch_path,
                verbose=config.verbose,
            )
        self.dispatcher = dispatcher

        if checkpoint_store is None and config.base_dir:
            checkpoint_store = CheckpointStore(
                os.path.join(config.base_dir, "checkpoints"),
                max_checkpoints=config.max_checkpoints,
                population_size=config.population_size,
                dimensions=config.dimensions,
            )
        self.checkpoint_store = checkpoint_store

        self._owns_cache = cache is None
        if cache is None:
            cache_dir = os.path.join(config.base_dir, "cache") if config.base_dir else None
            cache = TieredCache(cache_dir, max_memory_mb=config.fast_tier_quota_mb)
        self.cache = cache

        self.state = EngineState.INIT
        self.iteration = 0
        self._population = []
        self._trial_counters = np.zeros(self.n_food_sources, dtype=np.int64)
        self._best = None
        self._history = []
        self._population_window = RollingBuffer(max_size=2 * config.checkpoint_interval + 1)
        self._history_keys = []
        self._last_snapshot = None
        self.start_time = None

    # ------------------------------------------------------------------
    # Read accessors return copies

    @property
    def population(self):
        return [c.copy() for c in self._population]

    @property
    def trial_counters(self):
        return self._trial_counters.copy()

    @property
    def best(self):
        return self._best.copy() if self._best is not None else None

    @property
    def convergence_history(self):
        return copy.deepcopy(self._history)

    @property
    def history_keys(self):
        return list(self._history_keys)

    @property
    def last_snapshot(self):
        return self._last_snapshot

    # ------------------------------------------------------------------
    # Initialization

    def initialize(self, resume=False):
        """
        Build the starting population.

        Parameters
        ----------
        resume : bool
            Continue from the newest valid checkpoint when one exists; corrupt
            or incompatible checkpoints are skipped, and a fresh start is made
            when none is usable
        """
        if self.state is not EngineState.INIT:
            raise RuntimeError(f"initialize() called in state {self.state.value}")

        snapshot = self._find_resumable_snapshot() if resume else None
        if snapshot is not None:
            self.restore_snapshot(snapshot)
            self.log_message(
                f"Resuming from iteration {snapshot.iteration_index + 1} of "
                f"{self.config.max_iterations} (best cost {snapshot.best_cost:.6e})",
                emoji="🔄",
            )
            logger.info(f"Resumed from checkpoint at iteration {snapshot.iteration_index}")
        else:
            if self.checkpoint_store is not None and self.checkpoint_store.list_iterations():
                logger.warning(
                    f"Discarding existing checkpoints in {self.checkpoint_store.checkpoint_dir} "
                    f"for a fresh start"
                )
                self.checkpoint_store.clear()
            self._fresh_start()

        self.state = EngineState.RUNNING

    def _fresh_start(self):
        self.log_message(f"Initializing population with {self.n_food_sources} bees...", emoji="🐝")

        positions = self._random_positions(self.n_food_sources)
        results = self.dispatcher.evaluate(positions, description="Initializing population")

        self._population = [Candidate.from_result(p, r) for p, r in zip(positions, results)]
        self._trial_counters = np.zeros(self.n_food_sources, dtype=np.int64)
        costs = np.array([c.cost for c in self._population])
        self._best = self._population[int(np.argmin(costs))].copy()
        self.iteration = 0
        self._history = [build_convergence_record(0, self._population, self._best)]
        self._population_window.clear()
        self._population_window.append(
            build_population_record(0, self._population, self._trial_counters)
        )

        self.log_message(f"Population initialized. Best initial cost: {self._best.cost:.6e}", emoji="✅")
        self._checkpoint()

    def _find_resumable_snapshot(self):
        if self.checkpoint_store is None:
            return None

        for iteration in reversed(self.checkpoint_store.list_iterations()):
            try:
                snapshot = self.checkpoint_store.load(iteration)
            except CorruptCheckpoint as e:
                logger.warning(f"{e}; trying an older checkpoint")
                self.log_message(f"Skipping corrupt checkpoint {iteration}: {e.reason}", emoji="⚠️")
                continue
            if snapshot is None:
                continue
            if not self._is_compatible(snapshot):
                logger.warning(f"Checkpoint {iteration} does not match the current configuration")
                self.log_message(f"Skipping incompatible checkpoint {iteration}", emoji="⚠️")
                continue
            return snapshot

        logger.info("No usable checkpoint, starting fresh")
        return None

    def _is_compatible(self, snapshot):
        if snapshot.population_size != self.n_food_sources or snapshot.dimensions != self.dimensions:
            return False
        candidates = list(snapshot.population) + [snapshot.best]
        return all(self._in_bounds(c.position) for c in candidates)

    def _in_bounds(self, position):
        position = np.asarray(position)
        return bool(np.all(position >= self.lower_bounds) and np.all(position <= self.upper_bounds))

    def restore_snapshot(self, snapshot):
        """Replace the live state with a copy of ``snapshot``."""
        if self.state is EngineState.TERMINATED:
            raise RuntimeError("Cannot restore a snapshot into a terminated engine")
        if not self._is_compatible(snapshot):
            raise ValueError("Snapshot does not match the engine configuration")

        self._population = [c.copy() for c in snapshot.population]
        self._trial_counters = np.array(snapshot.trial_counters, dtype=np.int64, copy=True)
        self._best = snapshot.best.copy()
        self._history = copy.deepcopy(list(snapshot.convergence_history))
        self.iteration = snapshot.iteration_index
        self._last_snapshot = snapshot
        self._rewind_population_history(snapshot)

        if snapshot.rng_state:
            try:
                self.rng.bit_generator.state = copy.deepcopy(snapshot.rng_state)
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Failed to restore random state: {e}")

    def _rewind_population_history(self, snapshot):
        """Drop cached windows newer than ``snapshot`` and reload its pending records."""
        kept_keys = []
        for key in self._history_keys:
            if history_key_iteration(key) > snapshot.iteration_index:
                self.cache.remove(key)
            else:
                kept_keys.append(key)
        self._history_keys = kept_keys

        last_cached = max((history_key_iteration(k) for k in kept_keys), default=-1)
        self._population_window.clear()
        for record in snapshot.population_window:
            if record.iteration > last_cached:
                self._population_window.append(copy.deepcopy(record))

    def capture_snapshot(self):
        """Return an immutable copy of the current optimizer state."""
        return OptimizationSnapshot.capture(
            iteration_index=self.iteration,
            population=self._population,
            trial_counters=self._trial_counters,
            best=self._best,
            convergence_history=self._history,
            rng_state=self.rng.bit_generator.state,
            config=self.config.to_dict(),
            timestamp=datetime.datetime.now().strftime('%Y_%m_%d_%H%M%S'),
            population_window=self._population_window.to_list(),
        )

    # ------------------------------------------------------------------
    # Candidate generation

    def _random_positions(self, count):
        return [
            self.rng.uniform(self.lower_bounds, self.upper_bounds)
            for _ in range(count)
        ]

    def _random_neighbor(self, i):
        """Uniformly random slot k != i."""
        k = int(self.rng.integers(self.n_food_sources - 1))
        return k if k < i else k + 1

    def _propose(self, i):
        """v = x_i + phi * (x_i - x_k), phi ~ U(-a, a) per gene, clipped to bounds."""
        k = self._random_neighbor(i)
        x_i = self._population[i].position
        x_k = self._population[k].position
        a = self.config.acceleration
        phi = self.rng.uniform(-a, a, size=self.dimensions)
        return np.clip(x_i + phi * (x_i - x_k), self.lower_bounds, self.upper_bounds)

    def _reconcile(self, i, position, result):
        """Greedy replacement; ties favour the new candidate, failures never win."""
        if result.succeeded and result.cost <= self._population[i].cost:
            self._population[i] = Candidate.from_result(position, result)
            self._trial_counters[i] = 0
            return True
        self._trial_counters[i] += 1
        return False

    def _offer_best(self, candidate):
        if candidate.cost < self._best.cost:
            self._best = candidate.copy()
            return True
        return False

    # ------------------------------------------------------------------
    # Phases

    def employed_phase(self):
        """Perturb every food source once; returns the number of improvements."""
        proposals = [self._propose(i) for i in range(self.n_food_sources)]
        results = self.dispatcher.evaluate(
            proposals, description=f"Iter {self.iteration + 1} employed bees"
        )
        return sum(self._reconcile(i, p, r) for i, (p, r) in enumerate(zip(proposals, results)))

    def onlooker_phase(self):
        """Perturb roulette-selected food sources; returns the number of improvements."""
        probabilities = selection_probabilities([c.cost for c in self._population])
        selected = [
            roulette_wheel_selection(probabilities, self.rng)
            for _ in range(self.config.n_onlooker)
        ]
        proposals = [self._propose(i) for i in selected]
        results = self.dispatcher.evaluate(
            proposals, description=f"Iter {self.iteration + 1} onlooker bees"
        )
        # Sequential reconciliation: a slot selected twice compares against
        # the candidate accepted by the earlier draw
        return sum(self._reconcile(i, p, r) for i, p, r in zip(selected, proposals, results))

    def scout_phase(self):
        """Replace abandoned food sources; returns the number of scouts."""
        scouts = [int(i) for i in np.flatnonzero(self._trial_counters >= self.config.limit)]
        if not scouts:
            return 0

        positions = self._random_positions(len(scouts))
        results = self.dispatcher.evaluate(
            positions, description=f"Iter {self.iteration + 1} scout bees"
        )
        for i, position, result in zip(scouts, positions, results):
            self._offer_best(self._population[i])
            self._population[i] = Candidate.from_result(position, result)
            self._trial_counters[i] = 0
        return len(scouts)

    # ------------------------------------------------------------------
    # Main loop

    def step(self):
        """
        Run one full iteration (employed, onlooker, scout, bookkeeping).

        Returns
        -------
        ConvergenceRecord
            Statistics of the completed iteration
        """
        if self.state is EngineState.INIT:
            raise RuntimeError("initialize() must be called before step()")
        if self.state is EngineState.TERMINATED:
            raise RuntimeError("Optimization already terminated")

        iteration_start = time.time()
        previous_best = self._best.cost

        self.employed_phase()
        self.onlooker_phase()
        num_scouts = self.scout_phase()
        self.iteration += 1

        costs = np.array([c.cost for c in self._population])
        self._offer_best(self._population[int(np.argmin(costs))])

        record = build_convergence_record(
            self.iteration,
            self._population,
            self._best,
            num_scouts=num_scouts,
            elapsed=time.time() - iteration_start,
        )
        self._history.append(record)
        self._population_window.append(
            build_population_record(self.iteration, self._population, self._trial_counters)
        )

        self._log_iteration(record, improved=self._best.cost < previous_best)

        if (self.iteration % self.config.checkpoint_interval == 0
                or self.iteration == self.config.max_iterations):
            self._checkpoint()

        if self.iteration >= self.config.max_iterations:
            self.state = EngineState.TERMINATED
        return record

    def optimize(self, resume=False):
        """
        Run the optimization until ``max_iterations``.

        Parameters
        ----------
        resume : bool
            Continue from the newest valid checkpoint when available

        Returns
        -------
        tuple
            (best_cost, best_position)
        """
        self.start_time = time.time()

        self.log_message("🚀 Starting Artificial Bee Colony optimization", panel=True)
        self.log_message(f"Population size: {self.n_food_sources}")
        self.log_message(f"Onlookers: {self.config.n_onlooker}")
        self.log_message(f"Dimensions: {self.dimensions}")
        self.log_message(f"Iterations: {self.config.max_iterations}")
        self.log_message(f"Abandonment limit: {self.config.limit}")
        self.log_message(f"Acceleration coefficient: {self.config.acceleration}")
        self.log_message(f"Workers: {self.config.num_workers}")

        if self.state is EngineState.INIT:
            self.initialize(resume=resume)

        while self.state is not EngineState.TERMINATED and self.iteration < self.config.max_iterations:
            self.step()
        self.state = EngineState.TERMINATED

        total_time = time.time() - self.start_time
        summary = summarize_history(self._history)
        self.log_message(
            f"""✨ Optimization complete!
    🏆 Best cost: {self._best.cost:.6e}
    📍 Best position: {np.array2string(self._best.position, precision=6)}
    📐 Metrics: {self._best.metrics}
    📉 Improvement ratio: {summary.get('improvement_ratio', float('nan')):.4g}
    🔄 Scouts: {summary.get('total_scouts', 0)}
    💀 Failed evaluations: {self.dispatcher.total_failures}
    🕒 Total time: {total_time:.2f} sec / {(total_time / 60):.2f} min""",
            panel=True,
            timestamp=False,
        )
        logger.info(f"Optimization finished after {self.iteration} iterations, best cost {self._best.cost:.6e}")
        return self._best.cost, self._best.position.copy()

    # ------------------------------------------------------------------
    # Checkpointing and history cache

    def _checkpoint(self):
        previous_state = self.state
        self.state = EngineState.CHECKPOINTING
        try:
            snapshot = self.capture_snapshot()
            self._last_snapshot = snapshot
            if self.checkpoint_store is not None:
                if self.checkpoint_store.save(snapshot):
                    self.log_message(f"Saved checkpoint at iteration {self.iteration}", emoji="💾")
                else:
                    self.log_message(f"Failed to save checkpoint at iteration {self.iteration}", emoji="⚠️")
            self._store_history_window()
        finally:
            self.state = previous_state

    def _store_history_window(self):
        if not len(self._population_window):
            return

        key = history_key(self.iteration)
        try:
            location = self.cache.store(key, self._population_window.to_list())
        except CacheIOFailure as e:
            logger.error(f"Dropping population history window {key}: {e}")
            log_error(self.console, f"Could not cache {key}", e, self.watch_path)
        else:
            if key not in self._history_keys:
                self._history_keys.append(key)
            logger.debug(f"Population history {key} cached in {location} tier")
        self._population_window.clear()

    def load_population_history(self):
        """
        Return every cached PopulationRecord plus the not yet cached ones, in order.

        Raises
        ------
        CacheIOFailure
            If a slow-tier chunk cannot be read
        KeyError
            If a chunk was evicted from the fast tier by ``cache.cleanup()``
        """
        records = []
        for key in self._history_keys:
            records.extend(self.cache.load(key))
        records.extend(self._population_window.to_list())
        return records

    # ------------------------------------------------------------------
    # Reporting

    def get_statistics(self):
        """
        Get optimization statistics.

        Returns
        -------
        dict
            best cost/position/metrics, iterations completed, evaluation
            counts, cache status and the convergence summary
        """
        elapsed_time = time.time() - self.start_time if self.start_time else 0
        stats = {
            'best_cost': self._best.cost if self._best is not None else float('inf'),
            'best_position': self._best.position.copy() if self._best is not None else None,
            'best_metrics': dict(self._best.metrics) if self._best is not None else {},
            'iterations_completed': self.iteration,
            'state': self.state.value,
            'total_time': elapsed_time,
            'total_evaluations': self.dispatcher.total_evaluations,
            'failed_evaluations': self.dispatcher.total_failures,
            'cache_status': self.cache.get_status(),
        }
        stats.update(summarize_history(self._history))
        return stats

    def _log_iteration(self, record, improved):
        max_it = self.config.max_iterations
        elapsed = time.time() - self.start_time if self.start_time else record.elapsed
        eta = format_eta(elapsed, self.iteration, max_it)
        self.log_message(
            f"""{'🔥' if improved else '🐝'} Iteration {self.iteration}/{max_it} ({100.0 * self.iteration / max(max_it, 1):.1f}%)
    🏆 Best: {record.best_cost:.6e} | Iteration best: {record.iteration_best_cost:.6e}
    📊 Mean: {record.mean_cost:.6e} | Std: {record.std_cost:.6e} | Diversity: {record.diversity:.4f}
    🔄 Scouts: {record.num_scouts} | 💀 Failed: {record.num_failures}
    🕒 {record.elapsed:.2f}s this iteration | ETA: {eta:.1f}s""",
            panel=True,
        )

    def log_message(self, message, emoji=None, panel=False, timestamp=True):
        log_message(
            self.console,
            message,
            emoji=emoji,
            panel=panel,
            timestamp=timestamp,
            watch_path=self.watch_path,
            title="ABC Stats",
        )

    # ------------------------------------------------------------------
    # Teardown

    def close(self):
        """Release the worker pool and destroy the cache entries the engine created."""
        self.dispatcher.close()
        if self._owns_cache:
            self.cache.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
