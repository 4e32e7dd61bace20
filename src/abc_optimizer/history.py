"""
History tracking and statistics for the ABC optimizer.

Per-iteration statistics feed the convergence history stored in every
snapshot; ``summarize_history`` condenses a run for the final report panel.
"""

import math

import numpy as np

from .data_structures import ConvergenceRecord, PopulationRecord


def population_statistics(costs):
    """
    Compute best, mean and std over the finite costs of a population.

    Failed evaluations carry a cost of +inf and are left out of the mean and
    std. With no finite cost at all, best and mean are +inf and std is 0.

    Parameters
    ----------
    costs : array-like
        Cost of every candidate

    Returns
    -------
    tuple of float
        (best_cost, mean_cost, std_cost, num_failures)
    """
    costs = np.asarray(costs, dtype=np.float64)
    finite = costs[np.isfinite(costs)]
    num_failures = int(costs.size - finite.size)

    if finite.size == 0:
        return float("inf"), float("inf"), 0.0, num_failures

    std_cost = float(np.std(finite)) if finite.size > 1 else 0.0
    return float(np.min(finite)), float(np.mean(finite)), std_cost, num_failures


def population_diversity(positions):
    """Mean per-gene standard deviation of the population positions."""
    positions = np.asarray(positions, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[0] < 2:
        return 0.0
    return float(np.mean(np.std(positions, axis=0)))


def build_convergence_record(iteration, population, best, num_scouts=0, elapsed=0.0):
    """
    Build the ConvergenceRecord of one iteration.

    Parameters
    ----------
    iteration : int
        Iteration index (0 for the initial population)
    population : list of Candidate
        Population after the iteration
    best : Candidate
        Best record after the iteration
    num_scouts : int
        Number of scout replacements in the iteration
    elapsed : float
        Wall-clock seconds spent in the iteration
    """
    costs = [c.cost for c in population]
    iteration_best, mean_cost, std_cost, num_failures = population_statistics(costs)
    return ConvergenceRecord(
        iteration=int(iteration),
        best_cost=float(best.cost),
        iteration_best_cost=iteration_best,
        mean_cost=mean_cost,
        std_cost=std_cost,
        diversity=population_diversity([c.position for c in population]),
        num_scouts=int(num_scouts),
        num_failures=num_failures,
        best_position=[float(v) for v in best.position],
        elapsed=float(elapsed),
    )


def build_population_record(iteration, population, trial_counters):
    """Copy the full population state of one iteration."""
    return PopulationRecord(
        iteration=int(iteration),
        positions=np.array([c.position for c in population], dtype=np.float64),
        costs=np.array([c.cost for c in population], dtype=np.float64),
        trial_counters=np.array(trial_counters, dtype=np.int64, copy=True),
    )


def summarize_history(history):
    """
    Summarize a convergence history.

    Returns
    -------
    dict
        total_iterations, initial_best_cost, final_best_cost,
        improvement_ratio, mean_convergence_rate, total_scouts,
        total_failures, final_diversity, total_time
    """
    if not history:
        return {}

    best_costs = np.array([r.best_cost for r in history], dtype=np.float64)
    initial, final = float(best_costs[0]), float(best_costs[-1])

    if math.isfinite(initial) and math.isfinite(final) and final != 0:
        improvement_ratio = initial / final
    else:
        improvement_ratio = float("nan")

    # Mean log-rate of change over the strictly positive part of the curve
    valid = best_costs[np.isfinite(best_costs) & (best_costs > 0)]
    if valid.size > 1:
        mean_convergence_rate = float(np.mean(np.diff(np.log(valid))))
    else:
        mean_convergence_rate = 0.0

    return {
        'total_iterations': history[-1].iteration,
        'initial_best_cost': initial,
        'final_best_cost': final,
        'improvement_ratio': improvement_ratio,
        'mean_convergence_rate': mean_convergence_rate,
        'total_scouts': int(sum(r.num_scouts for r in history)),
        'total_failures': int(sum(r.num_failures for r in history)),
        'final_diversity': history[-1].diversity,
        'total_time': float(sum(r.elapsed for r in history)),
    }
