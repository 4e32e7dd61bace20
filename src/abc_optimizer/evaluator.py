"""
Evaluator gateway between the optimizer and the external cost function.

The cost function is an opaque callable supplied by the caller. It may be
slow and it may raise; the gateway turns every failure into a sentinel
worst-cost result so a single bad evaluation never aborts an iteration.
"""

import logging
import math
from collections.abc import Mapping

import numpy as np

from .config import ABCError
from .data_structures import EvaluationResult


logger = logging.getLogger(__name__)


class EvaluationFailure(ABCError):
    """A single candidate's cost function raised, timed out or returned garbage."""


def _parse_cost_output(output):
    """
    Normalize the cost function's return value to (cost, metrics).

    Accepted forms: a number, a ``(cost, metrics)`` tuple or a mapping with a
    ``"cost"`` key whose other entries are metrics.
    """
    if isinstance(output, Mapping):
        if "cost" not in output:
            raise EvaluationFailure(f"Cost mapping has no 'cost' key: {sorted(output)}")
        metrics = {k: v for k, v in output.items() if k != "cost"}
        cost = output["cost"]
    elif isinstance(output, tuple):
        if len(output) != 2:
            raise EvaluationFailure(f"Expected (cost, metrics), got a {len(output)}-tuple")
        cost, metrics = output
        metrics = dict(metrics) if metrics is not None else {}
    else:
        cost, metrics = output, {}

    try:
        cost = float(cost)
        metrics = {str(k): float(v) for k, v in metrics.items()}
    except (TypeError, ValueError) as e:
        raise EvaluationFailure(f"Non-numeric evaluation output: {e}") from e

    if not math.isfinite(cost):
        raise EvaluationFailure(f"Invalid cost value: {cost}")
    return cost, metrics


class EvaluatorGateway:
    """
    Thin adapter submitting positions to the external cost function.

    Parameters
    ----------
    cost_function : callable
        ``f(position) -> float | (float, dict) | dict``
    timeout : float, optional
        Wall-clock bound for a single evaluation in seconds, enforced by the
        dispatcher
    """

    def __init__(self, cost_function, timeout=None):
        if not callable(cost_function):
            raise TypeError("cost_function must be callable")
        self.cost_function = cost_function
        self.timeout = timeout

    def evaluate(self, position) -> EvaluationResult:
        """Evaluate one position; never raises for cost function errors."""
        position = np.asarray(position, dtype=np.float64)
        try:
            cost, metrics = _parse_cost_output(self.cost_function(position))
        except Exception as e:
            logger.warning(f"Evaluation failed ({type(e).__name__}: {e}), assigning worst cost")
            return EvaluationResult.failure(f"{type(e).__name__}: {e}")
        return EvaluationResult(cost=cost, metrics=metrics)

    def __call__(self, position) -> EvaluationResult:
        return self.evaluate(position)
