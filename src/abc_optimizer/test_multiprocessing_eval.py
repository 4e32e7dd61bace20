"""
Tests for the parallel evaluation dispatcher.

Cost functions live at module level so pool workers can import them.

Testing Framework: pytest + Hypothesis
"""

import time

import numpy as np
import pytest
from hypothesis import given, strategies as st, settings

from abc_optimizer.evaluator import EvaluatorGateway
from abc_optimizer.multiprocessing_eval import ParallelDispatcher
from abc_optimizer.utils import create_console


def first_gene(x):
    return float(x[0])


def slow_for_large_first_gene(x):
    # Later submissions finish first
    time.sleep(0.05 * max(0.0, 4.0 - x[0]))
    return float(x[0])


def fails_on_negative(x):
    if x[0] < 0:
        raise ValueError("negative input")
    return float(x[0])


def hangs_on_negative(x):
    if x[0] < 0:
        time.sleep(30)
    return float(x[0])


def positions_for(values):
    return [np.array([v, 0.0]) for v in values]


def test_inline_results_keep_input_order():
    with ParallelDispatcher(EvaluatorGateway(first_gene)) as dispatcher:
        assert not dispatcher.uses_pool
        results = dispatcher.evaluate(positions_for([3.0, 1.0, 2.0]))
    assert [r.cost for r in results] == [3.0, 1.0, 2.0]
    assert dispatcher.pool is None


def test_empty_batch():
    with ParallelDispatcher(EvaluatorGateway(first_gene)) as dispatcher:
        assert dispatcher.evaluate([]) == []


def test_pool_results_keep_input_order():
    values = [0.0, 1.0, 2.0, 3.0, 4.0]
    with ParallelDispatcher(EvaluatorGateway(slow_for_large_first_gene), num_workers=2, batch_size=5) as dispatcher:
        assert dispatcher.uses_pool
        results = dispatcher.evaluate(positions_for(values))
    assert [r.cost for r in results] == values
    assert dispatcher.total_evaluations == 5


def test_failure_is_isolated_to_its_index():
    with ParallelDispatcher(EvaluatorGateway(fails_on_negative), num_workers=2) as dispatcher:
        results = dispatcher.evaluate(positions_for([1.0, -1.0, 2.0]))
    assert [r.failed for r in results] == [False, True, False]
    assert results[1].cost == float("inf")
    assert "negative input" in results[1].error
    assert dispatcher.total_failures == 1


def test_timeout_fails_only_the_hung_evaluation():
    gateway = EvaluatorGateway(hangs_on_negative, timeout=0.5)
    with ParallelDispatcher(gateway, num_workers=2) as dispatcher:
        assert dispatcher.uses_pool
        start = time.monotonic()
        results = dispatcher.evaluate(positions_for([1.0, -1.0]))
        assert time.monotonic() - start < 10
        assert results[0].cost == 1.0
        assert results[1].failed
        assert "Timed out" in results[1].error
        assert dispatcher.pool is None

        # The rebuilt pool serves the next batch
        again = dispatcher.evaluate(positions_for([5.0, 6.0]))
        assert [r.cost for r in again] == [5.0, 6.0]


def test_progress_bar_does_not_change_results(tmp_path):
    watch_path = str(tmp_path / "logs" / "eval.log")
    dispatcher = ParallelDispatcher(
        EvaluatorGateway(fails_on_negative),
        console=create_console(),
        watch_path=watch_path,
        verbose=True,
    )
    results = dispatcher.evaluate(positions_for([2.0, -2.0]), description="Employed bees")
    assert [r.failed for r in results] == [False, True]


def test_invalid_parameters():
    with pytest.raises(ValueError):
        ParallelDispatcher(EvaluatorGateway(first_gene), num_workers=0)
    with pytest.raises(ValueError):
        ParallelDispatcher(EvaluatorGateway(first_gene), batch_size=0)


@settings(max_examples=50, deadline=None)
@given(
    values=st.lists(st.floats(min_value=-100, max_value=100), min_size=1, max_size=30),
    batch_size=st.integers(min_value=1, max_value=8),
)
def test_property_batching_preserves_alignment(values, batch_size):
    dispatcher = ParallelDispatcher(EvaluatorGateway(fails_on_negative), batch_size=batch_size)
    results = dispatcher.evaluate(positions_for(values))
    assert len(results) == len(values)
    for value, result in zip(values, results):
        if value < 0:
            assert result.failed
        else:
            assert result.cost == value
