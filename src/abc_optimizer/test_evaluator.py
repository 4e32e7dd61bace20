"""
Tests for the evaluator gateway.

Testing Framework: pytest + Hypothesis
"""

import math

import numpy as np
import pytest
from hypothesis import given, strategies as st, settings

from abc_optimizer.evaluator import EvaluatorGateway, EvaluationFailure, _parse_cost_output


def sphere(x):
    return float(np.sum(x ** 2))


def raising(x):
    raise RuntimeError("simulation diverged")


def test_float_output():
    result = EvaluatorGateway(sphere).evaluate([1.0, 2.0])
    assert result.succeeded
    assert result.cost == 5.0
    assert result.metrics == {}


def test_tuple_output_carries_metrics():
    gateway = EvaluatorGateway(lambda x: (sphere(x), {"current_error": 0.5, "voltage_error": 1}))
    result = gateway.evaluate(np.zeros(3))
    assert result.cost == 0.0
    assert result.metrics == {"current_error": 0.5, "voltage_error": 1.0}


def test_mapping_output():
    gateway = EvaluatorGateway(lambda x: {"cost": 2, "norm": 3})
    result = gateway.evaluate([0.0])
    assert result.cost == 2.0
    assert result.metrics == {"norm": 3.0}


def test_exception_becomes_failed_result():
    result = EvaluatorGateway(raising).evaluate([0.0])
    assert result.failed
    assert not result.succeeded
    assert result.cost == math.inf
    assert "simulation diverged" in result.error


@pytest.mark.parametrize("output", [
    float("nan"),
    float("inf"),
    "not a number",
    (1.0, 2.0, 3.0),
    {"norm": 1.0},
    None,
])
def test_invalid_outputs_raise_evaluation_failure(output):
    with pytest.raises(EvaluationFailure):
        _parse_cost_output(output)


@pytest.mark.parametrize("output", [float("nan"), None, {"norm": 1.0}])
def test_invalid_outputs_become_failed_results(output):
    result = EvaluatorGateway(lambda x: output).evaluate([0.0])
    assert result.failed
    assert result.cost == math.inf


def test_requires_callable():
    with pytest.raises(TypeError):
        EvaluatorGateway(42)


@settings(max_examples=100)
@given(st.floats(allow_nan=False, allow_infinity=False))
def test_property_finite_costs_pass_through(value):
    result = EvaluatorGateway(lambda x: value).evaluate([0.0])
    assert result.succeeded
    assert result.cost == value
