"""
Tests for the configuration record.

Testing Framework: pytest + Hypothesis
"""

import json

import numpy as np
import pytest
from hypothesis import given, strategies as st, settings

from abc_optimizer.config import (
    ABCConfig,
    ABCError,
    ConfigurationError,
    load_config,
)


def make_config(**overrides):
    options = dict(
        lower_bounds=[-1.0, -1.0],
        upper_bounds=[1.0, 1.0],
        population_size=10,
        n_onlooker=5,
        limit=5,
    )
    options.update(overrides)
    return ABCConfig(**options)


# =============================================================================
# Validation
# =============================================================================

def test_defaults_validate():
    config = make_config().validate()
    assert config.dimensions == 2
    assert config.effective_batch_size == 1
    lower, upper = config.bounds
    assert lower.tolist() == [-1.0, -1.0]
    assert upper.tolist() == [1.0, 1.0]


@pytest.mark.parametrize("overrides", [
    dict(population_size=1),
    dict(n_onlooker=0),
    dict(n_onlooker=11),
    dict(limit=0),
    dict(acceleration=0.0),
    dict(acceleration=-1.5),
    dict(max_iterations=-1),
    dict(checkpoint_interval=0),
    dict(num_workers=0),
    dict(batch_size=0),
    dict(evaluation_timeout=0.0),
    dict(fast_tier_quota_mb=-1.0),
    dict(max_checkpoints=0),
    dict(lower_bounds=[], upper_bounds=[]),
    dict(lower_bounds=[0.0], upper_bounds=[1.0, 2.0]),
    dict(lower_bounds=[2.0, 0.0], upper_bounds=[1.0, 1.0]),
    dict(lower_bounds=[float("-inf"), 0.0], upper_bounds=[1.0, 1.0]),
])
def test_invalid_parameters_raise(overrides):
    with pytest.raises(ConfigurationError):
        make_config(**overrides).validate()


@pytest.mark.parametrize("overrides", [
    dict(limit="3"),
    dict(population_size=5.5),
    dict(population_size=True),
    dict(n_onlooker=None),
    dict(max_iterations=10.0),
    dict(batch_size="4"),
    dict(seed=1.5),
    dict(acceleration="1.5"),
    dict(acceleration=None),
    dict(evaluation_timeout="30"),
    dict(fast_tier_quota_mb=False),
    dict(verbose="yes"),
    dict(base_dir=42),
])
def test_wrongly_typed_parameters_raise(overrides):
    with pytest.raises(ConfigurationError):
        make_config(**overrides).validate()


@pytest.mark.parametrize("overrides", [
    dict(limit="3"),
    dict(population_size=5.5),
    dict(lower_bounds=["low", 0.0]),
    dict(upper_bounds=7),
])
def test_from_dict_reports_type_errors_as_configuration_errors(overrides):
    options = make_config().to_dict()
    options.update(overrides)
    with pytest.raises(ConfigurationError):
        ABCConfig.from_dict(options)


def test_numpy_scalars_are_accepted():
    make_config(population_size=np.int64(10), acceleration=np.float64(1.5)).validate()


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ConfigurationError, ABCError)


def test_equal_bounds_are_allowed():
    make_config(lower_bounds=[0.5, 0.0], upper_bounds=[0.5, 1.0]).validate()


@settings(max_examples=100)
@given(
    n=st.integers(min_value=2, max_value=500),
    data=st.data(),
)
def test_property_valid_onlooker_counts_accepted(n, data):
    n_onlooker = data.draw(st.integers(min_value=1, max_value=n))
    config = make_config(population_size=n, n_onlooker=n_onlooker).validate()
    assert 1 <= config.n_onlooker <= config.population_size


# =============================================================================
# Dictionaries and files
# =============================================================================

def test_dict_round_trip():
    config = make_config(seed=7, batch_size=4, num_workers=2)
    restored = ABCConfig.from_dict(config.to_dict())
    assert restored == config


def test_from_dict_rejects_unknown_keys():
    options = make_config().to_dict()
    options["swarm_size"] = 3
    with pytest.raises(ConfigurationError, match="swarm_size"):
        ABCConfig.from_dict(options)


def test_from_dict_validates():
    options = make_config().to_dict()
    options["limit"] = 0
    with pytest.raises(ConfigurationError):
        ABCConfig.from_dict(options)


def test_load_config_nested_and_flat(tmp_path):
    options = make_config(max_iterations=12).to_dict()

    flat = tmp_path / "flat.json"
    flat.write_text(json.dumps(options))
    assert load_config(str(flat)).max_iterations == 12

    nested = tmp_path / "nested.json"
    nested.write_text(json.dumps({"abc": options}))
    assert load_config(str(nested)).max_iterations == 12


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "missing.json"))


def test_load_config_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(str(path))
