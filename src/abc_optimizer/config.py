"""
Configuration record for the Artificial Bee Colony optimizer.

All algorithm, memory-management and parallelism options live in a single
``ABCConfig`` dataclass that is validated eagerly, before any evaluation runs.
"""

import json
import math
import numbers
import os
from dataclasses import dataclass, field, fields, asdict
from typing import List, Optional

import numpy as np


class ABCError(Exception):
    """Base class for errors raised by the ABC optimizer."""


class ConfigurationError(ABCError, ValueError):
    """Raised when optimizer parameters are invalid."""


_INT_FIELDS = (
    "population_size", "n_onlooker", "limit", "max_iterations",
    "checkpoint_interval", "num_workers", "max_checkpoints",
)
_OPTIONAL_INT_FIELDS = ("batch_size", "seed")
_REAL_FIELDS = ("acceleration", "fast_tier_quota_mb")
_OPTIONAL_REAL_FIELDS = ("evaluation_timeout",)


def _is_int(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _is_real(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


@dataclass
class ABCConfig:
    """
    Complete configuration surface consumed by the optimizer.

    Attributes
    ----------
    population_size : int
        Number of food sources (N)
    n_onlooker : int
        Number of onlooker selections per iteration
    limit : int
        Abandonment limit (L) for the trial counters
    acceleration : float
        Acceleration coefficient (a), phi is drawn from U(-a, a)
    max_iterations : int
        Number of iterations to run
    checkpoint_interval : int
        Iterations between checkpoints
    num_workers : int
        Maximum number of concurrent evaluations
    batch_size : int, optional
        Evaluations per dispatch batch (default: num_workers)
    evaluation_timeout : float, optional
        Wall-clock bound for a single evaluation in seconds
    fast_tier_quota_mb : float
        Memory budget of the fast cache tier
    max_checkpoints : int
        Number of most recent checkpoints kept on disk
    lower_bounds, upper_bounds : list of float
        Search space bounds, one entry per dimension
    base_dir : str, optional
        Directory for checkpoints and slow-tier cache files; None disables
        persistence
    seed : int, optional
        Seed for the random generator
    verbose : bool
        Enable Rich console output
    """

    lower_bounds: List[float] = field(default_factory=list)
    upper_bounds: List[float] = field(default_factory=list)
    population_size: int = 100
    n_onlooker: int = 50
    limit: int = 120
    acceleration: float = 1.5
    max_iterations: int = 200
    checkpoint_interval: int = 2
    num_workers: int = 1
    batch_size: Optional[int] = None
    evaluation_timeout: Optional[float] = None
    fast_tier_quota_mb: float = 1024.0
    max_checkpoints: int = 10
    base_dir: Optional[str] = None
    seed: Optional[int] = None
    verbose: bool = False

    def __post_init__(self):
        try:
            self.lower_bounds = [float(v) for v in self.lower_bounds]
            self.upper_bounds = [float(v) for v in self.upper_bounds]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Bounds must be sequences of numbers: {e}") from e

    @property
    def dimensions(self) -> int:
        return len(self.lower_bounds)

    @property
    def bounds(self):
        """Return (lower, upper) as numpy arrays."""
        return (
            np.asarray(self.lower_bounds, dtype=np.float64),
            np.asarray(self.upper_bounds, dtype=np.float64),
        )

    @property
    def effective_batch_size(self) -> int:
        return self.batch_size if self.batch_size is not None else self.num_workers

    def _check_types(self):
        for name in _INT_FIELDS + _OPTIONAL_INT_FIELDS:
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_INT_FIELDS:
                continue
            if not _is_int(value):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        for name in _REAL_FIELDS + _OPTIONAL_REAL_FIELDS:
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_REAL_FIELDS:
                continue
            if not _is_real(value):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if not isinstance(self.verbose, bool):
            raise ConfigurationError(f"verbose must be a bool, got {self.verbose!r}")
        if self.base_dir is not None and not isinstance(self.base_dir, str):
            raise ConfigurationError(f"base_dir must be a path string, got {self.base_dir!r}")

    def validate(self):
        """
        Check every parameter and raise ConfigurationError on the first problem.

        Returns
        -------
        ABCConfig
            self, so calls can be chained
        """
        self._check_types()

        if self.population_size < 2:
            raise ConfigurationError(
                f"population_size must be >= 2, got {self.population_size}"
            )
        if self.n_onlooker < 1:
            raise ConfigurationError(f"n_onlooker must be >= 1, got {self.n_onlooker}")
        if self.n_onlooker > self.population_size:
            raise ConfigurationError(
                f"n_onlooker ({self.n_onlooker}) cannot exceed "
                f"population_size ({self.population_size})"
            )
        if self.limit < 1:
            raise ConfigurationError(f"limit must be positive, got {self.limit}")
        if not self.acceleration > 0:
            raise ConfigurationError(
                f"acceleration must be positive, got {self.acceleration}"
            )
        if self.max_iterations < 0:
            raise ConfigurationError(
                f"max_iterations must be >= 0, got {self.max_iterations}"
            )
        if self.checkpoint_interval < 1:
            raise ConfigurationError(
                f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}"
            )
        if self.num_workers < 1:
            raise ConfigurationError(f"num_workers must be >= 1, got {self.num_workers}")
        if self.batch_size is not None and self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.evaluation_timeout is not None and not self.evaluation_timeout > 0:
            raise ConfigurationError(
                f"evaluation_timeout must be positive, got {self.evaluation_timeout}"
            )
        if self.fast_tier_quota_mb < 0:
            raise ConfigurationError(
                f"fast_tier_quota_mb must be >= 0, got {self.fast_tier_quota_mb}"
            )
        if self.max_checkpoints < 1:
            raise ConfigurationError(
                f"max_checkpoints must be >= 1, got {self.max_checkpoints}"
            )

        if not self.lower_bounds:
            raise ConfigurationError("bounds cannot be empty")
        if len(self.lower_bounds) != len(self.upper_bounds):
            raise ConfigurationError(
                f"Dimension mismatch: {len(self.lower_bounds)} lower bounds, "
                f"{len(self.upper_bounds)} upper bounds"
            )
        for i, (low, high) in enumerate(zip(self.lower_bounds, self.upper_bounds)):
            if not (math.isfinite(low) and math.isfinite(high)):
                raise ConfigurationError(f"Bounds for dimension {i} must be finite")
            if low > high:
                raise ConfigurationError(
                    f"Invalid bounds for dimension {i}: lower ({low}) > upper ({high})"
                )
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, options: dict) -> "ABCConfig":
        """
        Build a validated config from a plain dictionary.

        Unknown keys raise ConfigurationError.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        try:
            config = cls(**options)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
        return config.validate()


def load_config(config_path: str) -> ABCConfig:
    """
    Load and validate an ABCConfig from a JSON file.

    The file may hold the options at top level or under an ``"abc"`` key.
    """
    if not os.path.exists(config_path):
        raise ConfigurationError(f"Config file not found: {config_path}")
    try:
        with open(config_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {config_path} is not valid JSON: {e}") from e

    if isinstance(data, dict) and "abc" in data:
        data = data["abc"]
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain an object")
    return ABCConfig.from_dict(data)
