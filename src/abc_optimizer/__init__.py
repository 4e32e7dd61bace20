"""
Artificial Bee Colony (ABC) optimizer.

This module provides a derivative-free, population-based minimizer with
parallel cost evaluation, crash-safe checkpointing and a memory-bounded
history cache, following the same organizational pattern as the other
optimizers of the project.
"""

from .colony import (
    ArtificialBeeColony,
    EngineState,
    selection_probabilities,
    roulette_wheel_selection,
)
from .config import ABCConfig, ABCError, ConfigurationError, load_config
from .data_structures import (
    FAILED_COST,
    Candidate,
    EvaluationResult,
    ConvergenceRecord,
    PopulationRecord,
    OptimizationSnapshot,
    RollingBuffer,
)
from .evaluator import EvaluatorGateway, EvaluationFailure
from .multiprocessing_eval import ParallelDispatcher
from .checkpoint import CheckpointStore, CorruptCheckpoint
from .cache import TieredCache, CacheIOFailure
from .history import summarize_history

__all__ = [
    'ArtificialBeeColony',
    'EngineState',
    'selection_probabilities',
    'roulette_wheel_selection',
    'ABCConfig',
    'ABCError',
    'ConfigurationError',
    'load_config',
    'FAILED_COST',
    'Candidate',
    'EvaluationResult',
    'ConvergenceRecord',
    'PopulationRecord',
    'OptimizationSnapshot',
    'RollingBuffer',
    'EvaluatorGateway',
    'EvaluationFailure',
    'ParallelDispatcher',
    'CheckpointStore',
    'CorruptCheckpoint',
    'TieredCache',
    'CacheIOFailure',
    'summarize_history',
]
