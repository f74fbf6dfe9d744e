"""
ABEngine - A/B/n Experimentation Engine

Deterministic user bucketing, segment targeting, per-variant outcome
tracking, two-proportion significance testing, Thompson-sampling traffic
reallocation, health monitoring with automatic pausing, and winner
declaration, behind a single ExperimentRegistry.
"""

__version__ = "1.0.0"
__author__ = "ABEngine Team"

from abengine.config import EngineConfig
from abengine.errors import AbEngineError, ConfigurationError, PersistenceError
from abengine.registry import ExperimentRegistry, ExperimentRun
from abengine.types import (
    Assignment,
    EventKind,
    Experiment,
    ExperimentStatus,
    Segment,
    SegmentRule,
    Variant,
    VariantResult,
)

__all__ = [
    "ExperimentRegistry",
    "ExperimentRun",
    "EngineConfig",
    "AbEngineError",
    "ConfigurationError",
    "PersistenceError",
    "Assignment",
    "EventKind",
    "Experiment",
    "ExperimentStatus",
    "Segment",
    "SegmentRule",
    "Variant",
    "VariantResult",
    "__version__",
]
