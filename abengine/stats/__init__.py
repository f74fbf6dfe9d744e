"""ABEngine Statistics Subsystem."""

from .analysis import StatisticsEngine, erf, normal_cdf
from .sampling import (
    PosteriorSampler,
    beta_sample,
    box_muller,
    gamma_sample,
    normal_sample,
    thompson_sample,
)

__all__ = [
    "StatisticsEngine",
    "erf",
    "normal_cdf",
    "PosteriorSampler",
    "beta_sample",
    "box_muller",
    "gamma_sample",
    "normal_sample",
    "thompson_sample",
]
