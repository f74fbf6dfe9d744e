"""
ABEngine Posterior Sampling

Random variate generators used by Thompson Sampling:
- Normal(0, 1) via the Box-Muller transform
- Gamma(shape, scale) via Marsaglia & Tsang (2000)
- Beta(a, b) as a ratio of two Gamma variates

Every function takes its uniform source explicitly, so a seeded
``random.Random`` makes the draws reproducible.
"""

from __future__ import annotations

import math
import random
from typing import Callable, Optional, Protocol, Tuple

from abengine.types import VariantResult


class UniformSource(Protocol):
    def random(self) -> float: ...


def _open_uniform(rng: UniformSource) -> float:
    """Uniform on (0, 1], safe to pass to log()."""
    return 1.0 - rng.random()


def box_muller(rng: UniformSource) -> Tuple[float, float]:
    """Return two independent standard normal variates."""
    u1 = _open_uniform(rng)
    u2 = rng.random()
    r = math.sqrt(-2.0 * math.log(u1))
    theta = 2.0 * math.pi * u2
    return r * math.cos(theta), r * math.sin(theta)


def normal_sample(rng: UniformSource) -> float:
    return box_muller(rng)[0]


def gamma_sample(
    shape: float,
    rng: UniformSource,
    scale: float = 1.0,
    normal: Optional[Callable[[], float]] = None,
) -> float:
    """Marsaglia-Tsang Gamma variate.

    Shapes below 1 use the boost ``Gamma(a) = Gamma(a + 1) * U**(1/a)``.
    """
    if shape <= 0:
        raise ValueError("shape must be positive")
    draw_normal = normal or (lambda: normal_sample(rng))

    if shape < 1.0:
        boost = rng.random() ** (1.0 / shape)
        return gamma_sample(shape + 1.0, rng, scale, draw_normal) * boost

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    while True:
        x = draw_normal()
        v = 1.0 + c * x
        if v <= 0:
            continue
        v = v * v * v
        u = _open_uniform(rng)
        if u < 1.0 - 0.0331 * x ** 4:
            return d * v * scale
        if math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v * scale


def beta_sample(
    alpha: float,
    beta: float,
    rng: UniformSource,
    normal: Optional[Callable[[], float]] = None,
) -> float:
    g1 = gamma_sample(alpha, rng, normal=normal)
    g2 = gamma_sample(beta, rng, normal=normal)
    total = g1 + g2
    if total <= 0:
        return 0.5
    return g1 / total


def posterior_params(result: VariantResult) -> Tuple[float, float]:
    """Beta posterior of the conversion rate under a uniform prior."""
    conversions = max(result.conversions, 0)
    failures = max(result.sessions - conversions, 0)
    return conversions + 1.0, failures + 1.0


class PosteriorSampler:
    """Thompson sampler with a reusable spare normal variate."""

    def __init__(self, rng: Optional[UniformSource] = None):
        self._rng = rng or random.Random()
        self._spare: Optional[float] = None

    def normal(self) -> float:
        if self._spare is not None:
            value, self._spare = self._spare, None
            return value
        z0, z1 = box_muller(self._rng)
        self._spare = z1
        return z0

    def gamma(self, shape: float, scale: float = 1.0) -> float:
        return gamma_sample(shape, self._rng, scale, normal=self.normal)

    def beta(self, alpha: float, beta: float) -> float:
        return beta_sample(alpha, beta, self._rng, normal=self.normal)

    def thompson_sample(self, result: VariantResult) -> float:
        alpha, beta = posterior_params(result)
        return self.beta(alpha, beta)


def thompson_sample(result: VariantResult, rng: Optional[UniformSource] = None) -> float:
    """One draw from Beta(conversions + 1, sessions - conversions + 1)."""
    alpha, beta = posterior_params(result)
    return beta_sample(alpha, beta, rng or random.Random())
