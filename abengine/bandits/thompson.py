"""
ABEngine Thompson Sampling Optimizer

Rewrites an experiment's traffic allocation from one posterior draw per
variant (Beta-Bernoulli). Variants are ranked by their draw and weighted
by 1 / rank, then clamped to an exploration floor so that no arm ever
drops to zero traffic.
"""

from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np
import structlog

from abengine.config import BanditConfig
from abengine.stats.sampling import PosteriorSampler
from abengine.types import Experiment, ExperimentStatus, VariantResult

logger = structlog.get_logger(__name__)


def rank_weights(samples: Dict[str, float]) -> Dict[str, float]:
    """Weight each arm by 1 / rank of its sample (rank 1 = highest)."""
    ranked = sorted(samples, key=samples.get, reverse=True)  # type: ignore[arg-type]
    raw = np.array([1.0 / (i + 1) for i in range(len(ranked))])
    raw = raw / raw.sum()
    return {arm_id: float(w) for arm_id, w in zip(ranked, raw)}


def apply_floor(weights: Dict[str, float], floor: float) -> Dict[str, float]:
    """Clamp every weight to at least ``floor`` and renormalise to 1.

    Arms that fall under the floor are pinned to it and the remaining
    mass is redistributed over the others in proportion to their weight,
    repeating until no arm is below the floor.
    """
    ids: List[str] = list(weights)
    n = len(ids)
    if n == 0:
        return {}
    if floor * n >= 1.0:
        return {arm_id: 1.0 / n for arm_id in ids}

    w = np.array([max(weights[i], 0.0) for i in ids], dtype=float)
    if w.sum() <= 0:
        w = np.ones(n)
    w = w / w.sum()

    pinned = np.zeros(n, dtype=bool)
    while True:
        free = ~pinned
        remaining = 1.0 - floor * pinned.sum()
        alloc = np.where(pinned, floor, w * remaining / w[free].sum())
        below = free & (alloc < floor)
        if not below.any():
            break
        pinned |= below

    return {arm_id: float(a) for arm_id, a in zip(ids, alloc)}


class BanditOptimizer:
    """Thompson-sampling traffic optimizer for active experiments."""

    def __init__(
        self,
        config: Optional[BanditConfig] = None,
        sampler: Optional[PosteriorSampler] = None,
    ):
        self._config = config or BanditConfig()
        self._sampler = sampler or PosteriorSampler()
        self.total_reallocations = 0

    @property
    def floor(self) -> float:
        return self._config.allocation_floor

    def should_run(self, experiment: Experiment) -> bool:
        return (
            self._config.enabled
            and experiment.status == ExperimentStatus.ACTIVE
            and len(experiment.variants) >= 2
            and experiment.total_sessions > self._config.min_total_sessions
        )

    def sample(self, experiment: Experiment) -> Dict[str, float]:
        """Draw one posterior sample per variant."""
        return {
            v.id: self._sampler.thompson_sample(experiment.results.get(v.id) or VariantResult())
            for v in experiment.variants
        }

    def reallocate(self, experiment: Experiment) -> Dict[str, float]:
        """Recompute and install the experiment's traffic allocation.

        Returns the allocation in effect afterwards; experiments below the
        session threshold keep their current allocation.
        """
        if not self.should_run(experiment):
            return dict(experiment.traffic_allocation)

        samples = self.sample(experiment)
        allocation = apply_floor(rank_weights(samples), self.floor)
        # Keep variant order for cumulative bucketing
        experiment.traffic_allocation = {v.id: allocation[v.id] for v in experiment.variants}
        experiment.bandit_active = True
        self.total_reallocations += 1

        logger.info(
            "traffic_reallocated",
            experiment_id=experiment.id,
            allocation=experiment.traffic_allocation,
            total_sessions=experiment.total_sessions,
        )
        return dict(experiment.traffic_allocation)

    def get_stats(self) -> Dict[str, float]:
        return {
            "total_reallocations": self.total_reallocations,
            "allocation_floor": self.floor,
            "min_total_sessions": self._config.min_total_sessions,
        }
