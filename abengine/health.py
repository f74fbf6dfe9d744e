"""
ABEngine Health Monitoring and Winner Policy

HealthMonitor scores an experiment's data quality and flags conditions
that should pause it: lopsided traffic, outlying conversion rates, and
overrunning the configured duration. WinnerPolicy decides when an
experiment has run long enough, with enough data and a significant
result, to be frozen with a winner.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

import numpy as np
import structlog

from abengine.config import HealthConfig, StatisticsConfig, WinnerConfig
from abengine.types import (
    Experiment,
    ExperimentStatus,
    HealthReport,
    PerformanceSnapshot,
)

logger = structlog.get_logger(__name__)


class HealthMonitor:
    """Scores experiment health in [0, 1]."""

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        statistics: Optional[StatisticsConfig] = None,
    ):
        self._config = config or HealthConfig()
        self._statistics = statistics or StatisticsConfig()

    def assess(self, experiment: Experiment, now: Optional[datetime] = None) -> HealthReport:
        now = now or datetime.now()
        cfg = self._config
        report = HealthReport()
        score = 1.0

        results = [experiment.results[v.id] for v in experiment.variants if v.id in experiment.results]
        sessions = np.array([r.sessions for r in results], dtype=float)
        total = float(sessions.sum()) if len(sessions) else 0.0

        if len(results) >= 2 and total >= cfg.min_total_sessions:
            max_sessions = sessions.max()
            if max_sessions > 0:
                ratio = float(sessions.min() / max_sessions)
                if ratio < cfg.uneven_traffic_ratio:
                    severity = 1.0 - ratio / cfg.uneven_traffic_ratio
                    score -= cfg.uneven_traffic_penalty + cfg.uneven_traffic_severity_penalty * severity
                    report.issues.append(
                        f"Uneven traffic distribution (min/max sessions ratio {ratio:.2f})"
                    )

            rates = np.array([r.conversion_rate for r in results])
            mean_rate = float(rates.mean())
            for variant, rate in zip(experiment.variants, rates):
                if abs(rate - mean_rate) > mean_rate * cfg.outlier_factor:
                    score -= cfg.outlier_penalty
                    report.issues.append(f"Variant {variant.id} has anomalous conversion rate")

        if experiment.end_time is not None and now > experiment.end_time:
            score -= cfg.overdue_penalty
            report.issues.append("Experiment running too long")

        report.score = max(0.0, min(1.0, score))
        return report

    def should_pause(self, report: HealthReport) -> bool:
        return report.score < self._config.pause_threshold

    def needs_review(self, report: HealthReport) -> bool:
        return report.score < self._config.review_threshold

    def performance(self, experiment: Experiment, now: Optional[datetime] = None) -> PerformanceSnapshot:
        """Summarise data quality for the periodic performance refresh."""
        now = now or datetime.now()
        results = [experiment.results.get(v.id) for v in experiment.variants]
        results = [r for r in results if r is not None]
        n_variants = max(len(experiment.variants), 1)

        sessions = np.array([r.sessions for r in results], dtype=float)
        rates = np.array([r.conversion_rate for r in results], dtype=float)
        total = int(sessions.sum()) if len(sessions) else 0

        best_id, best_rate = None, 0.0
        for variant in experiment.variants:
            result = experiment.results.get(variant.id)
            if result is not None and result.conversion_rate > best_rate:
                best_id, best_rate = variant.id, result.conversion_rate

        required = self._statistics.minimum_sample_size * n_variants
        adequacy = 1.0 if total >= required else total / required

        distribution = 0.0
        if total > 0:
            expected = total / n_variants
            variance = float(((sessions - expected) ** 2).sum() / n_variants)
            distribution = 1.0 / (1.0 + variance / (expected * expected))

        last_events = [r.last_event_at for r in results if r.last_event_at is not None]
        freshness = 0.0
        if last_events:
            age = max((now - max(last_events)).total_seconds(), 0.0)
            freshness = math.exp(-age / timedelta(days=1).total_seconds())

        return PerformanceSnapshot(
            total_sessions=total,
            average_conversion_rate=float(rates.mean()) if len(rates) else 0.0,
            best_variant_id=best_id,
            best_conversion_rate=best_rate,
            confidence_level=experiment.significance.confidence_level,
            runtime_seconds=experiment.runtime_seconds(now),
            sample_size_adequacy=adequacy,
            traffic_distribution=distribution,
            data_freshness=freshness,
            computed_at=now,
        )


class WinnerPolicy:
    """Decides when to declare a winner and freezes the experiment."""

    def __init__(
        self,
        config: Optional[WinnerConfig] = None,
        statistics: Optional[StatisticsConfig] = None,
    ):
        self._config = config or WinnerConfig()
        self._statistics = statistics or StatisticsConfig()

    @property
    def auto_declare(self) -> bool:
        return self._config.auto_declare

    def should_declare_winner(self, experiment: Experiment, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        if not experiment.significance.significant:
            return False
        if experiment.runtime_seconds(now) < timedelta(days=self._config.minimum_runtime_days).total_seconds():
            return False
        required = self._statistics.minimum_sample_size * len(experiment.variants)
        return experiment.total_sessions >= required

    def declare_winner(self, experiment: Experiment, now: Optional[datetime] = None) -> Optional[str]:
        """Pick the highest raw conversion rate and complete the experiment.

        A decision is final: later calls return the recorded winner
        without touching the experiment.
        """
        if experiment.decided_at is not None:
            return experiment.winner

        now = now or datetime.now()
        best_id, best_rate = None, 0.0
        for variant in experiment.variants:
            result = experiment.results.get(variant.id)
            if result is not None and result.conversion_rate > best_rate:
                best_id, best_rate = variant.id, result.conversion_rate

        experiment.winner = best_id
        experiment.decided_at = now
        experiment.status = ExperimentStatus.COMPLETED
        if experiment.completed_at is None:
            experiment.completed_at = now

        logger.info(
            "winner_declared",
            experiment_id=experiment.id,
            winner=best_id,
            conversion_rate=best_rate,
            significant_variants=experiment.significance.significant_variants,
        )
        return best_id
