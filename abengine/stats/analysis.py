"""
ABEngine Statistical Analysis

Provides the significance math for conversion experiments:
- Error function and standard normal CDF (Abramowitz & Stegun 7.1.26)
- Two-proportion pooled z-test against control
- Relative lift with a normal-approximation confidence interval
- Experiment-level significance roll-up
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from abengine.types import (
    Experiment,
    SignificanceResult,
    SignificanceSummary,
    VariantResult,
)

_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911


def erf(x: float) -> float:
    """Error function approximation, max absolute error ~1.5e-7."""
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


class StatisticsEngine:
    """Stateless significance testing for conversion experiments."""

    @staticmethod
    def significance(
        control: VariantResult,
        variant: VariantResult,
        confidence_level: float = 0.95,
        z_critical: float = 1.96,
    ) -> SignificanceResult:
        """Two-proportion z-test of ``variant`` against ``control``."""
        n1, n2 = control.sessions, variant.sessions
        x1, x2 = control.conversions, variant.conversions

        if n1 <= 0 or n2 <= 0:
            return SignificanceResult(detail="No sessions recorded")

        p1 = x1 / n1
        p2 = x2 / n2
        pooled = (x1 + x2) / (n1 + n2)
        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))

        lift: Optional[float] = None
        lift_range = None
        if p1 > 0:
            lift = (p2 - p1) / p1
            lift_se = math.sqrt(
                max(p1 * (1 - p1), 0.0) / n1 + max(p2 * (1 - p2), 0.0) / n2
            ) / p1
            margin = z_critical * lift_se
            lift_range = (lift - margin, lift + margin)

        if se <= 0 or math.isnan(se):
            return SignificanceResult(
                p_value=1.0,
                lift=lift,
                lift_range=lift_range,
                insufficient_data=lift is None,
                detail="No variance in conversions",
            )

        z = abs(p2 - p1) / se
        p_value = max(0.0, min(1.0, 2 * (1 - normal_cdf(z))))

        return SignificanceResult(
            p_value=p_value,
            lift=lift,
            lift_range=lift_range,
            significant=p_value < (1 - confidence_level),
            z_score=z,
            insufficient_data=lift is None,
            detail="" if lift is not None else "Control conversion rate is zero; lift undefined",
        )

    @classmethod
    def summarize(
        cls,
        experiment: Experiment,
        minimum_sample_size: int = 100,
        confidence_level: float = 0.95,
        z_critical: float = 1.96,
    ) -> SignificanceSummary:
        """Test every treatment against the first variant (control).

        Pairs where either arm has fewer than ``minimum_sample_size``
        sessions are reported as insufficient data and never significant.
        """
        summary = SignificanceSummary(computed_at=datetime.now())
        if len(experiment.variants) < 2:
            return summary

        control = experiment.results.get(experiment.control.id) or VariantResult()
        best_p: Optional[float] = None

        for variant in experiment.variants[1:]:
            result = experiment.results.get(variant.id) or VariantResult()
            if control.sessions < minimum_sample_size or result.sessions < minimum_sample_size:
                summary.results[variant.id] = SignificanceResult(
                    detail=f"Need {minimum_sample_size} sessions per variant",
                )
                continue

            sig = cls.significance(control, result, confidence_level, z_critical)
            summary.results[variant.id] = sig
            summary.confidence_level = max(summary.confidence_level, 1 - sig.p_value)

            if sig.significant and (best_p is None or sig.p_value < best_p):
                best_p = sig.p_value
                summary.significant = True
                summary.best_variant_id = variant.id
                summary.lift_range = sig.lift_range

        return summary
