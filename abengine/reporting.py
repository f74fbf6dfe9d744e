"""
ABEngine Reporting

Read-only summaries of experiment state: per-variant statistics,
significance against control, plain-language insights and
recommendations, plus a text rendering for terminals and logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from abengine.config import HealthConfig, StatisticsConfig
from abengine.stats.analysis import StatisticsEngine
from abengine.types import (
    Experiment,
    HealthReport,
    SignificanceResult,
    VariantResult,
)

LIFT_INSIGHT_BAND = 10.0


@dataclass
class VariantReport:
    id: str
    name: str
    is_control: bool
    sessions: int
    conversions: int
    conversion_rate: float
    engagement_time: float
    bounce_rate: float
    revenue: float
    traffic_allocation: float
    lift_percent: Optional[float] = None
    significance: Optional[SignificanceResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "is_control": self.is_control,
            "sessions": self.sessions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "engagement_time": self.engagement_time,
            "bounce_rate": self.bounce_rate,
            "revenue": self.revenue,
            "traffic_allocation": self.traffic_allocation,
            "lift_percent": self.lift_percent,
            "significance": self.significance.to_dict() if self.significance else None,
        }


@dataclass
class Report:
    experiment: Dict[str, Any]
    results: Dict[str, Any]
    variants: List[VariantReport] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    health: HealthReport = field(default_factory=HealthReport)
    sessions_needed: int = 0
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def insufficient_data(self) -> bool:
        return self.sessions_needed > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": dict(self.experiment),
            "results": dict(self.results),
            "variants": [v.to_dict() for v in self.variants],
            "insights": list(self.insights),
            "recommendations": list(self.recommendations),
            "health": self.health.to_dict(),
            "sessions_needed": self.sessions_needed,
            "insufficient_data": self.insufficient_data,
            "generated_at": self.generated_at.isoformat(),
        }

    def to_text(self) -> str:
        exp = self.experiment
        res = self.results
        lines = [
            f"Experiment: {exp['name']} ({exp['id']})",
            f"Status: {exp['status']}   Runtime: {exp['runtime_seconds'] / 86400:.1f} days",
        ]
        if exp.get("hypothesis"):
            lines.append(f"Hypothesis: {exp['hypothesis']}")
        lines.append(
            f"Sessions: {res['total_sessions']}   Significant: {'yes' if res['statistical_significance'] else 'no'}"
            f"   Confidence: {res['confidence_level'] * 100:.1f}%   Winner: {res['winner'] or '-'}"
        )
        lines.append("")
        lines.append(f"{'variant':<20} {'sessions':>9} {'conv':>7} {'rate':>8} {'lift':>9} {'p-value':>9} {'traffic':>8}")
        for v in self.variants:
            lift = "control" if v.is_control else (
                f"{v.lift_percent:+.1f}%" if v.lift_percent is not None else "n/a"
            )
            p_value = f"{v.significance.p_value:.4f}" if v.significance else "-"
            lines.append(
                f"{v.id[:20]:<20} {v.sessions:>9} {v.conversions:>7} "
                f"{v.conversion_rate * 100:>7.2f}% {lift:>9} {p_value:>9} {v.traffic_allocation * 100:>7.1f}%"
            )
        lines.append("")
        lines.append(f"Health: {self.health.score:.2f}")
        for issue in self.health.issues:
            lines.append(f"  ! {issue}")
        if self.insights:
            lines.append("Insights:")
            lines.extend(f"  - {i}" for i in self.insights)
        if self.recommendations:
            lines.append("Recommendations:")
            lines.extend(f"  - {r}" for r in self.recommendations)
        return "\n".join(lines)


def lift_percent(variant: VariantResult, control: VariantResult) -> Optional[float]:
    """Relative conversion-rate change in percent; None if control is zero."""
    if control.conversion_rate == 0:
        return None
    return (variant.conversion_rate - control.conversion_rate) / control.conversion_rate * 100


class ReportGenerator:
    """Builds reports from experiment state without mutating it."""

    def __init__(
        self,
        statistics: Optional[StatisticsConfig] = None,
        health: Optional[HealthConfig] = None,
    ):
        self._statistics = statistics or StatisticsConfig()
        self._health = health or HealthConfig()

    def generate(
        self,
        experiment: Experiment,
        health: Optional[HealthReport] = None,
        now: Optional[datetime] = None,
    ) -> Report:
        now = now or datetime.now()
        health = health or HealthReport()
        control = experiment.results.get(experiment.control.id) or VariantResult()
        total = experiment.total_sessions
        required = self._statistics.minimum_sample_size * len(experiment.variants)

        report = Report(
            experiment={
                "id": experiment.id,
                "name": experiment.name,
                "status": experiment.status.value,
                "hypothesis": experiment.hypothesis,
                "start_time": experiment.start_time.isoformat(),
                "end_time": experiment.end_time.isoformat() if experiment.end_time else None,
                "runtime_seconds": experiment.runtime_seconds(now),
                "pause_reason": experiment.pause_reason,
            },
            results={
                "total_sessions": total,
                "statistical_significance": experiment.significance.significant,
                "confidence_level": experiment.significance.confidence_level,
                "lift_range": experiment.significance.lift_range,
                "significant_variants": experiment.significance.significant_variants,
                "winner": experiment.winner,
            },
            health=health,
            sessions_needed=max(required - total, 0),
            generated_at=now,
        )

        for i, variant in enumerate(experiment.variants):
            result = experiment.results.get(variant.id) or VariantResult()
            is_control = i == 0
            report.variants.append(VariantReport(
                id=variant.id,
                name=variant.name,
                is_control=is_control,
                sessions=result.sessions,
                conversions=result.conversions,
                conversion_rate=result.conversion_rate,
                engagement_time=result.engagement_time,
                bounce_rate=result.bounce_rate,
                revenue=result.revenue,
                traffic_allocation=experiment.traffic_allocation.get(variant.id, variant.normalized_weight),
                lift_percent=None if is_control else lift_percent(result, control),
                significance=None if is_control else StatisticsEngine.significance(
                    control,
                    result,
                    self._statistics.confidence_level,
                    self._statistics.z_critical,
                ),
            ))

        report.insights = self._insights(experiment, report)
        report.recommendations = self._recommendations(experiment, report)
        return report

    def _insights(self, experiment: Experiment, report: Report) -> List[str]:
        insights: List[str] = []
        control = report.variants[0]
        treatments = report.variants[1:]

        if treatments:
            best = max(treatments, key=lambda v: v.conversion_rate)
            if control.conversion_rate == 0:
                if best.conversion_rate > 0:
                    insights.append(
                        f"Control has no conversions yet; {best.id} leads at "
                        f"{best.conversion_rate * 100:.2f}% but lift is undefined"
                    )
            else:
                lift = (best.conversion_rate - control.conversion_rate) / control.conversion_rate * 100
                if lift > LIFT_INSIGHT_BAND:
                    insights.append(f"The best variant shows a significant {lift:.1f}% improvement over control")
                elif lift < -LIFT_INSIGHT_BAND:
                    insights.append(f"The best treatment is underperforming control by {abs(lift):.1f}%")
                else:
                    insights.append(f"Variants are performing similarly to control ({lift:.1f}% difference)")

        if report.sessions_needed > 0:
            insights.append(f"Need {report.sessions_needed} more sessions for reliable results")

        winner = experiment.winner
        if (
            winner is not None
            and winner != experiment.control.id
            and winner not in experiment.significance.significant_variants
        ):
            insights.append(
                f"Winner {winner} was chosen by raw conversion rate and was not "
                f"individually significant against control"
            )
        return insights

    def _recommendations(self, experiment: Experiment, report: Report) -> List[str]:
        recommendations: List[str] = []
        total = report.results["total_sessions"]

        if experiment.significance.significant and experiment.winner:
            recommendations.append(f"Implement the winning variant: {experiment.winner}")
        elif total > self._statistics.minimum_sample_size * 2:
            recommendations.append("Consider running the experiment longer or increasing traffic allocation")
        else:
            recommendations.append("Continue running the experiment to gather more data")

        if report.health.score < self._health.review_threshold:
            recommendations.append("Review experiment setup - data quality issues detected")
        if experiment.pause_reason:
            recommendations.append(f"Resume once resolved: {experiment.pause_reason}")
        return recommendations
