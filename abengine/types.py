"""
ABEngine Core Types

Data model for the experimentation engine: experiments and their
variants, eligibility segments, user assignments, per-variant result
counters and the significance / health summaries derived from them.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ExperimentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class EventKind(str, Enum):
    """Outcome events that mutate a variant's counters."""

    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"
    BOUNCE = "bounce"


class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


WILDCARD_SEGMENT = "all"


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SegmentRule:
    """A single predicate over one user-context property."""

    property: str
    operator: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"property": self.property, "operator": self.operator, "value": self.value}


@dataclass
class Segment:
    """Eligibility filter; a user matches iff every rule matches."""

    id: str
    rules: List[SegmentRule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "rules": [r.to_dict() for r in self.rules]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Segment":
        return cls(
            id=data["id"],
            rules=[
                SegmentRule(
                    property=r["property"],
                    operator=r["operator"],
                    value=r.get("value"),
                )
                for r in data.get("rules", [])
            ],
        )


# ---------------------------------------------------------------------------
# Variants and results
# ---------------------------------------------------------------------------

@dataclass
class Variant:
    """One treatment arm. The payload is opaque to the engine."""

    id: str
    name: str = ""
    weight: float = 1.0
    normalized_weight: float = 0.0
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "normalized_weight": self.normalized_weight,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            weight=float(data.get("weight", 1.0)),
            normalized_weight=float(data.get("normalized_weight", 0.0)),
            payload=data.get("payload"),
        )


@dataclass
class VariantResult:
    """Outcome counters for one variant.

    ``conversion_rate`` is always derived from ``conversions / sessions``.
    Mutation goes through :class:`abengine.metrics.MetricsAggregator`, which
    holds ``lock`` while updating.
    """

    sessions: int = 0
    conversions: int = 0
    engagement_time: float = 0.0
    bounce_rate: float = 0.0
    revenue: float = 0.0
    last_event_at: Optional[datetime] = None
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False,
    )

    @property
    def conversion_rate(self) -> float:
        if self.sessions <= 0:
            return 0.0
        return self.conversions / self.sessions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": self.sessions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "engagement_time": self.engagement_time,
            "bounce_rate": self.bounce_rate,
            "revenue": self.revenue,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantResult":
        last = data.get("last_event_at")
        return cls(
            sessions=int(data.get("sessions", 0)),
            conversions=int(data.get("conversions", 0)),
            engagement_time=float(data.get("engagement_time", 0.0)),
            bounce_rate=float(data.get("bounce_rate", 0.0)),
            revenue=float(data.get("revenue", 0.0)),
            last_event_at=datetime.fromisoformat(last) if last else None,
        )


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class SignificanceResult:
    """Two-proportion test of one variant against control.

    ``lift`` and ``lift_range`` are ``None`` when the control conversion
    rate is zero, in which case ``insufficient_data`` is set.
    """

    p_value: float = 1.0
    lift: Optional[float] = None
    lift_range: Optional[Tuple[float, float]] = None
    significant: bool = False
    z_score: float = 0.0
    insufficient_data: bool = True
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "p_value": self.p_value,
            "lift": self.lift,
            "lift_range": list(self.lift_range) if self.lift_range else None,
            "significant": self.significant,
            "z_score": self.z_score,
            "insufficient_data": self.insufficient_data,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignificanceResult":
        lr = data.get("lift_range")
        return cls(
            p_value=float(data.get("p_value", 1.0)),
            lift=data.get("lift"),
            lift_range=(float(lr[0]), float(lr[1])) if lr else None,
            significant=bool(data.get("significant", False)),
            z_score=float(data.get("z_score", 0.0)),
            insufficient_data=bool(data.get("insufficient_data", True)),
            detail=data.get("detail", ""),
        )


@dataclass
class SignificanceSummary:
    """Experiment-level roll-up of the pairwise tests against control."""

    significant: bool = False
    confidence_level: float = 0.0
    lift_range: Optional[Tuple[float, float]] = None
    best_variant_id: Optional[str] = None
    results: Dict[str, SignificanceResult] = field(default_factory=dict)
    computed_at: Optional[datetime] = None

    @property
    def significant_variants(self) -> List[str]:
        return [vid for vid, r in self.results.items() if r.significant]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "significant": self.significant,
            "confidence_level": self.confidence_level,
            "lift_range": list(self.lift_range) if self.lift_range else None,
            "best_variant_id": self.best_variant_id,
            "results": {vid: r.to_dict() for vid, r in self.results.items()},
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignificanceSummary":
        lr = data.get("lift_range")
        computed = data.get("computed_at")
        return cls(
            significant=bool(data.get("significant", False)),
            confidence_level=float(data.get("confidence_level", 0.0)),
            lift_range=(float(lr[0]), float(lr[1])) if lr else None,
            best_variant_id=data.get("best_variant_id"),
            results={
                vid: SignificanceResult.from_dict(r)
                for vid, r in data.get("results", {}).items()
            },
            computed_at=datetime.fromisoformat(computed) if computed else None,
        )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@dataclass
class HealthReport:
    score: float = 1.0
    issues: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "issues": list(self.issues)}


@dataclass
class PerformanceSnapshot:
    """Periodic summary of an active experiment's data quality."""

    total_sessions: int = 0
    average_conversion_rate: float = 0.0
    best_variant_id: Optional[str] = None
    best_conversion_rate: float = 0.0
    confidence_level: float = 0.0
    runtime_seconds: float = 0.0
    sample_size_adequacy: float = 0.0
    traffic_distribution: float = 0.0
    data_freshness: float = 0.0
    computed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "average_conversion_rate": self.average_conversion_rate,
            "best_variant_id": self.best_variant_id,
            "best_conversion_rate": self.best_conversion_rate,
            "confidence_level": self.confidence_level,
            "runtime_seconds": self.runtime_seconds,
            "sample_size_adequacy": self.sample_size_adequacy,
            "traffic_distribution": self.traffic_distribution,
            "data_freshness": self.data_freshness,
            "computed_at": self.computed_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Experiments and assignments
# ---------------------------------------------------------------------------

@dataclass
class Experiment:
    """A named test with one or more variants competing for traffic.

    The first variant is the control.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    hypothesis: str = ""
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    variants: List[Variant] = field(default_factory=list)
    segments: List[str] = field(default_factory=lambda: [WILDCARD_SEGMENT])
    metrics: List[str] = field(default_factory=lambda: ["conversion", "engagement"])
    traffic_allocation: Dict[str, float] = field(default_factory=dict)
    results: Dict[str, VariantResult] = field(default_factory=dict)
    significance: SignificanceSummary = field(default_factory=SignificanceSummary)
    winner: Optional[str] = None
    decided_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    bandit_active: bool = False
    performance: Optional[PerformanceSnapshot] = None

    @property
    def control(self) -> Variant:
        return self.variants[0]

    @property
    def total_sessions(self) -> int:
        return sum(r.sessions for r in self.results.values())

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None

    def runtime_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        return max((now - self.start_time).total_seconds(), 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "hypothesis": self.hypothesis,
            "description": self.description,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "variants": [v.to_dict() for v in self.variants],
            "segments": list(self.segments),
            "metrics": list(self.metrics),
            "traffic_allocation": dict(self.traffic_allocation),
            "significance": self.significance.to_dict(),
            "winner": self.winner,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "pause_reason": self.pause_reason,
            "bandit_active": self.bandit_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        """Rebuild an experiment; ``results`` are attached separately."""

        def _dt(key: str) -> Optional[datetime]:
            raw = data.get(key)
            return datetime.fromisoformat(raw) if raw else None

        return cls(
            id=data["id"],
            name=data.get("name", ""),
            hypothesis=data.get("hypothesis", ""),
            description=data.get("description", ""),
            status=ExperimentStatus(data.get("status", ExperimentStatus.ACTIVE.value)),
            start_time=_dt("start_time") or datetime.now(),
            end_time=_dt("end_time"),
            variants=[Variant.from_dict(v) for v in data.get("variants", [])],
            segments=list(data.get("segments", [WILDCARD_SEGMENT])),
            metrics=list(data.get("metrics", ["conversion", "engagement"])),
            traffic_allocation={
                k: float(v) for k, v in data.get("traffic_allocation", {}).items()
            },
            significance=SignificanceSummary.from_dict(data.get("significance", {})),
            winner=data.get("winner"),
            decided_at=_dt("decided_at"),
            completed_at=_dt("completed_at"),
            pause_reason=data.get("pause_reason"),
            bandit_active=bool(data.get("bandit_active", False)),
        )


@dataclass(frozen=True)
class Assignment:
    """Immutable mapping of one user to one variant within one experiment."""

    experiment_id: str
    user_id: str
    variant_id: str
    assignment_time: datetime = field(default_factory=datetime.now)
    user_context: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return assignment_key(self.experiment_id, self.user_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "assignment_time": self.assignment_time.isoformat(),
            "user_context": dict(self.user_context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        return cls(
            experiment_id=data["experiment_id"],
            user_id=data["user_id"],
            variant_id=data["variant_id"],
            assignment_time=datetime.fromisoformat(data["assignment_time"]),
            user_context=dict(data.get("user_context", {})),
        )


def assignment_key(experiment_id: str, user_id: str) -> str:
    return f"{experiment_id}:{user_id}"
