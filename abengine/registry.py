"""
ABEngine Experiment Registry

The public entry point of the engine. Owns the experiment, segment and
assignment tables, routes tracked events into the metrics aggregator,
keeps significance summaries current, and coordinates the background
maintenance scheduler and snapshot writer.

Construct one registry at process start and pass it to callers:

    registry = ExperimentRegistry(EngineConfig(), store=FileStore("data"))
    registry.load()
    await registry.start()

    exp = registry.create_experiment({
        "name": "Headline test",
        "variants": [{"id": "control"}, {"id": "pain_point"}],
    })
    assignment = registry.assign_user(exp.id, "user-1", {"country": "MX"})
    registry.track_event(exp.id, assignment.variant_id, "exposure")
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from abengine.assignment import AssignmentEngine
from abengine.bandits.thompson import BanditOptimizer
from abengine.config import EngineConfig
from abengine.definitions import ExperimentDefinition, parse_experiment, parse_segment
from abengine.errors import ConfigurationError
from abengine.health import HealthMonitor, WinnerPolicy
from abengine.integrations import (
    NullTelemetrySink,
    TelemetryEvent,
    TelemetrySink,
    VariantRenderer,
)
from abengine.metrics import MetricsAggregator
from abengine.persistence.snapshot import decode_snapshot, encode_snapshot
from abengine.persistence.store import Store
from abengine.persistence.writer import SnapshotWriter
from abengine.reporting import Report, ReportGenerator
from abengine.scheduler import MaintenanceScheduler
from abengine.segments import SegmentMatcher
from abengine.stats.analysis import StatisticsEngine
from abengine.stats.sampling import PosteriorSampler
from abengine.types import (
    Assignment,
    EventKind,
    Experiment,
    ExperimentStatus,
    HealthReport,
    Segment,
    SegmentRule,
    Variant,
    WILDCARD_SEGMENT,
)

logger = structlog.get_logger(__name__)


@dataclass
class ExperimentRun:
    """Result of :meth:`ExperimentRegistry.run_experiment`."""

    experiment: Experiment
    variant: Variant
    assignment: Assignment


class ExperimentRegistry:
    """Experiment lifecycle, assignment, tracking and reporting."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[Store] = None,
        telemetry: Optional[TelemetrySink] = None,
        sampler: Optional[PosteriorSampler] = None,
    ):
        self._config = config or EngineConfig()
        self._experiments: Dict[str, Experiment] = {}
        self._segments: Dict[str, Segment] = {}
        self._create_lock = threading.Lock()
        # Serialises status transitions against significance refreshes
        self._experiment_locks: Dict[str, threading.RLock] = {}

        self._matcher = SegmentMatcher()
        self._assignments = AssignmentEngine(self._matcher, self._segments)
        self._metrics = MetricsAggregator()
        self._bandit = BanditOptimizer(self._config.bandit, sampler)
        self._health = HealthMonitor(self._config.health, self._config.statistics)
        self._winner = WinnerPolicy(self._config.winner, self._config.statistics)
        self._reports = ReportGenerator(self._config.statistics, self._config.health)
        self._telemetry = telemetry or NullTelemetrySink()

        self._store = store
        self._writer = (
            SnapshotWriter(store, self.snapshot, self._config.persistence)
            if store is not None else None
        )
        self._scheduler = MaintenanceScheduler(
            self.run_maintenance,
            self._config.scheduler.interval_seconds,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def scheduler(self) -> MaintenanceScheduler:
        return self._scheduler

    @property
    def writer(self) -> Optional[SnapshotWriter]:
        return self._writer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the maintenance scheduler and the snapshot writer."""
        await self._scheduler.start()
        if self._writer:
            await self._writer.start()
        logger.info("registry_started", experiments=len(self._experiments))

    async def shutdown(self) -> None:
        """Stop background work and attempt a final snapshot write."""
        await self._scheduler.stop()
        if self._writer:
            await self._writer.stop()
        logger.info("registry_shutdown")

    def load(self) -> bool:
        """Restore state from the store. Returns False if nothing was loaded.

        A failed load leaves the registry empty and usable in memory.
        """
        if self._store is None:
            return False
        key = self._config.persistence.snapshot_key
        try:
            raw = self._store.get(key)
            if raw is None:
                return False
            state = decode_snapshot(raw)
        except Exception as e:
            logger.error("snapshot_load_failed", key=key, error=str(e))
            return False

        self._segments.update(state.segments)
        for exp in state.experiments.values():
            self._metrics.register(exp)
            self._experiments[exp.id] = exp
        self._assignments.load(state.assignments)

        logger.info(
            "snapshot_loaded",
            experiments=len(state.experiments),
            assignments=len(state.assignments),
            saved_at=state.saved_at.isoformat() if state.saved_at else None,
        )
        return True

    def snapshot(self) -> bytes:
        return encode_snapshot(
            experiments={eid: e.to_dict() for eid, e in list(self._experiments.items())},
            segments={sid: s.to_dict() for sid, s in list(self._segments.items())},
            assignments=self._assignments.snapshot(),
            metrics=self._metrics.snapshot(),
        )

    def flush(self) -> bool:
        """Persist immediately. Returns False if the write failed."""
        if self._writer is None:
            return True
        return self._writer.flush_now()

    def _mark_dirty(self) -> None:
        if self._writer is not None:
            self._writer.mark_dirty()

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def define_segment(
        self,
        segment_id: str,
        rules: List[Mapping[str, Any]],
    ) -> Segment:
        if segment_id == WILDCARD_SEGMENT:
            raise ConfigurationError(f"'{WILDCARD_SEGMENT}' is reserved for the match-everyone segment")
        definition = parse_segment(segment_id, rules)
        segment = Segment(
            id=definition.id,
            rules=[SegmentRule(r.property, r.operator, r.value) for r in definition.rules],
        )
        self._segments[segment.id] = segment
        self._mark_dirty()
        logger.info("segment_defined", id=segment.id, rules=len(segment.rules))
        return segment

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        return self._segments.get(segment_id)

    # ------------------------------------------------------------------
    # Experiment lifecycle
    # ------------------------------------------------------------------

    def create_experiment(
        self,
        config: Union[ExperimentDefinition, Mapping[str, Any]],
    ) -> Experiment:
        """Validate ``config`` and register a new active experiment.

        Raises ConfigurationError without registering anything when the
        definition is invalid.
        """
        definition = parse_experiment(config)
        exp_id = definition.id or str(uuid.uuid4())

        segments = list(definition.segments or self._config.experiment.default_segments)
        unknown = [s for s in segments if s != WILDCARD_SEGMENT and s not in self._segments]
        if unknown:
            raise ConfigurationError(f"Unknown segments: {', '.join(unknown)}")

        floor = self._config.bandit.allocation_floor
        if self._config.bandit.enabled and floor * len(definition.variants) > 1.0:
            raise ConfigurationError(
                f"{len(definition.variants)} variants cannot each receive the "
                f"{floor:.0%} allocation floor"
            )

        total_weight = sum(v.weight for v in definition.variants)
        variants = [
            Variant(
                id=v.id,
                name=v.name or v.id,
                weight=v.weight,
                normalized_weight=v.weight / total_weight,
                payload=v.payload,
            )
            for v in definition.variants
        ]
        allocation = dict(definition.traffic_allocation) if definition.traffic_allocation else {
            v.id: v.normalized_weight for v in variants
        }

        now = datetime.now()
        max_days = definition.max_duration_days or self._config.experiment.max_duration_days
        experiment = Experiment(
            id=exp_id,
            name=definition.name,
            hypothesis=definition.hypothesis,
            description=definition.description,
            status=ExperimentStatus.ACTIVE,
            start_time=now,
            end_time=definition.end_time or now + timedelta(days=max_days),
            variants=variants,
            segments=segments,
            metrics=list(definition.metrics),
            traffic_allocation={v.id: allocation[v.id] for v in variants},
        )

        with self._create_lock:
            if exp_id in self._experiments:
                raise ConfigurationError(f"Experiment {exp_id} already exists")
            self._metrics.register(experiment)
            self._experiments[exp_id] = experiment

        self._mark_dirty()
        logger.info(
            "experiment_created",
            id=exp_id,
            name=experiment.name,
            variants=[v.id for v in variants],
        )
        return experiment

    def pause_experiment(self, experiment_id: str, reason: Optional[str] = None) -> bool:
        exp = self._experiments.get(experiment_id)
        if not exp or exp.status != ExperimentStatus.ACTIVE:
            return False
        exp.status = ExperimentStatus.PAUSED
        exp.pause_reason = reason
        self._mark_dirty()
        logger.info("experiment_paused", id=experiment_id, reason=reason)
        return True

    def resume_experiment(self, experiment_id: str) -> bool:
        exp = self._experiments.get(experiment_id)
        if not exp or exp.status != ExperimentStatus.PAUSED:
            return False
        exp.status = ExperimentStatus.ACTIVE
        exp.pause_reason = None
        self._mark_dirty()
        logger.info("experiment_resumed", id=experiment_id)
        return True

    def stop_experiment(self, experiment_id: str, declare_winner: bool = False) -> bool:
        """Complete an experiment, optionally declaring a winner.

        Significance is recomputed one last time before the experiment is
        frozen.
        """
        exp = self._experiments.get(experiment_id)
        if not exp:
            return False

        with self._lock_for(experiment_id):
            if exp.status != ExperimentStatus.COMPLETED:
                self._refresh_significance(exp)
                exp.status = ExperimentStatus.COMPLETED
                exp.completed_at = datetime.now()
                logger.info("experiment_completed", id=experiment_id)

            if declare_winner:
                self._winner.declare_winner(exp)
        self._mark_dirty()
        return True

    def declare_winner(self, experiment_id: str) -> Optional[str]:
        exp = self._experiments.get(experiment_id)
        if not exp:
            return None
        with self._lock_for(experiment_id):
            already_decided = exp.decided_at is not None
            winner = self._winner.declare_winner(exp)
        if not already_decided:
            self._mark_dirty()
        return winner

    def should_declare_winner(self, experiment_id: str) -> bool:
        exp = self._experiments.get(experiment_id)
        return bool(exp) and self._winner.should_declare_winner(exp)

    # ------------------------------------------------------------------
    # Assignment and tracking (hot path)
    # ------------------------------------------------------------------

    def assign_user(
        self,
        experiment_id: str,
        user_id: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Assignment]:
        """Return the user's variant assignment, creating it on first call.

        Returns None when the experiment is unknown or not active, or the
        user matches none of its segments.
        """
        exp = self._experiments.get(experiment_id)
        if exp is None:
            return None

        assignment, created = self._assignments.resolve(exp, user_id, context)
        if created:
            self._mark_dirty()
            self._emit(TelemetryEvent(
                experiment_id=experiment_id,
                event_kind="assignment",
                variant_id=assignment.variant_id,
                user_id=user_id,
                payload={"user_context": dict(assignment.user_context)},
            ))
        return assignment

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        return self._assignments.get(experiment_id, user_id)

    def track_event(
        self,
        experiment_id: str,
        variant_id: str,
        event_kind: Union[EventKind, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Record an outcome event. Never raises.

        Events for completed experiments still update the counters, but
        the frozen significance summary and winner are left untouched.
        """
        kind = str(getattr(event_kind, "value", event_kind))
        if payload is None:
            data: Dict[str, Any] = {}
        elif isinstance(payload, Mapping):
            data = dict(payload)
        else:
            data = {"value": payload}

        try:
            if self._metrics.record(experiment_id, variant_id, event_kind, data):
                exp = self._experiments[experiment_id]
                with self._lock_for(experiment_id):
                    if exp.status != ExperimentStatus.COMPLETED:
                        self._refresh_significance(exp)
                self._mark_dirty()
        except Exception:
            logger.exception(
                "track_event_failed",
                experiment_id=experiment_id,
                variant_id=variant_id,
                event_kind=kind,
            )

        self._emit(TelemetryEvent(
            experiment_id=experiment_id,
            event_kind=kind,
            variant_id=variant_id,
            payload=data,
        ))

    def run_experiment(
        self,
        experiment_id: str,
        user_id: str,
        context: Optional[Mapping[str, Any]] = None,
        renderer: Optional[VariantRenderer] = None,
    ) -> Optional[ExperimentRun]:
        """Assign, record an exposure and hand the payload to ``renderer``."""
        assignment = self.assign_user(experiment_id, user_id, context)
        if assignment is None:
            return None

        exp = self._experiments[experiment_id]
        variant = exp.get_variant(assignment.variant_id)
        if variant is None:
            return None

        if renderer is not None:
            try:
                renderer.apply(variant.id, variant.payload)
            except Exception as e:
                logger.warning(
                    "variant_render_failed",
                    experiment_id=experiment_id,
                    variant_id=variant.id,
                    error=str(e),
                )

        self.track_event(experiment_id, variant.id, EventKind.EXPOSURE, {"user_id": user_id})
        return ExperimentRun(experiment=exp, variant=variant, assignment=assignment)

    def _lock_for(self, experiment_id: str) -> threading.RLock:
        lock = self._experiment_locks.get(experiment_id)
        if lock is None:
            lock = self._experiment_locks.setdefault(experiment_id, threading.RLock())
        return lock

    def _refresh_significance(self, exp: Experiment) -> None:
        stats = self._config.statistics
        exp.significance = StatisticsEngine.summarize(
            exp,
            minimum_sample_size=stats.minimum_sample_size,
            confidence_level=stats.confidence_level,
            z_critical=stats.z_critical,
        )

    def _emit(self, event: TelemetryEvent) -> None:
        try:
            self._telemetry.emit(event)
        except Exception as e:
            logger.warning(
                "telemetry_emit_failed",
                experiment_id=event.experiment_id,
                event_kind=event.event_kind,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def assess_health(self, experiment_id: str) -> Optional[HealthReport]:
        exp = self._experiments.get(experiment_id)
        if not exp:
            return None
        return self._health.assess(exp)

    def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One scheduler pass over every active experiment.

        Order per experiment: performance refresh, health check (may
        pause), bandit reallocation, winner evaluation.
        """
        now = now or datetime.now()
        summary = {"checked": 0, "paused": 0, "reallocated": 0, "completed": 0}

        for exp in self.get_active_experiments():
            summary["checked"] += 1
            try:
                exp.performance = self._health.performance(exp, now)

                health = self._health.assess(exp, now)
                if self._health.should_pause(health):
                    reason = "; ".join(health.issues)
                    if self.pause_experiment(exp.id, reason=reason):
                        summary["paused"] += 1
                        logger.warning(
                            "experiment_auto_paused",
                            id=exp.id,
                            score=health.score,
                            issues=health.issues,
                        )
                    continue

                before = dict(exp.traffic_allocation)
                if self._bandit.reallocate(exp) != before:
                    summary["reallocated"] += 1
                    self._mark_dirty()

                if self._winner.auto_declare and self._winner.should_declare_winner(exp, now):
                    with self._lock_for(exp.id):
                        self._winner.declare_winner(exp, now)
                    summary["completed"] += 1
                    self._mark_dirty()
            except Exception:
                logger.exception("maintenance_failed", id=exp.id)

        logger.debug("maintenance_pass", **summary)
        return summary

    # ------------------------------------------------------------------
    # Reporting and queries
    # ------------------------------------------------------------------

    def get_report(self, experiment_id: str) -> Optional[Report]:
        exp = self._experiments.get(experiment_id)
        if not exp:
            return None
        return self._reports.generate(exp, self._health.assess(exp))

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        return self._experiments.get(experiment_id)

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        exps = list(self._experiments.values())
        if status is not None:
            exps = [e for e in exps if e.status == status]
        return exps

    def get_active_experiments(self) -> List[Experiment]:
        return self.list_experiments(ExperimentStatus.ACTIVE)

    def get_stats(self) -> Dict[str, Any]:
        all_exps = self.list_experiments()
        return {
            "total_experiments": len(all_exps),
            "active": sum(1 for e in all_exps if e.status == ExperimentStatus.ACTIVE),
            "paused": sum(1 for e in all_exps if e.status == ExperimentStatus.PAUSED),
            "completed": sum(1 for e in all_exps if e.status == ExperimentStatus.COMPLETED),
            "assignments": self._assignments.count(),
            "segments": len(self._segments),
            "bandit": self._bandit.get_stats(),
            "scheduler": self._scheduler.get_stats(),
            "persistence": self._writer.get_stats() if self._writer else None,
            "experiments": {
                e.id: {
                    "name": e.name,
                    "status": e.status.value,
                    "total_sessions": e.total_sessions,
                    "significant": e.significance.significant,
                    "winner": e.winner,
                }
                for e in all_exps
            },
        }
