"""
ABEngine Metrics Aggregation

Per-variant outcome counters. Recording is fire-and-forget: unknown
experiments, variants or event kinds are dropped without raising. Each
variant's counters are updated under that variant's own lock, so there
is no global lock on the hot path.
"""

from __future__ import annotations

import numbers
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from abengine.types import EventKind, Experiment, VariantResult

logger = structlog.get_logger(__name__)


def _amount(payload: Mapping[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return float(value)
    return None


class MetricsAggregator:
    """Owns the VariantResult counters of every registered experiment."""

    def __init__(self) -> None:
        self._results: Dict[str, Dict[str, VariantResult]] = {}

    def register(self, experiment: Experiment) -> Dict[str, VariantResult]:
        """Attach counters for each variant and share them with the experiment."""
        results = experiment.results
        for variant in experiment.variants:
            results.setdefault(variant.id, VariantResult())
        self._results[experiment.id] = results
        return results

    def get(self, experiment_id: str) -> Optional[Dict[str, VariantResult]]:
        return self._results.get(experiment_id)

    def record(
        self,
        experiment_id: str,
        variant_id: str,
        event_kind: Union[EventKind, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Apply one event. Returns False when the event was dropped."""
        variants = self._results.get(experiment_id)
        result = variants.get(variant_id) if variants is not None else None
        if result is None:
            logger.warning(
                "event_dropped",
                reason="unknown_experiment_or_variant",
                experiment_id=experiment_id,
                variant_id=variant_id,
                event_kind=str(getattr(event_kind, "value", event_kind)),
            )
            return False

        try:
            kind = EventKind(event_kind)
        except ValueError:
            logger.warning(
                "event_dropped",
                reason="unknown_event_kind",
                experiment_id=experiment_id,
                variant_id=variant_id,
                event_kind=str(event_kind),
            )
            return False

        data = payload if isinstance(payload, Mapping) else {}
        with result.lock:
            if kind == EventKind.EXPOSURE:
                result.sessions += 1
            elif kind == EventKind.CONVERSION:
                result.conversions += 1
                revenue = _amount(data, "revenue")
                if revenue is not None:
                    result.revenue += revenue
            elif kind == EventKind.ENGAGEMENT:
                duration = _amount(data, "duration")
                if duration is not None:
                    n = max(result.sessions, 1)
                    result.engagement_time = (result.engagement_time * (n - 1) + duration) / n
            elif kind == EventKind.BOUNCE:
                n = max(result.sessions, 1)
                bounced = 1.0 if data.get("bounced", True) else 0.0
                result.bounce_rate = (result.bounce_rate * (n - 1) + bounced) / n
            result.last_event_at = datetime.now()

        logger.debug(
            "event_recorded",
            experiment_id=experiment_id,
            variant_id=variant_id,
            event_kind=kind.value,
        )
        return True

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        out: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for exp_id, variants in list(self._results.items()):
            out[exp_id] = {}
            for vid, result in list(variants.items()):
                with result.lock:
                    out[exp_id][vid] = result.to_dict()
        return out
