"""
ABEngine Assignment

Deterministic, sticky bucketing of users into variants. The bucket is a
SHA-256 digest of (experiment id, user id, canonical user context)
reduced to [0, 1); the variant is chosen by walking the experiment's
traffic allocation cumulatively. Once written, an assignment never
changes.
"""

from __future__ import annotations

import copy
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from abengine.segments import SegmentMatcher
from abengine.types import (
    Assignment,
    Experiment,
    ExperimentStatus,
    Segment,
    Variant,
    assignment_key,
)

logger = structlog.get_logger(__name__)

BUCKET_RESOLUTION = 1_000_000


def serialize_context(user_context: Optional[Mapping[str, Any]]) -> str:
    """Canonical JSON form of a context, stable across key order."""
    return json.dumps(user_context or {}, sort_keys=True, separators=(",", ":"), default=str)


def bucket_for(experiment_id: str, user_id: str, user_context: Optional[Mapping[str, Any]] = None) -> float:
    hash_input = f"{experiment_id}:{user_id}:{serialize_context(user_context)}".encode()
    digest = int(hashlib.sha256(hash_input).hexdigest(), 16)
    return (digest % BUCKET_RESOLUTION) / BUCKET_RESOLUTION


def select_variant(experiment: Experiment, bucket: float) -> Variant:
    """Weighted-bucket selection over the current traffic allocation."""
    cumulative = 0.0
    for variant in experiment.variants:
        weight = experiment.traffic_allocation.get(variant.id, variant.normalized_weight)
        cumulative += weight
        # Zero-weight arms never match, even on an exact boundary
        if weight > 0 and bucket <= cumulative:
            return variant
    # Float rounding can leave the running sum a hair under 1.0
    return experiment.variants[-1]


class AssignmentEngine:
    """Assigns users to variants and remembers every assignment."""

    def __init__(
        self,
        matcher: Optional[SegmentMatcher] = None,
        segments: Optional[Mapping[str, Segment]] = None,
    ) -> None:
        self._matcher = matcher or SegmentMatcher()
        self._segments: Mapping[str, Segment] = segments if segments is not None else {}
        self._assignments: Dict[str, Assignment] = {}

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(
        self,
        experiment: Experiment,
        user_id: str,
        user_context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Assignment]:
        assignment, _ = self.resolve(experiment, user_id, user_context)
        return assignment

    def resolve(
        self,
        experiment: Experiment,
        user_id: str,
        user_context: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Optional[Assignment], bool]:
        """Return ``(assignment, created)``.

        ``created`` is True only for the caller whose insert won.
        """
        if experiment.status != ExperimentStatus.ACTIVE:
            return None, False

        if not self._matcher.matches_any(user_context, experiment.segments, self._segments):
            return None, False

        key = assignment_key(experiment.id, user_id)
        existing = self._assignments.get(key)
        if existing is not None:
            return existing, False

        variant = select_variant(experiment, bucket_for(experiment.id, user_id, user_context))
        candidate = Assignment(
            experiment_id=experiment.id,
            user_id=user_id,
            variant_id=variant.id,
            assignment_time=datetime.now(),
            user_context=copy.deepcopy(dict(user_context or {})),
        )
        # dict.setdefault is an atomic insert-if-absent for str keys
        stored = self._assignments.setdefault(key, candidate)
        created = stored is candidate
        if created:
            logger.debug(
                "user_assigned",
                experiment_id=experiment.id,
                user_id=user_id,
                variant_id=variant.id,
            )
        return stored, created

    # ------------------------------------------------------------------
    # Lookup and state
    # ------------------------------------------------------------------

    def get(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        return self._assignments.get(assignment_key(experiment_id, user_id))

    def for_experiment(self, experiment_id: str) -> List[Assignment]:
        return [a for a in self._assignments.values() if a.experiment_id == experiment_id]

    def count(self) -> int:
        return len(self._assignments)

    def load(self, assignments: Iterable[Assignment]) -> None:
        for a in assignments:
            self._assignments.setdefault(a.key, a)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: a.to_dict() for key, a in list(self._assignments.items())}
