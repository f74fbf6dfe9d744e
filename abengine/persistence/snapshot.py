"""
ABEngine Snapshot Format

Versioned JSON snapshot of the registry: experiments, segments,
assignments and per-variant metrics. Older snapshots are upgraded step
by step through ``MIGRATIONS`` before decoding; unknown fields are
ignored and missing fields take their defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import structlog

from abengine.errors import PersistenceError
from abengine.types import Assignment, Experiment, Segment, VariantResult

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2


class SnapshotEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy scalars, datetimes and sets.

    Anything else falls back to ``str`` so one odd user context value
    cannot block every later snapshot.
    """

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, (np.integer,)):
            return int(obj)
        if isinstance(obj, (np.floating,)):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        # Opaque caller values (Decimal, UUID, ...) are stored as text
        return str(obj)


@dataclass
class RegistryState:
    experiments: Dict[str, Experiment] = field(default_factory=dict)
    segments: Dict[str, Segment] = field(default_factory=dict)
    assignments: List[Assignment] = field(default_factory=list)
    saved_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def _ms_to_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000.0).isoformat()


def _entries(value: Any) -> Dict[str, Any]:
    """Accept either ``[[key, value], ...]`` pairs or a plain mapping."""
    if isinstance(value, dict):
        return value
    return {k: v for k, v in (value or [])}


def _migrate_v1(data: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade the legacy camelCase entry-list layout to version 2."""
    experiments: Dict[str, Any] = {}
    metrics: Dict[str, Any] = {}

    for exp_id, exp in _entries(data.get("experiments")).items():
        legacy_results = exp.get("results", {}) or {}
        liftrange = legacy_results.get("liftRange") or {}
        experiments[exp_id] = {
            "id": exp.get("id", exp_id),
            "name": exp.get("name", ""),
            "hypothesis": exp.get("hypothesis", ""),
            "description": exp.get("description", ""),
            "status": exp.get("status", "active"),
            "start_time": _ms_to_iso(exp.get("startDate")),
            "end_time": _ms_to_iso(exp.get("endDate")),
            "variants": [
                {
                    "id": v["id"],
                    "name": v.get("name", v["id"]),
                    "weight": v.get("weight", 1.0),
                    "normalized_weight": v.get("normalizedWeight", v.get("weight", 0.0)),
                    "payload": v.get("changes"),
                }
                for v in exp.get("variants", [])
            ],
            "segments": exp.get("segments", ["all"]),
            "metrics": exp.get("metrics", ["conversion", "engagement"]),
            "traffic_allocation": exp.get("trafficAllocation", {}),
            "significance": {
                "significant": legacy_results.get("statisticalSignificance", False),
                "confidence_level": legacy_results.get("confidenceLevel", 0.0),
                "lift_range": [liftrange["min"], liftrange["max"]] if liftrange else None,
            },
            "winner": legacy_results.get("winner"),
            "decided_at": _ms_to_iso(data.get("timestamp")) if legacy_results.get("winner") else None,
        }
        metrics[exp_id] = {
            vid: {
                "sessions": r.get("sessions", 0),
                "conversions": r.get("conversions", 0),
                "engagement_time": r.get("engagementTime", 0.0),
                "bounce_rate": r.get("bounceRate", 0.0),
                "revenue": r.get("revenue", 0.0),
            }
            for vid, r in _entries(legacy_results.get("variantResults")).items()
        }

    assignments = {}
    for key, a in _entries(data.get("userAssignments")).items():
        assignments[key] = {
            "experiment_id": a["experimentId"],
            "user_id": a.get("userId") or "anonymous",
            "variant_id": a["variantId"],
            "assignment_time": _ms_to_iso(a.get("assignmentTime")) or datetime.now().isoformat(),
            "user_context": a.get("userContext") or {},
        }

    return {
        "schema_version": 2,
        "saved_at": _ms_to_iso(data.get("timestamp")),
        "experiments": experiments,
        "segments": {},
        "assignments": assignments,
        "metrics": metrics,
    }


MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(data: Dict[str, Any]) -> Dict[str, Any]:
    version = int(data.get("schema_version", 1))
    if version > SCHEMA_VERSION:
        raise PersistenceError(f"Snapshot schema {version} is newer than supported {SCHEMA_VERSION}")
    while version < SCHEMA_VERSION:
        data = MIGRATIONS[version](data)
        new_version = int(data.get("schema_version", version + 1))
        logger.info("snapshot_migrated", from_version=version, to_version=new_version)
        version = new_version
    return data


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------

def encode_snapshot(
    experiments: Dict[str, Dict[str, Any]],
    segments: Dict[str, Dict[str, Any]],
    assignments: Dict[str, Dict[str, Any]],
    metrics: Dict[str, Dict[str, Dict[str, Any]]],
) -> bytes:
    state = {
        "schema_version": SCHEMA_VERSION,
        "saved_at": datetime.now().isoformat(),
        "experiments": experiments,
        "segments": segments,
        "assignments": assignments,
        "metrics": metrics,
    }
    return json.dumps(state, cls=SnapshotEncoder).encode("utf-8")


def decode_snapshot(raw: bytes) -> RegistryState:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Corrupt snapshot: {e}") from e
    if not isinstance(data, dict):
        raise PersistenceError("Snapshot root must be an object")

    state = RegistryState()
    try:
        data = migrate(data)
        saved_at = data.get("saved_at")
        state.saved_at = datetime.fromisoformat(saved_at) if saved_at else None

        for seg_id, seg in data.get("segments", {}).items():
            state.segments[seg_id] = Segment.from_dict(seg)

        metrics = data.get("metrics", {})
        for exp_id, exp_data in data.get("experiments", {}).items():
            exp = Experiment.from_dict(exp_data)
            stored = metrics.get(exp_id, {})
            exp.results = {
                v.id: VariantResult.from_dict(stored.get(v.id, {})) for v in exp.variants
            }
            state.experiments[exp_id] = exp

        state.assignments = [
            Assignment.from_dict(a) for a in data.get("assignments", {}).values()
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"Malformed snapshot: {e}") from e

    return state
