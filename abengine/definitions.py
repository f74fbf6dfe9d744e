"""
ABEngine Definitions

Validated input models for creating experiments and segments. These are
the only shapes callers hand to the registry; pydantic validation errors
are re-raised as :class:`ConfigurationError`.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from abengine.errors import ConfigurationError

ALLOCATION_TOLERANCE = 1e-6


class VariantDefinition(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    weight: float = Field(default=1.0, gt=0, allow_inf_nan=False)
    payload: Any = None


class ExperimentDefinition(BaseModel):
    """Everything needed to create an experiment."""
    id: Optional[str] = None
    name: str = Field(min_length=1)
    hypothesis: str = ""
    description: str = ""
    variants: List[VariantDefinition] = Field(min_length=1)
    segments: Optional[List[str]] = None
    metrics: List[str] = Field(default_factory=lambda: ["conversion", "engagement"])
    traffic_allocation: Optional[Dict[str, float]] = None
    end_time: Optional[datetime] = None
    max_duration_days: Optional[float] = Field(default=None, gt=0)

    @field_validator("variants")
    @classmethod
    def unique_variant_ids(cls, v: List[VariantDefinition]) -> List[VariantDefinition]:
        ids = [variant.id for variant in v]
        if len(set(ids)) != len(ids):
            raise ValueError("variant ids must be unique")
        return v

    @model_validator(mode="after")
    def check_allocation(self) -> "ExperimentDefinition":
        if self.traffic_allocation is None:
            return self
        variant_ids = {variant.id for variant in self.variants}
        if set(self.traffic_allocation) != variant_ids:
            raise ValueError("traffic_allocation keys must match the variant ids")
        values = list(self.traffic_allocation.values())
        if any(not math.isfinite(w) or w < 0 for w in values):
            raise ValueError("traffic_allocation weights must be finite and non-negative")
        if abs(sum(values) - 1.0) > ALLOCATION_TOLERANCE:
            raise ValueError("traffic_allocation must sum to 1")
        return self


class RuleDefinition(BaseModel):
    property: str = Field(min_length=1)
    operator: str
    value: Any = None


class SegmentDefinition(BaseModel):
    id: str = Field(min_length=1)
    rules: List[RuleDefinition] = Field(default_factory=list)


def parse_experiment(
    config: Union[ExperimentDefinition, Mapping[str, Any]],
) -> ExperimentDefinition:
    if isinstance(config, ExperimentDefinition):
        return config
    try:
        return ExperimentDefinition.model_validate(dict(config))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid experiment definition: {e}") from e
    except TypeError as e:
        raise ConfigurationError(f"Experiment definition must be a mapping: {e}") from e


def parse_segment(
    segment_id: str,
    rules: List[Union[RuleDefinition, Mapping[str, Any]]],
) -> SegmentDefinition:
    try:
        return SegmentDefinition.model_validate({
            "id": segment_id,
            "rules": [r.model_dump() if isinstance(r, RuleDefinition) else dict(r) for r in rules],
        })
    except ValidationError as e:
        raise ConfigurationError(f"Invalid segment definition: {e}") from e
    except TypeError as e:
        raise ConfigurationError(f"Segment rules must be mappings: {e}") from e
