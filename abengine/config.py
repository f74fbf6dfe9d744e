"""
ABEngine Configuration

Settings for every engine component with:
- Environment-based overrides (ABENGINE_ prefix, ``__`` for nesting)
- Type-safe, bounded values with Pydantic
- JSON file load/save
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class StatisticsConfig(BaseModel):
    """Significance testing thresholds."""
    confidence_level: float = Field(default=0.95, gt=0.5, lt=1.0)
    minimum_sample_size: int = Field(default=100, ge=1, description="Per-variant sessions before testing")
    z_critical: float = Field(default=1.96, gt=0, description="Multiplier for the lift interval")

    @property
    def alpha(self) -> float:
        return 1.0 - self.confidence_level


class BanditConfig(BaseModel):
    """Thompson-sampling traffic reallocation."""
    enabled: bool = True
    min_total_sessions: int = Field(default=1000, ge=0)
    allocation_floor: float = Field(default=0.10, ge=0.0, lt=1.0)


class HealthConfig(BaseModel):
    """Health scoring and auto-pause."""
    uneven_traffic_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    outlier_factor: float = Field(default=2.0, gt=0.0)
    pause_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    review_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_total_sessions: int = Field(default=100, ge=0, description="Sessions before traffic checks apply")
    uneven_traffic_penalty: float = Field(default=0.2, ge=0.0)
    uneven_traffic_severity_penalty: float = Field(default=0.4, ge=0.0)
    outlier_penalty: float = Field(default=0.15, ge=0.0)
    overdue_penalty: float = Field(default=0.3, ge=0.0)


class WinnerConfig(BaseModel):
    """Automatic winner declaration."""
    auto_declare: bool = True
    minimum_runtime_days: float = Field(default=7.0, ge=0.0)


class ExperimentDefaults(BaseModel):
    """Defaults applied to newly created experiments."""
    max_duration_days: float = Field(default=30.0, gt=0.0)
    default_segments: List[str] = Field(default_factory=lambda: ["all"])


class SchedulerConfig(BaseModel):
    """Background maintenance loop."""
    interval_seconds: float = Field(default=60.0, gt=0.0)


class PersistenceConfig(BaseModel):
    """Snapshot persistence and retry policy."""
    snapshot_key: str = "abengine:snapshot"
    flush_interval_seconds: float = Field(default=5.0, gt=0.0)
    retry_delay_seconds: float = Field(default=1.0, gt=0.0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_retry_delay_seconds: float = Field(default=300.0, gt=0.0)


class EngineConfig(BaseSettings):
    """
    Main engine configuration.

    Environment variables are prefixed with ABENGINE_
    (e.g. ABENGINE_BANDIT__ALLOCATION_FLOOR=0.05).
    """

    log_level: str = "INFO"
    statistics: StatisticsConfig = Field(default_factory=StatisticsConfig)
    bandit: BanditConfig = Field(default_factory=BanditConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    winner: WinnerConfig = Field(default_factory=WinnerConfig)
    experiment: ExperimentDefaults = Field(default_factory=ExperimentDefaults)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    model_config = {
        "env_prefix": "ABENGINE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return str(v).upper()

    @classmethod
    def from_file(cls, config_path: Path) -> "EngineConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(), f, indent=2, default=str)
