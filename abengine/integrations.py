"""
ABEngine External Collaborators

Interfaces for the collaborators the engine talks to but does not own:
a telemetry sink that receives a copy of every tracked event, and a
variant renderer that applies an opaque payload to a user surface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class TelemetryEvent:
    experiment_id: str
    event_kind: str
    variant_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "event_kind": self.event_kind,
            "variant_id": self.variant_id,
            "user_id": self.user_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


class TelemetrySink(ABC):
    """Downstream analytics. Failures here never affect the engine."""

    @abstractmethod
    def emit(self, event: TelemetryEvent) -> None:
        pass


class NullTelemetrySink(TelemetrySink):
    def emit(self, event: TelemetryEvent) -> None:
        return None


class LoggingTelemetrySink(TelemetrySink):
    """Writes every event to the structured log."""

    def emit(self, event: TelemetryEvent) -> None:
        logger.info("telemetry_event", **event.to_dict())


class MemoryTelemetrySink(TelemetrySink):
    """Keeps events in a bounded list; handy for inspection."""

    def __init__(self, max_events: int = 10_000):
        self.max_events = max_events
        self.events: List[TelemetryEvent] = []

    def emit(self, event: TelemetryEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events // 2:]


class VariantRenderer(ABC):
    """Applies a variant's payload to a user-facing surface.

    The engine hands over the payload untouched and never inspects it.
    """

    @abstractmethod
    def apply(self, variant_id: str, payload: Any) -> None:
        pass
