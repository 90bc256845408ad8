"""Liquidify core: events and telemetry."""

from liquidify.core.events import CycleEvent, Event, EventBus, EventType
from liquidify.core.telemetry import (
    LatencyTracker, OutcomeTally, PerformanceCounters, TelemetryExporter,
    track_latency,
)

__all__ = [
    "CycleEvent", "Event", "EventBus", "EventType",
    "LatencyTracker", "OutcomeTally", "PerformanceCounters", "TelemetryExporter",
    "track_latency",
]
