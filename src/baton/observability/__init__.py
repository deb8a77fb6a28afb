"""Observability package: metrics, structured events, and dependency health."""

from baton.observability.events import EventSink, RecordingEventSink
from baton.observability.health import HealthRegistry, get_health
from baton.observability.metrics import MetricsCollector, get_metrics

__all__ = [
    "EventSink",
    "HealthRegistry",
    "MetricsCollector",
    "RecordingEventSink",
    "get_health",
    "get_metrics",
]
