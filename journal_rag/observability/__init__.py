"""Metrics, tracing and health checks for the retrieval pipeline."""

from .health import ComponentHealth, HealthChecker, HealthStatus
from .metrics import MetricsRegistry, track_latency, track_operation
from .tracing import TracingManager, trace_operation

__all__ = [
    "ComponentHealth",
    "HealthChecker",
    "HealthStatus",
    "MetricsRegistry",
    "track_latency",
    "track_operation",
    "TracingManager",
    "trace_operation",
]
