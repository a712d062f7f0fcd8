"""
Meshroute Observability Layer
=============================

Write-only sinks the core reports routing decisions and backend calls to:
- LoggingSink: standard logging output
- MemorySink: in-memory record lists
- RoutingAuditLog: JSONL audit file
- MetricsSink: percentile metrics with Prometheus export
- CompositeSink: fan-out to several sinks

Usage:
    from meshroute.observability import CompositeSink, LoggingSink, MetricsSink

    sink = CompositeSink([LoggingSink(), MetricsSink()])
"""

from meshroute.observability.sink import (
    CompositeSink,
    LoggingSink,
    MemorySink,
    ObservabilitySink,
    emit,
)

from meshroute.observability.audit import RoutingAuditLog

from meshroute.observability.metrics import (
    MetricPoint,
    MetricsCollector,
    MetricsSink,
)

__all__ = [
    # Sinks
    "CompositeSink",
    "LoggingSink",
    "MemorySink",
    "ObservabilitySink",
    "emit",
    # Audit
    "RoutingAuditLog",
    # Metrics
    "MetricPoint",
    "MetricsCollector",
    "MetricsSink",
]
