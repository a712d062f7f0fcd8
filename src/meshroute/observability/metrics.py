"""
Metrics Collection for Routed Backend Calls
===========================================

In-memory metrics with label filtering, percentile statistics and
Prometheus text export. ``MetricsSink`` turns the core's observability
events into metric points:

- routing_decisions_total{backend, task_type}
- routing_confidence{backend, task_type}
- backend_call_latency_ms{backend, agent, status}
- backend_call_cost{backend, agent}
- backend_call_tokens{backend, direction}

Usage:
    collector = MetricsCollector()
    stack = build_stack(config, caller, sink=MetricsSink(collector))
    ...
    stats = collector.get_stats("backend_call_latency_ms", backend="openai-gpt-4o")
    print(f"p95: {stats['p95']:.1f}ms")
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from meshroute.observability.sink import ObservabilitySink

logger = logging.getLogger("meshroute.observability.metrics")


@dataclass
class MetricPoint:
    """
    A single metric observation.

    Attributes:
        name: Metric name (e.g., "backend_call_latency_ms")
        value: Numeric value
        timestamp: Unix timestamp when metric was recorded
        labels: Key-value pairs for filtering (e.g., {"backend": "openai-gpt-4o"})
    """

    name: str
    value: float
    timestamp: float
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Collects and aggregates metrics for analysis.

    Thread-safe; points older than ``retention_hours`` are dropped by
    :meth:`cleanup_old_metrics`.
    """

    def __init__(self, retention_hours: float = 24.0):
        self._metrics: List[MetricPoint] = []
        self._lock = threading.Lock()
        self._retention_seconds = retention_hours * 3600

    def record(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self._metrics.append(
                MetricPoint(
                    name=name,
                    value=float(value),
                    timestamp=time.time(),
                    labels={k: str(v) for k, v in labels.items()},
                )
            )

    def get_stats(self, name: str, **filter_labels: str) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Returns:
            Dict with count, sum, min, max, mean, median, p50, p95, p99
            (empty dict when nothing matches).
        """
        with self._lock:
            values = [
                m.value for m in self._metrics
                if m.name == name and
                all(m.labels.get(k) == v for k, v in filter_labels.items())
            ]

        if not values:
            return {}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": statistics.mean(values),
            "median": statistics.median(values),
            "p50": self._percentile(values, 0.50),
            "p95": self._percentile(values, 0.95),
            "p99": self._percentile(values, 0.99),
        }

    def get_all_metrics(self) -> List[MetricPoint]:
        with self._lock:
            return list(self._metrics)

    def cleanup_old_metrics(self) -> int:
        """Remove metrics older than the retention period; returns how many."""
        cutoff_time = time.time() - self._retention_seconds

        with self._lock:
            original_count = len(self._metrics)
            self._metrics = [m for m in self._metrics if m.timestamp >= cutoff_time]
            removed = original_count - len(self._metrics)

        if removed > 0:
            logger.info(f"Cleaned up {removed} old metrics")
        return removed

    def render_prometheus(self) -> str:
        """
        Render metrics in Prometheus text format.

        Format:
            # TYPE metric_name gauge
            metric_name{label1="value1",label2="value2"} 123.45 1234567890000
        """
        with self._lock:
            by_name: Dict[str, List[MetricPoint]] = {}
            for m in self._metrics:
                by_name.setdefault(m.name, []).append(m)

        lines = []
        for name, points in sorted(by_name.items()):
            lines.append(f"# TYPE {name} gauge")
            for p in points:
                if p.labels:
                    label_str = ",".join(
                        f'{k}="{v}"' for k, v in sorted(p.labels.items())
                    )
                    lines.append(f"{name}{{{label_str}}} {p.value} {int(p.timestamp * 1000)}")
                else:
                    lines.append(f"{name} {p.value} {int(p.timestamp * 1000)}")
            lines.append("")
        return "\n".join(lines)

    def export_prometheus(self, output_path: Path) -> None:
        text = self.render_prometheus()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text, encoding="utf-8")
        logger.info(f"Exported metrics to {output_path}")

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    @staticmethod
    def _percentile(values: List[float], p: float) -> float:
        if not values:
            return 0.0
        sorted_values = sorted(values)
        index = min(int(len(sorted_values) * p), len(sorted_values) - 1)
        return sorted_values[index]


class MetricsSink(ObservabilitySink):
    """Observability sink that records into a MetricsCollector."""

    def __init__(self, collector: MetricsCollector | None = None):
        self.collector = collector or MetricsCollector()

    def log_routing_decision(self, agent_id, task_type, decision):
        self.collector.record(
            "routing_decisions_total", 1, backend=decision.backend_id, task_type=task_type,
        )
        self.collector.record(
            "routing_confidence", decision.confidence,
            backend=decision.backend_id, task_type=task_type,
        )

    def log_model_call(self, backend_id, agent_id, input_tokens, output_tokens,
                       latency_ms, success, cost):
        status = "success" if success else "failure"
        self.collector.record(
            "backend_call_latency_ms", latency_ms,
            backend=backend_id, agent=agent_id, status=status,
        )
        self.collector.record("backend_call_cost", cost, backend=backend_id, agent=agent_id)
        self.collector.record("backend_call_tokens", input_tokens, backend=backend_id, direction="input")
        self.collector.record("backend_call_tokens", output_tokens, backend=backend_id, direction="output")
