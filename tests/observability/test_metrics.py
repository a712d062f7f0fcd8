"""
Tests for metrics collection and the metrics sink.
"""

import time

import pytest

from meshroute.models import BackendDescriptor, RouteDecision
from meshroute.observability import MetricsCollector, MetricsSink


def _decision(backend_id="gpt", confidence=0.7):
    return RouteDecision(
        backend_id=backend_id,
        backend=BackendDescriptor(id=backend_id, provider="openai"),
        reason="test",
        confidence=confidence,
        score=1.0,
    )


def test_metrics_basic():
    """Test basic metric recording."""
    collector = MetricsCollector()

    collector.record("test_metric", 1.5, label="test")
    collector.record("test_metric", 2.5, label="test")
    collector.record("test_metric", 3.5, label="test")

    stats = collector.get_stats("test_metric", label="test")

    assert stats["count"] == 3
    assert stats["sum"] == 7.5
    assert stats["mean"] == 2.5
    assert stats["min"] == 1.5
    assert stats["max"] == 3.5


def test_metrics_percentiles():
    """Test percentile calculations."""
    collector = MetricsCollector()

    for i in range(100):
        collector.record("latency", float(i), backend="gpt")

    stats = collector.get_stats("latency", backend="gpt")

    assert stats["count"] == 100
    assert stats["p50"] == pytest.approx(49, abs=1)
    assert stats["p95"] == pytest.approx(94, abs=1)
    assert stats["p99"] == pytest.approx(98, abs=1)


def test_metrics_labels():
    """Test label-based filtering."""
    collector = MetricsCollector()

    collector.record("latency", 1.0, backend="gpt", status="success")
    collector.record("latency", 2.0, backend="gpt", status="failure")
    collector.record("latency", 3.0, backend="claude", status="success")

    assert collector.get_stats("latency", backend="gpt")["count"] == 2
    assert collector.get_stats("latency", backend="gpt", status="success")["count"] == 1
    assert collector.get_stats("latency", status="success")["count"] == 2


def test_metrics_unknown_name_is_empty():
    collector = MetricsCollector()
    assert collector.get_stats("nothing") == {}


def test_metrics_cleanup():
    """Points older than the retention window are dropped."""
    collector = MetricsCollector(retention_hours=1.0)
    collector.record("latency", 1.0)
    collector.record("latency", 2.0)
    collector._metrics[0].timestamp = time.time() - 7200

    assert collector.cleanup_old_metrics() == 1
    assert collector.get_stats("latency")["count"] == 1


def test_prometheus_export(tmp_path):
    """Test Prometheus text rendering and export."""
    collector = MetricsCollector()
    collector.record("backend_call_cost", 0.25, backend="gpt")
    collector.record("routing_decisions_total", 1)

    text = collector.render_prometheus()
    assert "# TYPE backend_call_cost gauge" in text
    assert 'backend_call_cost{backend="gpt"} 0.25' in text
    assert "routing_decisions_total 1.0" in text

    output = tmp_path / "prom" / "metrics.txt"
    collector.export_prometheus(output)
    assert output.read_text(encoding="utf-8") == text


def test_metrics_sink_records_events():
    collector = MetricsCollector()
    sink = MetricsSink(collector)

    sink.log_routing_decision("planner", "chat", _decision(confidence=0.7))
    sink.log_model_call("gpt", "planner", 10, 20, 150.0, True, 0.002)
    sink.log_model_call("gpt", "planner", 0, 0, 30.0, False, 0.0)

    assert collector.get_stats("routing_decisions_total", backend="gpt")["count"] == 1
    assert collector.get_stats("routing_confidence", task_type="chat")["mean"] == pytest.approx(0.7)
    assert collector.get_stats("backend_call_latency_ms", status="success")["sum"] == 150.0
    assert collector.get_stats("backend_call_latency_ms", status="failure")["count"] == 1
    assert collector.get_stats("backend_call_tokens", direction="output")["sum"] == 20.0


def test_clear():
    collector = MetricsCollector()
    collector.record("x", 1.0)
    collector.clear()
    assert collector.get_all_metrics() == []
