"""
Tests for the observability sinks and the JSONL audit log.
"""

import json
import logging

from meshroute.models import BackendDescriptor, RouteDecision
from meshroute.observability import (
    CompositeSink,
    LoggingSink,
    MemorySink,
    ObservabilitySink,
    RoutingAuditLog,
    emit,
)


def _decision(backend_id="gpt"):
    return RouteDecision(
        backend_id=backend_id,
        backend=BackendDescriptor(id=backend_id, provider="openai"),
        reason="Highest UCB score",
        confidence=0.42,
        score=0.9,
        alternatives=["claude"],
    )


class _Broken(ObservabilitySink):
    def log_routing_decision(self, agent_id, task_type, decision):
        raise RuntimeError("disk full")

    def log_model_call(self, *args):
        raise RuntimeError("disk full")


def test_emit_without_sink_is_noop():
    emit(None, "log_routing_decision", "a", "chat", _decision())


def test_emit_logs_sink_failure(caplog):
    caplog.set_level(logging.ERROR, logger="meshroute.observability")
    emit(_Broken(), "log_routing_decision", "a", "chat", _decision())
    assert any("disk full" in r.getMessage() for r in caplog.records)


def test_memory_sink_keeps_events():
    sink = MemorySink()
    sink.log_routing_decision("planner", "chat", _decision())
    sink.log_model_call("gpt", "planner", 10, 20, 12.5, True, 0.01)

    assert sink.routing_logs[0]["backend_id"] == "gpt"
    assert sink.routing_logs[0]["confidence"] == 0.42
    call = sink.model_call_logs[0]
    assert call["input_tokens"] == 10
    assert call["success"] is True

    sink.clear()
    assert sink.routing_logs == []
    assert sink.model_call_logs == []


def test_memory_sink_bounded():
    sink = MemorySink(max_records=3)
    for i in range(5):
        sink.log_model_call(f"b{i}", "a", 0, 0, 1.0, True, 0.0)
    assert [c["backend_id"] for c in sink.model_call_logs] == ["b2", "b3", "b4"]


def test_logging_sink(caplog):
    caplog.set_level(logging.DEBUG, logger="meshroute.observability")
    sink = LoggingSink(level=logging.INFO)
    sink.log_routing_decision("planner", "chat", _decision())
    sink.log_model_call("gpt", "planner", 1, 2, 3.0, False, 0.0)

    messages = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert any(level == logging.INFO and "-> gpt" in msg for level, msg in messages)
    # Failed calls are raised to WARNING
    assert any(level == logging.WARNING and "success=False" in msg for level, msg in messages)


def test_composite_sink_isolates_failures():
    memory = MemorySink()
    sink = CompositeSink([_Broken(), memory])
    sink.log_routing_decision("planner", "chat", _decision())
    sink.log_model_call("gpt", "planner", 1, 2, 3.0, True, 0.0)
    assert len(memory.routing_logs) == 1
    assert len(memory.model_call_logs) == 1


def test_audit_log_writes_jsonl(tmp_path):
    with RoutingAuditLog("session-1", base_dir=tmp_path) as audit:
        audit.log_routing_decision("planner", "chat", _decision())
        audit.log_model_call("gpt", "planner", 10, 20, 12.5, True, 0.01)
        path = audit.log_path

    assert path == tmp_path / "session-1" / "audit.jsonl"
    records = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [r["event_type"] for r in records] == ["routing_decision", "model_call"]
    assert all(r["session_id"] == "session-1" for r in records)
    assert records[0]["alternatives"] == ["claude"]
    assert records[1]["cost"] == 0.01


def test_audit_log_appends(tmp_path):
    for _ in range(2):
        audit = RoutingAuditLog("s", base_dir=tmp_path)
        audit.log_model_call("gpt", "a", 0, 0, 1.0, True, 0.0)
        audit.close()
    lines = (tmp_path / "s" / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
