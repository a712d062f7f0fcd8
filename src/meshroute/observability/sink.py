"""
Observability Sinks
===================

Write-only collaborators the core reports to. The core never reads a
sink's return value, and a failing sink is logged instead of failing the
routing call that triggered it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterable, List

from meshroute.models import RouteDecision

logger = logging.getLogger("meshroute.observability")


class ObservabilitySink:
    """Base sink. Subclasses override the events they care about."""

    def log_routing_decision(self, agent_id: str, task_type: str, decision: RouteDecision) -> None:
        pass

    def log_model_call(
        self,
        backend_id: str,
        agent_id: str,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
        success: bool,
        cost: float,
    ) -> None:
        pass


def emit(sink: ObservabilitySink | None, event: str, *args: Any) -> None:
    """Call ``sink.<event>(*args)``, logging rather than raising on failure."""
    if sink is None:
        return
    try:
        getattr(sink, event)(*args)
    except Exception as e:
        logger.error(f"Observability sink {type(sink).__name__}.{event} failed: {e}")


class LoggingSink(ObservabilitySink):
    """Reports every event through the standard logging module."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def log_routing_decision(self, agent_id, task_type, decision):
        logger.log(
            self.level,
            f"route agent={agent_id} task={task_type} -> {decision.backend_id} "
            f"(score={decision.score:.3f}, confidence={decision.confidence:.2f}): {decision.reason}",
        )

    def log_model_call(self, backend_id, agent_id, input_tokens, output_tokens,
                       latency_ms, success, cost):
        logger.log(
            self.level if success else logging.WARNING,
            f"call backend={backend_id} agent={agent_id} in={input_tokens} out={output_tokens} "
            f"{latency_ms:.1f}ms cost={cost:.6f} success={success}",
        )


class MemorySink(ObservabilitySink):
    """Keeps every event in memory, e.g. for dashboards and tests."""

    def __init__(self, max_records: int = 10_000):
        self.max_records = max_records
        self._lock = threading.Lock()
        self._routing: List[Dict[str, Any]] = []
        self._calls: List[Dict[str, Any]] = []

    def log_routing_decision(self, agent_id, task_type, decision):
        entry = {
            "timestamp": time.time(),
            "agent_id": agent_id,
            "task_type": task_type,
            "backend_id": decision.backend_id,
            "score": decision.score,
            "confidence": decision.confidence,
            "reason": decision.reason,
        }
        with self._lock:
            self._routing.append(entry)
            if len(self._routing) > self.max_records:
                self._routing = self._routing[-self.max_records:]

    def log_model_call(self, backend_id, agent_id, input_tokens, output_tokens,
                       latency_ms, success, cost):
        entry = {
            "timestamp": time.time(),
            "backend_id": backend_id,
            "agent_id": agent_id,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "latency_ms": latency_ms,
            "success": success,
            "cost": cost,
        }
        with self._lock:
            self._calls.append(entry)
            if len(self._calls) > self.max_records:
                self._calls = self._calls[-self.max_records:]

    @property
    def routing_logs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._routing)

    @property
    def model_call_logs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._calls)

    def clear(self) -> None:
        with self._lock:
            self._routing.clear()
            self._calls.clear()


class CompositeSink(ObservabilitySink):
    """Fans each event out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, sinks: Iterable[ObservabilitySink]):
        self.sinks = list(sinks)

    def log_routing_decision(self, agent_id, task_type, decision):
        for sink in self.sinks:
            emit(sink, "log_routing_decision", agent_id, task_type, decision)

    def log_model_call(self, backend_id, agent_id, input_tokens, output_tokens,
                       latency_ms, success, cost):
        for sink in self.sinks:
            emit(sink, "log_model_call", backend_id, agent_id, input_tokens,
                 output_tokens, latency_ms, success, cost)
