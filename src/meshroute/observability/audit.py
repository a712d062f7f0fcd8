"""
RoutingAuditLog: JSONL-based audit sink for routing and backend calls.

Writes one JSON object per line to ~/meshroute-logs/{session_id}/audit.jsonl
Every event includes: timestamp, event_type, session_id, and event-specific data.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from meshroute.observability.sink import ObservabilitySink

logger = logging.getLogger(__name__)


class RoutingAuditLog(ObservabilitySink):
    """
    Audit sink writing routing decisions and backend calls as JSONL.

    Also usable as a context manager so the file handle is closed on exit.
    """

    def __init__(self, session_id: str, base_dir: Optional[Path] = None):
        """
        Initialize the audit log for one routing session.

        Args:
            session_id: Identifier used as the log sub-directory
            base_dir: Base directory for logs (defaults to ~/meshroute-logs)
        """
        self.session_id = session_id
        self.base_dir = Path(base_dir).expanduser() if base_dir else Path.home() / "meshroute-logs"
        self.log_dir = self.base_dir / session_id
        self._lock = threading.Lock()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create log directory {self.log_dir}: {e}")
            raise

        self.log_path = self.log_dir / "audit.jsonl"
        try:
            self.file_handle = open(self.log_path, 'a', encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to open audit log file {self.log_path}: {e}")
            raise

    def _write_event(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "session_id": self.session_id,
        }
        if data:
            record.update(data)

        try:
            json_line = json.dumps(record, default=str)
            with self._lock:
                self.file_handle.write(json_line + '\n')
                self.file_handle.flush()  # streaming readers tail this file
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write audit event {event_type}: {e}")

    def log_routing_decision(self, agent_id, task_type, decision) -> None:
        self._write_event(
            event_type="routing_decision",
            data={
                "agent_id": agent_id,
                "task_type": task_type,
                "backend_id": decision.backend_id,
                "score": decision.score,
                "confidence": decision.confidence,
                "reason": decision.reason,
                "alternatives": decision.alternatives,
            },
        )

    def log_model_call(self, backend_id, agent_id, input_tokens, output_tokens,
                       latency_ms, success, cost) -> None:
        self._write_event(
            event_type="model_call",
            data={
                "backend_id": backend_id,
                "agent_id": agent_id,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "latency_ms": latency_ms,
                "success": success,
                "cost": cost,
            },
        )

    def close(self) -> None:
        """
        Close the audit log file handle.
        """
        try:
            if getattr(self, 'file_handle', None):
                self.file_handle.close()
        except OSError as e:
            logger.error(f"Failed to close audit log file: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
