"""
Meshroute Error Taxonomy
========================

Request-local failures (a backend call that failed or timed out) are caught
by the dispatcher and turned into per-request outcomes. Global failures
(impossible constraints, bad configuration) propagate to whoever called
``route`` or ``speculative_decode``.
"""

from __future__ import annotations

from typing import Optional


class MeshrouteError(Exception):
    """Base class for all meshroute errors."""


class NoBackendsAvailable(MeshrouteError):
    """Raised when constraints plus breaker state eliminate every candidate."""

    def __init__(self, message: str, task_type: str = "", rejected: Optional[dict] = None):
        super().__init__(message)
        self.task_type = task_type
        self.rejected = rejected or {}


class BackendCallFailure(MeshrouteError):
    """A single backend invocation failed or timed out."""

    def __init__(self, backend_id: str, message: str, timed_out: bool = False):
        super().__init__(f"{backend_id}: {message}")
        self.backend_id = backend_id
        self.timed_out = timed_out


class BudgetExhausted(MeshrouteError):
    """Raised by callers enforcing admission control once the daily limit is hit."""


class CircuitBreakerOpen(MeshrouteError):
    """Raised when a backend's circuit breaker refuses a call."""

    def __init__(self, backend_id: str, retry_in: float = 0.0):
        super().__init__(
            f"Circuit breaker open for {backend_id}. Retry in {retry_in:.1f}s"
        )
        self.backend_id = backend_id
        self.retry_in = retry_in


class UnknownBackend(MeshrouteError, KeyError):
    """Raised only by explicit ``require()`` lookups against the catalog."""


class ConfigError(MeshrouteError, ValueError):
    """Invalid configuration values."""
