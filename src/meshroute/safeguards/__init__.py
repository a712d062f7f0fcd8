"""Meshroute Safeguards: per-backend circuit breakers and the spend ledger."""

from meshroute.safeguards.breaker import (
    Admission,
    CircuitBreaker,
    CircuitBreakerRegistry,
)
from meshroute.safeguards.budget import BudgetTracker
from meshroute.errors import BudgetExhausted, CircuitBreakerOpen

__all__ = [
    "Admission",
    "BudgetExhausted",
    "BudgetTracker",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitBreakerRegistry",
]
