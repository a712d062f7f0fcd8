"""
Meshroute Data Models
=====================

Pydantic v2 data structures shared by the catalog, router, breakers,
budget tracker, speculative executor and swarm dispatcher.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


LOCAL_PROVIDERS = frozenset({"ollama", "llama-cpp", "local"})


class BackendDescriptor(BaseModel):
    """Static description of one backend. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    id: str
    provider: str
    name: str = ""
    cost_per_input_token: float = Field(default=0.0, ge=0.0)   # currency units per token
    cost_per_output_token: float = Field(default=0.0, ge=0.0)
    max_tokens: int = 4096
    context_window: int = 8192
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    latency_p50: float = Field(default=1000.0, ge=0.0)         # ms, prior
    latency_p99: float = Field(default=4000.0, ge=0.0)         # ms, prior
    quality: float = Field(default=0.5, ge=0.0, le=1.0)        # prior
    description: str = ""

    @property
    def is_local(self) -> bool:
        return self.provider in LOCAL_PROVIDERS


class RoutingConstraints(BaseModel):
    """Hard routing constraints. Every field is optional; None means unconstrained.

    - max_cost: upper bound on the estimated cost of the request (default: none)
    - min_quality: lower bound on the backend's quality prior (default: none)
    - max_latency: upper bound on estimated latency in ms (default: none)
    - prefer_local: small score bonus for local providers (default: False)
    - excluded_backends: ids never to route to (default: empty)
    - preferred_backends: ids that get a small score bonus (default: empty)
    """
    model_config = ConfigDict(frozen=True)

    max_cost: Optional[float] = None
    min_quality: Optional[float] = None
    max_latency: Optional[float] = None
    prefer_local: bool = False
    excluded_backends: frozenset[str] = Field(default_factory=frozenset)
    preferred_backends: tuple[str, ...] = ()

    @field_validator("max_cost", "max_latency")
    @classmethod
    def _non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("min_quality")
    @classmethod
    def _unit_interval(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    def merge(self, other: Optional[RoutingConstraints]) -> RoutingConstraints:
        """Overlay ``other`` on top of self; set fields in ``other`` win."""
        if other is None:
            return self
        data = self.model_dump()
        for key, value in other.model_dump(exclude_defaults=True).items():
            if key == "excluded_backends":
                data[key] = frozenset(data[key]) | frozenset(value)
            else:
                data[key] = value
        return RoutingConstraints(**data)


class CallOutcome(BaseModel):
    """One observed backend call, folded into routing statistics."""
    success: bool
    quality: float = Field(default=0.0, ge=0.0, le=1.0)
    latency_ms: float = Field(default=0.0, ge=0.0)
    cost: float = Field(default=0.0, ge=0.0)
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None


class RoutingStatistic(BaseModel):
    """Running statistics for one (backend, task type) key."""
    backend_id: str
    task_type: str
    total_calls: int = 0
    success_count: int = 0
    quality: float = 0.0
    latency_ms: float = 0.0
    cost_per_call: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / max(1, self.total_calls)

    @model_validator(mode="after")
    def _counts_consistent(self) -> RoutingStatistic:
        if self.success_count > self.total_calls:
            raise ValueError("success_count cannot exceed total_calls")
        return self


class RouteDecision(BaseModel):
    """Router output. Confidence is derived by the router, never set by callers."""
    backend_id: str
    backend: BackendDescriptor
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)
    score: float
    estimated_cost: float = 0.0
    estimated_latency_ms: float = 0.0
    alternatives: list[str] = Field(default_factory=list)


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerState(BaseModel):
    """Point-in-time snapshot of one backend's breaker."""
    backend_id: str
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    total_successes: int = 0
    total_failures: int = 0

    @property
    def available(self) -> bool:
        return self.status != BreakerStatus.OPEN

    @property
    def health(self) -> float:
        total = self.total_successes + self.total_failures
        if total == 0:
            return 1.0
        return self.total_successes / total


class BackendResponse(BaseModel):
    """What a backend caller returns for one call."""
    text: str
    tokens_used: int = 0
    latency_ms: float = 0.0
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class Strategy(str, Enum):
    SPECULATIVE = "speculative"
    DIRECT = "direct"


class SpeculativeResult(BaseModel):
    output: str
    total_latency_ms: float = Field(ge=0.0)
    strategy: Strategy
    backend_id: str = ""
    draft_accept_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    cost: float = 0.0
    cost_saved: float = 0.0
    draft_tokens: int = 0
    verified_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reason: str = ""


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class SwarmRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    agent_id: str
    task_type: str
    prompt: str
    estimated_tokens: int = Field(default=1000, ge=0)
    priority: Priority = Priority.NORMAL
    timeout_s: Optional[float] = None
    speculative: bool = False
    constraints: Optional[RoutingConstraints] = None


class SwarmOutcome(BaseModel):
    """Exactly one per SwarmRequest, regardless of sibling outcomes."""
    request_id: str
    agent_id: str = ""
    success: bool
    output: str = ""
    error: Optional[str] = None
    backend_id: Optional[str] = None
    strategy: Optional[Strategy] = None
    cost: float = 0.0
    latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


class SwarmBatchResult(BaseModel):
    results: list[SwarmOutcome] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0
    total_cost: float = 0.0
    total_latency_ms: float = 0.0
    partial_failure: bool = False

    @property
    def success_rate(self) -> float:
        return self.completed / max(1, len(self.results))


class SwarmPipelineResult(BaseModel):
    pipeline_id: str
    results: list[SwarmOutcome] = Field(default_factory=list)
    completed: bool = False
    skipped: list[str] = Field(default_factory=list)
    total_cost: float = 0.0
    total_latency_ms: float = 0.0


class SpendRecord(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    backend_id: str
    agent_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class SpendReport(BaseModel):
    window: str
    total_spend: float = 0.0
    by_backend: dict[str, float] = Field(default_factory=dict)
    by_agent: dict[str, float] = Field(default_factory=dict)
    projected_daily: float = 0.0
    budget_remaining: float = 0.0


class CostAlert(BaseModel):
    threshold: float
    message: str
    severity: str  # info | warning | critical


class CallOptions(BaseModel):
    """Per-call options passed through to the backend caller."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
