"""
Meshroute: Adaptive Multi-Backend Routing for Agent Swarms
==========================================================

Picks which LLM backend serves each request, trades cheap drafts against
expensive verified calls, keeps spend inside a budget and isolates failing
backends behind circuit breakers.

Core modules:
- models: Pydantic v2 data structures (BackendDescriptor, RouteDecision, etc.)
- config: YAML configuration loader with defaults + typed settings
- catalog: Backend descriptors, cost and latency arithmetic
- profiles: Per-agent routing defaults
- speculative: Draft-then-verify executor and strategy policy
- swarm: Worker-pool dispatcher, pipelines and fan-out
- stack: build_stack() factory wiring everything together

Sub-packages:
- routing: AdaptiveRouter (UCB over observed outcomes)
- safeguards: Circuit breakers and the budget tracker
- observability: Logging, in-memory, JSONL audit and metrics sinks
- inference: Backend caller contract and OpenAI-compatible caller
"""

from meshroute.models import (
    BackendDescriptor,
    BackendResponse,
    BreakerStatus,
    CallOptions,
    CallOutcome,
    CircuitBreakerState,
    Priority,
    RouteDecision,
    RoutingConstraints,
    RoutingStatistic,
    SpeculativeResult,
    SpendReport,
    Strategy,
    SwarmBatchResult,
    SwarmOutcome,
    SwarmPipelineResult,
    SwarmRequest,
)
from meshroute.errors import (
    BackendCallFailure,
    BudgetExhausted,
    CircuitBreakerOpen,
    ConfigError,
    MeshrouteError,
    NoBackendsAvailable,
    UnknownBackend,
)
from meshroute.config import Settings, configure_logging, load_config, parse_settings
from meshroute.catalog import DEFAULT_BACKENDS, BackendCatalog
from meshroute.safeguards import Admission, BudgetTracker, CircuitBreaker, CircuitBreakerRegistry
from meshroute.routing import AdaptiveRouter, confidence_tier
from meshroute.speculative import (
    DraftFailed,
    DraftOk,
    ModelPairStats,
    SpeculativeExecutor,
    SpeculativePolicy,
)
from meshroute.profiles import AgentProfile, ProfileManager
from meshroute.swarm import PipelineStep, SwarmDispatcher, SwarmPipeline
from meshroute.observability import (
    CompositeSink,
    LoggingSink,
    MemorySink,
    MetricsCollector,
    MetricsSink,
    ObservabilitySink,
    RoutingAuditLog,
)
from meshroute.inference import OpenAICompatibleCaller
from meshroute.stack import RoutingStack, build_stack

__all__ = [
    # Models
    "BackendDescriptor",
    "BackendResponse",
    "BreakerStatus",
    "CallOptions",
    "CallOutcome",
    "CircuitBreakerState",
    "Priority",
    "RouteDecision",
    "RoutingConstraints",
    "RoutingStatistic",
    "SpeculativeResult",
    "SpendReport",
    "Strategy",
    "SwarmBatchResult",
    "SwarmOutcome",
    "SwarmPipelineResult",
    "SwarmRequest",
    # Errors
    "BackendCallFailure",
    "BudgetExhausted",
    "CircuitBreakerOpen",
    "ConfigError",
    "MeshrouteError",
    "NoBackendsAvailable",
    "UnknownBackend",
    # Config
    "Settings",
    "configure_logging",
    "load_config",
    "parse_settings",
    # Catalog
    "BackendCatalog",
    "DEFAULT_BACKENDS",
    # Safeguards
    "Admission",
    "BudgetTracker",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    # Routing
    "AdaptiveRouter",
    "confidence_tier",
    # Speculative
    "DraftFailed",
    "DraftOk",
    "ModelPairStats",
    "SpeculativeExecutor",
    "SpeculativePolicy",
    # Profiles
    "AgentProfile",
    "ProfileManager",
    # Swarm
    "PipelineStep",
    "SwarmDispatcher",
    "SwarmPipeline",
    # Observability
    "CompositeSink",
    "LoggingSink",
    "MemorySink",
    "MetricsCollector",
    "MetricsSink",
    "ObservabilitySink",
    "RoutingAuditLog",
    # Inference
    "OpenAICompatibleCaller",
    # Factory
    "RoutingStack",
    "build_stack",
]
