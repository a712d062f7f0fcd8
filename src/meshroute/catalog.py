"""
Backend Catalog
===============

Static-ish lookup of backend descriptors plus cost and latency arithmetic.
Registration order is remembered because the router uses it as its final
tie-break.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from meshroute.errors import UnknownBackend
from meshroute.models import BackendDescriptor

logger = logging.getLogger("meshroute.catalog")


TASK_CAPABILITY_MAP: Dict[str, Tuple[str, ...]] = {
    "code-generation": ("code-generation",),
    "code-analysis": ("code-analysis",),
    "architecture-design": ("architecture", "reasoning"),
    "testing": ("testing", "code-analysis"),
    "documentation": ("documentation", "summarization"),
    "research": ("research", "reasoning"),
    "summarization": ("summarization",),
    "validation": ("code-analysis", "testing"),
    "orchestration": ("reasoning", "architecture"),
    "quick-query": ("chat", "quick-query"),
}

# Tokens per second used for latency estimates.
LOCAL_TOKENS_PER_SECOND = 100.0
REMOTE_TOKENS_PER_SECOND = 50.0

DEFAULT_INPUT_SHARE = 0.6


def _backend(**kwargs) -> BackendDescriptor:
    kwargs["capabilities"] = frozenset(kwargs.get("capabilities", ()))
    return BackendDescriptor(**kwargs)


DEFAULT_BACKENDS: List[BackendDescriptor] = [
    # Local
    _backend(
        id="ollama-qwen2.5:7b", name="qwen2.5:7b", provider="ollama",
        max_tokens=4096, context_window=128_000,
        capabilities=("chat", "code-generation", "code-analysis", "quick-query"),
        latency_p50=500, latency_p99=2000, quality=0.7,
        description="Fast local model good for quick code tasks",
    ),
    _backend(
        id="ollama-qwen2.5:14b", name="qwen2.5:14b", provider="ollama",
        max_tokens=4096, context_window=128_000,
        capabilities=("chat", "code-generation", "code-analysis", "documentation", "testing"),
        latency_p50=1000, latency_p99=4000, quality=0.78,
        description="Larger local model with better code understanding",
    ),
    _backend(
        id="ollama-deepseek-coder:6.7b", name="deepseek-coder:6.7b", provider="ollama",
        max_tokens=4096, context_window=16_384,
        capabilities=("chat", "code-generation", "code-analysis"),
        latency_p50=700, latency_p99=3000, quality=0.75,
        description="Specialized coding model",
    ),
    # OpenRouter
    _backend(
        id="openrouter-qwen/qwen-2.5-coder-32b-instruct", name="Qwen2.5 Coder 32B",
        provider="openrouter",
        cost_per_input_token=0.00000015, cost_per_output_token=0.0000004,
        max_tokens=4096, context_window=128_000,
        capabilities=("chat", "code-generation", "code-analysis", "architecture"),
        latency_p50=800, latency_p99=3000, quality=0.82,
    ),
    _backend(
        id="openrouter-deepseek/deepseek-chat", name="DeepSeek Chat", provider="openrouter",
        cost_per_input_token=0.00000014, cost_per_output_token=0.00000028,
        max_tokens=4096, context_window=64_000,
        capabilities=("chat", "code-generation", "code-analysis", "reasoning"),
        latency_p50=1000, latency_p99=4000, quality=0.8,
    ),
    # Anthropic
    _backend(
        id="anthropic-claude-3-haiku", name="claude-3-haiku", provider="anthropic",
        cost_per_input_token=0.00000025, cost_per_output_token=0.00000125,
        max_tokens=4096, context_window=200_000,
        capabilities=("chat", "summarization", "quick-query", "documentation"),
        latency_p50=400, latency_p99=1500, quality=0.75,
    ),
    _backend(
        id="anthropic-claude-3-sonnet", name="claude-3-sonnet", provider="anthropic",
        cost_per_input_token=0.000003, cost_per_output_token=0.000015,
        max_tokens=4096, context_window=200_000,
        capabilities=("chat", "code-generation", "code-analysis", "architecture",
                      "reasoning", "testing", "tool-use"),
        latency_p50=800, latency_p99=3500, quality=0.88,
    ),
    _backend(
        id="anthropic-claude-3-opus", name="claude-3-opus", provider="anthropic",
        cost_per_input_token=0.000015, cost_per_output_token=0.000075,
        max_tokens=4096, context_window=200_000,
        capabilities=("chat", "code-generation", "code-analysis", "architecture",
                      "reasoning", "research", "testing", "tool-use"),
        latency_p50=1500, latency_p99=6000, quality=0.95,
    ),
    # OpenAI
    _backend(
        id="openai-gpt-4o-mini", name="gpt-4o-mini", provider="openai",
        cost_per_input_token=0.00000015, cost_per_output_token=0.0000006,
        max_tokens=4096, context_window=128_000,
        capabilities=("chat", "quick-query", "summarization", "code-generation"),
        latency_p50=500, latency_p99=2000, quality=0.78,
    ),
    _backend(
        id="openai-gpt-4o", name="gpt-4o", provider="openai",
        cost_per_input_token=0.0000025, cost_per_output_token=0.00001,
        max_tokens=4096, context_window=128_000,
        capabilities=("chat", "code-generation", "code-analysis", "architecture",
                      "reasoning", "tool-use"),
        latency_p50=700, latency_p99=3000, quality=0.9,
    ),
]


def capabilities_for(task_type: str) -> Tuple[str, ...]:
    """Capability tags that qualify a backend for ``task_type``.

    Unknown task types map to themselves so callers can use free-form tags.
    """
    return TASK_CAPABILITY_MAP.get(task_type, (task_type,))


def split_tokens(token_estimate: int, input_share: float = DEFAULT_INPUT_SHARE) -> Tuple[int, int]:
    """Split a total token estimate into (input, output) counts."""
    token_estimate = max(0, int(token_estimate))
    input_tokens = int(token_estimate * input_share)
    return input_tokens, token_estimate - input_tokens


def estimate_cost(
    backend: BackendDescriptor,
    token_estimate: int,
    input_share: float = DEFAULT_INPUT_SHARE,
) -> float:
    input_tokens, output_tokens = split_tokens(token_estimate, input_share)
    return (
        input_tokens * backend.cost_per_input_token
        + output_tokens * backend.cost_per_output_token
    )


def estimate_latency(backend: BackendDescriptor, output_tokens: int) -> float:
    """p50 latency prior plus linear generation time, in ms."""
    tps = LOCAL_TOKENS_PER_SECOND if backend.is_local else REMOTE_TOKENS_PER_SECOND
    return backend.latency_p50 + (max(0, output_tokens) / tps) * 1000.0


class BackendCatalog:
    """Registry of backend descriptors.

    Lookups for unregistered ids return ``None`` (or raise ``UnknownBackend``
    from :meth:`require`). Costs and token counts are not clamped; callers
    supply non-negative values.
    """

    def __init__(self, backends: Optional[Iterable[BackendDescriptor]] = None):
        self._backends: Dict[str, BackendDescriptor] = {}
        self._order: Dict[str, int] = {}
        self._lock = threading.Lock()
        for backend in backends or ():
            self.register(backend)

    @classmethod
    def with_defaults(cls) -> BackendCatalog:
        return cls(DEFAULT_BACKENDS)

    def register(self, descriptor: BackendDescriptor) -> None:
        """Register a backend. Descriptors are immutable once registered.

        Raises:
            ValueError: If ``descriptor.id`` is already registered.
        """
        with self._lock:
            if descriptor.id in self._backends:
                raise ValueError(f"Backend already registered: {descriptor.id}")
            self._order[descriptor.id] = len(self._order)
            self._backends[descriptor.id] = descriptor
        logger.debug(f"Registered backend {descriptor.id} ({descriptor.provider})")

    def get(self, backend_id: str) -> Optional[BackendDescriptor]:
        return self._backends.get(backend_id)

    def require(self, backend_id: str) -> BackendDescriptor:
        backend = self._backends.get(backend_id)
        if backend is None:
            raise UnknownBackend(backend_id)
        return backend

    def registration_index(self, backend_id: str) -> int:
        return self._order.get(backend_id, len(self._order))

    def all(self) -> List[BackendDescriptor]:
        return list(self._backends.values())

    def filter_by_capability(self, tag: str) -> List[BackendDescriptor]:
        return [b for b in self._backends.values() if tag in b.capabilities]

    def filter_by_provider(self, provider: str) -> List[BackendDescriptor]:
        return [b for b in self._backends.values() if b.provider == provider]

    def filter_by_min_quality(self, min_quality: float) -> List[BackendDescriptor]:
        return [b for b in self._backends.values() if b.quality >= min_quality]

    def filter_for_task(self, task_type: str) -> List[BackendDescriptor]:
        tags = capabilities_for(task_type)
        return [
            b for b in self._backends.values()
            if any(tag in b.capabilities for tag in tags)
        ]

    def providers(self) -> List[str]:
        return list(dict.fromkeys(b.provider for b in self._backends.values()))

    def calculate_cost(
        self,
        backend_id: str,
        input_tokens: int,
        output_tokens: int,
    ) -> Optional[float]:
        """Cost of a call, or ``None`` if ``backend_id`` is not registered."""
        backend = self._backends.get(backend_id)
        if backend is None:
            return None
        return (
            input_tokens * backend.cost_per_input_token
            + output_tokens * backend.cost_per_output_token
        )

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._backends

    def __iter__(self) -> Iterator[BackendDescriptor]:
        return iter(list(self._backends.values()))

    def __len__(self) -> int:
        return len(self._backends)
