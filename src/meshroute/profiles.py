"""
Agent Profiles
==============

Per-agent routing defaults: preferred backends, task overrides, hourly
budget, quality floor and latency budget. ``ProfileManager.get_constraints``
turns a profile into ``RoutingConstraints`` for the router; unknown agents
get empty constraints.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from meshroute.models import RoutingConstraints

logger = logging.getLogger("meshroute.profiles")

# Hourly budgets below this make the agent prefer local backends.
LOCAL_PREFERENCE_BUDGET = 1.0


class AgentProfile(BaseModel):
    agent_id: str
    preferred_backends: List[str] = Field(default_factory=list)
    task_overrides: Dict[str, str] = Field(default_factory=dict)  # task type -> backend id
    cost_budget_per_hour: float = Field(default=2.0, ge=0.0)
    quality_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    latency_budget_ms: Optional[float] = Field(default=None, gt=0.0)
    excluded_backends: List[str] = Field(default_factory=list)
    description: str = ""


DEFAULT_AGENT_PROFILES: Dict[str, AgentProfile] = {
    p.agent_id: p for p in [
        AgentProfile(
            agent_id="manager",
            preferred_backends=["anthropic-claude-3-opus", "anthropic-claude-3-sonnet", "openai-gpt-4o"],
            task_overrides={"orchestration": "anthropic-claude-3-opus"},
            cost_budget_per_hour=5.0,
            quality_threshold=0.88,
            latency_budget_ms=8000,
            description="Plans rounds and delegates work",
        ),
        AgentProfile(
            agent_id="developer",
            preferred_backends=[
                "openrouter-qwen/qwen-2.5-coder-32b-instruct",
                "anthropic-claude-3-sonnet",
                "openai-gpt-4o",
            ],
            task_overrides={"code-generation": "openrouter-qwen/qwen-2.5-coder-32b-instruct"},
            cost_budget_per_hour=2.0,
            quality_threshold=0.78,
            latency_budget_ms=6000,
            description="Writes and refactors code",
        ),
        AgentProfile(
            agent_id="tester",
            preferred_backends=["anthropic-claude-3-sonnet", "openai-gpt-4o", "anthropic-claude-3-haiku"],
            task_overrides={"testing": "anthropic-claude-3-sonnet"},
            cost_budget_per_hour=2.0,
            quality_threshold=0.75,
            latency_budget_ms=5000,
            description="Writes tests and reviews failures",
        ),
        AgentProfile(
            agent_id="researcher",
            preferred_backends=["anthropic-claude-3-opus", "anthropic-claude-3-sonnet"],
            task_overrides={"research": "anthropic-claude-3-opus"},
            cost_budget_per_hour=3.0,
            quality_threshold=0.85,
            latency_budget_ms=8000,
            description="Gathers and compares sources",
        ),
        AgentProfile(
            agent_id="designer",
            preferred_backends=["anthropic-claude-3-sonnet", "openai-gpt-4o"],
            task_overrides={"architecture-design": "anthropic-claude-3-sonnet"},
            cost_budget_per_hour=1.5,
            quality_threshold=0.8,
            latency_budget_ms=5000,
            description="Component and interface design",
        ),
        AgentProfile(
            agent_id="summarizer",
            preferred_backends=["ollama-qwen2.5:7b", "anthropic-claude-3-haiku", "openai-gpt-4o-mini"],
            task_overrides={"summarization": "anthropic-claude-3-haiku"},
            cost_budget_per_hour=0.5,
            quality_threshold=0.7,
            latency_budget_ms=4000,
            description="Condenses round output for the next round",
        ),
    ]
}


class ProfileManager:
    """Thread-safe registry of agent profiles.

    Usage:
        profiles = ProfileManager()
        constraints = profiles.get_constraints("developer", "code-generation")
        decision = router.route("developer", "code-generation", constraints)
    """

    def __init__(self, profiles: Optional[Dict[str, AgentProfile]] = None):
        source = DEFAULT_AGENT_PROFILES if profiles is None else profiles
        self._profiles: Dict[str, AgentProfile] = {k: v.model_copy(deep=True) for k, v in source.items()}
        self._lock = threading.Lock()

    def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        with self._lock:
            return self._profiles.get(agent_id)

    def list_profiles(self) -> List[AgentProfile]:
        with self._lock:
            return list(self._profiles.values())

    def get_constraints(self, agent_id: str, task_type: str) -> RoutingConstraints:
        """Routing constraints for (agent, task type); empty for unknown agents.

        The per-request cost ceiling is a rough share of the hourly budget
        (hourly / 3600 * 1000). The task override, then the profile's
        preferred backends, become ``preferred_backends`` for a score bonus.
        """
        profile = self.get_profile(agent_id)
        if profile is None:
            return RoutingConstraints()
        preferred = list(profile.preferred_backends)
        override = profile.task_overrides.get(task_type)
        if override:
            preferred = [override] + [b for b in preferred if b != override]
        return RoutingConstraints(
            max_cost=profile.cost_budget_per_hour / 3600 * 1000,
            min_quality=profile.quality_threshold or None,
            max_latency=profile.latency_budget_ms,
            prefer_local=profile.cost_budget_per_hour < LOCAL_PREFERENCE_BUDGET,
            excluded_backends=frozenset(profile.excluded_backends),
            preferred_backends=tuple(preferred),
        )

    def get_preferred_backend(self, agent_id: str, task_type: str) -> Optional[str]:
        profile = self.get_profile(agent_id)
        if profile is None:
            return None
        override = profile.task_overrides.get(task_type)
        if override:
            return override
        return profile.preferred_backends[0] if profile.preferred_backends else None

    def register_profile(self, profile: AgentProfile) -> None:
        with self._lock:
            self._profiles[profile.agent_id] = profile
        logger.debug(f"Registered profile for {profile.agent_id}")

    def update_profile(self, agent_id: str, **changes) -> AgentProfile:
        """Apply field changes to a profile, creating it for a new agent."""
        with self._lock:
            current = self._profiles.get(agent_id)
            if current is None:
                updated = AgentProfile(agent_id=agent_id, **changes)
            else:
                updated = AgentProfile(**{**current.model_dump(), **changes, "agent_id": agent_id})
            self._profiles[agent_id] = updated
        logger.info(f"Updated profile for {agent_id}: {sorted(changes)}")
        return updated

    def reset_to_defaults(self) -> None:
        with self._lock:
            self._profiles = {k: v.model_copy(deep=True) for k, v in DEFAULT_AGENT_PROFILES.items()}
        logger.info("Agent profiles reset to defaults")
