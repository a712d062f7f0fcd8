"""
Adaptive Router
===============

Online bandit router that picks which backend serves a request.

Pipeline per ``route()`` call:
1. Validate constraints once (RoutingConstraints)
2. Hard filter: excluded ids, open breakers, min_quality, max_cost, max_latency
3. Soft filter: keep backends advertising a capability for the task type,
   if any survivor does
4. Score survivors with UCB:
       score = quality_estimate - cost_penalty + exploration
   where quality_estimate blends the catalog prior toward the observed mean
   and exploration = c * sqrt(2 ln N / max(1, n)). Unobserved backends get
   an infinite bonus, so every backend is tried before exploitation.
   prefer_local and preferred_backends add small flat bonuses on top.
5. Rank by score desc, then lowest cost per call, then registration order
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
from pydantic import ValidationError

from meshroute.catalog import BackendCatalog, capabilities_for, estimate_cost, split_tokens
from meshroute.errors import ConfigError, NoBackendsAvailable
from meshroute.models import (
    BackendDescriptor,
    CallOutcome,
    RouteDecision,
    RoutingConstraints,
    RoutingStatistic,
)
from meshroute.observability.sink import ObservabilitySink, emit
from meshroute.safeguards.breaker import CircuitBreakerRegistry

logger = logging.getLogger("meshroute.routing.router")

DEFAULT_TOKEN_ESTIMATE = 1000

ConstraintsLike = Union[RoutingConstraints, Mapping, None]


def confidence_tier(confidence: float) -> str:
    """Coarse label for reporting; the underlying value stays continuous."""
    if confidence >= 0.6:
        return "high"
    if confidence >= 0.3:
        return "medium"
    return "low"


@dataclass
class _Candidate:
    backend: BackendDescriptor
    order: int
    calls: int
    quality: float
    cost_per_call: float
    estimated_cost: float
    expected_latency: float


class AdaptiveRouter:
    """UCB router fed by observed call outcomes.

    Statistics are keyed by (backend_id, task_type) and updated only through
    :meth:`update_stats`, each key under its own lock so concurrent updates
    never lose an increment.

    Usage:
        router = AdaptiveRouter(catalog, breakers)
        decision = router.route("planner", "code-generation", {"max_cost": 0.05})
        ...  # call decision.backend_id
        router.update_stats(decision.backend_id, "code-generation",
                            CallOutcome(success=True, quality=0.9, latency_ms=800, cost=0.01))
    """

    def __init__(
        self,
        catalog: BackendCatalog,
        breakers: CircuitBreakerRegistry,
        sink: Optional[ObservabilitySink] = None,
        exploration_constant: float = 1.0,
        cost_weight: float = 0.3,
        cost_reference: float = 0.01,
        prior_weight: float = 5.0,
        local_bonus: float = 0.05,
        preference_bonus: float = 0.05,
        margin_scale: float = 0.05,
        sample_scale: float = 20.0,
        input_share: float = 0.6,
    ):
        self.catalog = catalog
        self.breakers = breakers
        self.sink = sink
        self.exploration_constant = exploration_constant
        self.cost_weight = cost_weight
        self.cost_reference = cost_reference
        self.prior_weight = prior_weight
        self.local_bonus = local_bonus
        self.preference_bonus = preference_bonus
        self.margin_scale = margin_scale
        self.sample_scale = sample_scale
        self.input_share = input_share

        self._stats: Dict[Tuple[str, str], RoutingStatistic] = {}
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._table_lock = threading.Lock()

    # ---- statistics -------------------------------------------------------

    def _key_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._table_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def update_stats(self, backend_id: str, task_type: str, outcome: CallOutcome) -> RoutingStatistic:
        """Fold one observation into the running means for (backend, task type).

        Uses the cumulative average ``mean += (value - mean) / n``.
        Returns a copy of the updated statistic.
        """
        key = (backend_id, task_type)
        with self._key_lock(key):
            with self._table_lock:
                stat = self._stats.get(key)
                if stat is None:
                    stat = self._stats[key] = RoutingStatistic(
                        backend_id=backend_id, task_type=task_type,
                    )
            n = stat.total_calls + 1
            stat.quality += (outcome.quality - stat.quality) / n
            stat.latency_ms += (outcome.latency_ms - stat.latency_ms) / n
            stat.cost_per_call += (outcome.cost - stat.cost_per_call) / n
            stat.total_calls = n
            if outcome.success:
                stat.success_count += 1
            return stat.model_copy()

    def get_stats(self, backend_id: str, task_type: str) -> Optional[RoutingStatistic]:
        key = (backend_id, task_type)
        with self._key_lock(key):
            stat = self._stats.get(key)
            return stat.model_copy() if stat is not None else None

    def all_stats(self) -> List[RoutingStatistic]:
        with self._table_lock:
            keys = list(self._stats)
        return [s for s in (self.get_stats(*k) for k in keys) if s is not None]

    def reset(self) -> None:
        """Administrative reset: forget every observation."""
        with self._table_lock:
            self._stats.clear()
            self._key_locks.clear()

    # ---- routing ----------------------------------------------------------

    @staticmethod
    def _coerce_constraints(constraints: ConstraintsLike) -> RoutingConstraints:
        if constraints is None:
            return RoutingConstraints()
        if isinstance(constraints, RoutingConstraints):
            return constraints
        try:
            return RoutingConstraints.model_validate(dict(constraints))
        except ValidationError as e:
            raise ConfigError(f"Invalid routing constraints: {e}") from e

    def _candidate(self, backend: BackendDescriptor, task_type: str, token_estimate: int) -> _Candidate:
        stat = self.get_stats(backend.id, task_type)
        est_cost = estimate_cost(backend, token_estimate, self.input_share)
        if stat is None or stat.total_calls == 0:
            return _Candidate(
                backend=backend,
                order=self.catalog.registration_index(backend.id),
                calls=0,
                quality=backend.quality,
                cost_per_call=est_cost,
                estimated_cost=est_cost,
                expected_latency=backend.latency_p99,
            )
        n = stat.total_calls
        blended = (self.prior_weight * backend.quality + n * stat.quality) / (self.prior_weight + n)
        return _Candidate(
            backend=backend,
            order=self.catalog.registration_index(backend.id),
            calls=n,
            quality=blended,
            cost_per_call=stat.cost_per_call,
            estimated_cost=est_cost,
            expected_latency=stat.latency_ms,
        )

    def _filter(
        self,
        task_type: str,
        constraints: RoutingConstraints,
        token_estimate: int,
    ) -> Tuple[List[_Candidate], Dict[str, str]]:
        survivors: List[_Candidate] = []
        rejected: Dict[str, str] = {}
        for backend in self.catalog:
            if backend.id in constraints.excluded_backends:
                rejected[backend.id] = "excluded"
                continue
            if not self.breakers.is_available(backend.id):
                rejected[backend.id] = "circuit open"
                continue
            if constraints.min_quality is not None and backend.quality < constraints.min_quality:
                rejected[backend.id] = f"quality {backend.quality:.2f} < {constraints.min_quality:.2f}"
                continue
            cand = self._candidate(backend, task_type, token_estimate)
            if constraints.max_cost is not None and cand.estimated_cost > constraints.max_cost:
                rejected[backend.id] = f"cost {cand.estimated_cost:.6f} > {constraints.max_cost:.6f}"
                continue
            if constraints.max_latency is not None and cand.expected_latency > constraints.max_latency:
                rejected[backend.id] = (
                    f"latency {cand.expected_latency:.0f}ms > {constraints.max_latency:.0f}ms"
                )
                continue
            survivors.append(cand)

        tags = capabilities_for(task_type)
        capable = [c for c in survivors if any(t in c.backend.capabilities for t in tags)]
        if capable:
            for c in survivors:
                if c not in capable:
                    rejected[c.backend.id] = "no capability for task"
            survivors = capable
        return survivors, rejected

    def _score(
        self,
        candidates: List[_Candidate],
        prefer_local: bool,
        preferred: Tuple[str, ...] = (),
    ) -> np.ndarray:
        calls = np.array([c.calls for c in candidates], dtype=float)
        quality = np.array([c.quality for c in candidates], dtype=float)
        cost = np.array([c.estimated_cost for c in candidates], dtype=float)

        penalty = self.cost_weight * cost / (cost + self.cost_reference)
        total = calls.sum()
        if total > 0:
            with np.errstate(divide="ignore", invalid="ignore"):
                bonus = self.exploration_constant * np.sqrt(
                    2.0 * math.log(total) / np.maximum(1.0, calls)
                )
        else:
            bonus = np.zeros_like(calls)
        bonus = np.where(calls == 0, np.inf, bonus)

        scores = quality - penalty + bonus
        if prefer_local:
            local = np.array([c.backend.is_local for c in candidates], dtype=bool)
            scores = scores + np.where(local, self.local_bonus, 0.0)
        if preferred:
            wanted = np.array([c.backend.id in preferred for c in candidates], dtype=bool)
            scores = scores + np.where(wanted, self.preference_bonus, 0.0)
        return scores

    def _confidence(self, winner_score: float, runner_up: Optional[float], calls: int) -> float:
        if math.isinf(winner_score):
            return 0.0
        margin = 1.0 if runner_up is None else max(0.0, winner_score - runner_up)
        separation = 1.0 - math.exp(-margin / self.margin_scale)
        evidence = calls / (calls + self.sample_scale)
        return float(min(1.0, max(0.0, separation * evidence)))

    def eligible(
        self,
        task_type: str,
        constraints: ConstraintsLike = None,
        token_estimate: Optional[int] = None,
    ) -> List[BackendDescriptor]:
        """Backends that :meth:`route` would consider, in registration order."""
        rc = self._coerce_constraints(constraints)
        tokens = DEFAULT_TOKEN_ESTIMATE if token_estimate is None else max(0, int(token_estimate))
        candidates, _ = self._filter(task_type, rc, tokens)
        return [c.backend for c in candidates]

    def route(
        self,
        agent_id: str,
        task_type: str,
        constraints: ConstraintsLike = None,
        token_estimate: Optional[int] = None,
    ) -> RouteDecision:
        """Choose a backend for one request.

        Args:
            agent_id: Requesting agent (reported to the observability sink).
            task_type: Task type tag; statistics are kept per task type.
            constraints: RoutingConstraints or a plain mapping of the same fields.
            token_estimate: Expected total tokens (default 1000), split 60/40
                into input/output for cost estimates.

        Raises:
            NoBackendsAvailable: If no backend survives constraints and breakers.
            ConfigError: If constraints fail validation.
        """
        rc = self._coerce_constraints(constraints)
        tokens = DEFAULT_TOKEN_ESTIMATE if token_estimate is None else max(0, int(token_estimate))

        candidates, rejected = self._filter(task_type, rc, tokens)
        if not candidates:
            logger.warning(
                f"No backends available for agent={agent_id} task={task_type}: {rejected}"
            )
            raise NoBackendsAvailable(
                f"No backend satisfies constraints for task '{task_type}' "
                f"({len(rejected)} rejected)",
                task_type=task_type,
                rejected=rejected,
            )

        scores = self._score(candidates, rc.prefer_local, rc.preferred_backends)
        ranking = sorted(
            range(len(candidates)),
            key=lambda i: (-scores[i], candidates[i].cost_per_call, candidates[i].order),
        )
        best = ranking[0]
        winner = candidates[best]
        winner_score = float(scores[best])
        runner_up = float(scores[ranking[1]]) if len(ranking) > 1 else None
        confidence = self._confidence(winner_score, runner_up, winner.calls)

        if winner.calls == 0:
            reason = f"Cold start: exploring {winner.backend.id} (no observations for {task_type})"
        else:
            reason = (
                f"UCB score {winner_score:.3f} (quality {winner.quality:.3f}, "
                f"{winner.calls} observations) over {len(ranking) - 1} alternative(s)"
            )

        _, output_tokens = split_tokens(tokens, self.input_share)
        decision = RouteDecision(
            backend_id=winner.backend.id,
            backend=winner.backend,
            reason=reason,
            confidence=confidence,
            score=winner_score,
            estimated_cost=winner.estimated_cost,
            estimated_latency_ms=winner.expected_latency,
            alternatives=[candidates[i].backend.id for i in ranking[1:4]],
        )
        logger.debug(
            f"Routed agent={agent_id} task={task_type} -> {decision.backend_id} "
            f"(confidence={confidence:.2f}, {output_tokens} output tokens expected)"
        )
        emit(self.sink, "log_routing_decision", agent_id, task_type, decision)
        return decision
