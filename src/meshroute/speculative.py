"""
Speculative Executor
====================

Draft-then-verify execution over a cheap/expensive backend pair.

1. Draft: the cheap backend generates up to ``max_draft_tokens`` within its
   latency envelope (p99 prior x timeout multiplier).
2. Verify: the expensive backend is seeded with the draft and returns the
   final response. Acceptance is the share of draft words the verifier kept
   as its leading words.

The draft comes back as a tagged result (``DraftOk`` / ``DraftFailed``). A
failed or timed-out draft, a disabled pair, or an open breaker on the cheap
backend all lead to one direct call on the expensive backend. Exactly one of
the two paths runs per invocation.

Usage:
    executor = SpeculativeExecutor(caller, breakers, budget)
    result = await executor.speculative_decode(prompt, cheap, expensive)
    print(result.strategy, result.draft_accept_rate)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Union

from meshroute.config import SpeculativeSettings
from meshroute.errors import BackendCallFailure
from meshroute.inference.caller import (
    BackendCaller,
    call_timeout,
    estimate_prompt_tokens,
    invoke_backend,
    token_split,
)
from meshroute.models import (
    BackendDescriptor,
    BackendResponse,
    CallOptions,
    SpeculativeResult,
    Strategy,
)
from meshroute.observability.sink import ObservabilitySink, emit
from meshroute.safeguards.breaker import Admission, CircuitBreakerRegistry
from meshroute.safeguards.budget import BudgetTracker

logger = logging.getLogger("meshroute.speculative")

VERIFY_TEMPLATE = (
    "{prompt}\n\n"
    "Draft response:\n{draft}\n\n"
    "Return the final response. Keep the draft wording wherever it is already "
    "correct and rewrite the rest."
)


# ── Draft results ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DraftOk:
    response: BackendResponse
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class DraftFailed:
    reason: str
    timed_out: bool = False
    elapsed_ms: float = 0.0


DraftResult = Union[DraftOk, DraftFailed]


@dataclass
class ModelPairStats:
    """Acceptance history for one (draft, verify) backend pair."""
    draft_backend_id: str
    verify_backend_id: str
    total_attempts: int = 0
    total_acceptance: float = 0.0
    avg_acceptance_rate: float = 0.0
    disabled: bool = False
    last_used: float = 0.0


@dataclass(frozen=True)
class StrategyDecision:
    use_speculative: bool
    backend: BackendDescriptor  # backend for a direct call, verifier otherwise
    reason: str
    draft_backend: Optional[BackendDescriptor] = None


def accepted_prefix(draft: str, verified: str) -> Tuple[int, int]:
    """(common leading words, draft word count) between a draft and its verification."""
    draft_words = draft.split()
    verified_words = verified.split()
    accepted = 0
    for d, v in zip(draft_words, verified_words):
        if d != v:
            break
        accepted += 1
    return accepted, len(draft_words)


class SpeculativePolicy:
    """Decides whether a request is worth speculating on.

    - disabled pair                  -> direct on the expensive backend
    - complexity < threshold         -> direct on the cheap backend
    - latency budget < threshold     -> direct on the expensive backend
    - otherwise                      -> speculative
    """

    def __init__(self, settings: Optional[SpeculativeSettings] = None, cost_budget_threshold: float = 0.001):
        self.settings = settings or SpeculativeSettings()
        self.cost_budget_threshold = cost_budget_threshold

    def decide_strategy(
        self,
        cheap: BackendDescriptor,
        expensive: BackendDescriptor,
        task_complexity: Optional[float] = None,
        latency_budget_ms: Optional[float] = None,
        cost_budget: Optional[float] = None,
        pair_disabled: bool = False,
    ) -> StrategyDecision:
        if pair_disabled:
            return StrategyDecision(
                False, expensive, "Model pair disabled due to low acceptance rate",
            )
        if task_complexity is not None and task_complexity < self.settings.complexity_threshold:
            return StrategyDecision(False, cheap, "Simple task - using draft backend directly")
        if (
            latency_budget_ms is not None
            and latency_budget_ms < self.settings.latency_budget_threshold_ms
        ):
            return StrategyDecision(False, expensive, "Tight latency budget - using direct generation")
        if cost_budget is not None and cost_budget < self.cost_budget_threshold:
            return StrategyDecision(
                True, expensive, "Tight cost budget - using speculative decoding", draft_backend=cheap,
            )
        return StrategyDecision(
            True, expensive, "Complex task - using speculative decoding", draft_backend=cheap,
        )


class SpeculativeExecutor:
    """Runs speculative or direct generation and keeps the books for each call.

    Every backend call made here reports success/failure to the breaker
    registry, spend to the budget tracker and a ``log_model_call`` to the
    sink. Admission of the expensive backend is the caller's job (the
    router and dispatcher gate it); the cheap backend is gated here, since
    the executor is the one choosing to call it.
    """

    def __init__(
        self,
        caller: BackendCaller,
        breakers: Optional[CircuitBreakerRegistry] = None,
        budget: Optional[BudgetTracker] = None,
        sink: Optional[ObservabilitySink] = None,
        settings: Optional[SpeculativeSettings] = None,
        timeout_multiplier: float = 3.0,
        min_timeout_s: float = 1.0,
    ):
        self.caller = caller
        self.breakers = breakers
        self.budget = budget
        self.sink = sink
        self.settings = settings or SpeculativeSettings()
        self.policy = SpeculativePolicy(self.settings)
        self.timeout_multiplier = timeout_multiplier
        self.min_timeout_s = min_timeout_s

        self._pair_stats: Dict[Tuple[str, str], ModelPairStats] = {}
        self._lock = threading.Lock()

    # ---- pair statistics --------------------------------------------------

    def _pair(self, draft_id: str, verify_id: str) -> ModelPairStats:
        # caller holds lock
        key = (draft_id, verify_id)
        stats = self._pair_stats.get(key)
        if stats is None:
            stats = self._pair_stats[key] = ModelPairStats(draft_id, verify_id)
        return stats

    def _update_pair(self, draft_id: str, verify_id: str, accept_rate: float) -> ModelPairStats:
        with self._lock:
            stats = self._pair(draft_id, verify_id)
            stats.total_attempts += 1
            stats.total_acceptance += accept_rate
            stats.avg_acceptance_rate = stats.total_acceptance / stats.total_attempts
            stats.last_used = time.time()
            if (
                not stats.disabled
                and accept_rate < self.settings.acceptance_threshold
                and stats.total_attempts >= self.settings.disable_after_attempts
            ):
                stats.disabled = True
                logger.warning(
                    f"Disabling speculative pair {draft_id} -> {verify_id}: "
                    f"acceptance {stats.avg_acceptance_rate:.2f} over {stats.total_attempts} attempts"
                )
            return replace(stats)

    def get_acceptance_rate(self, draft_id: str, verify_id: str) -> float:
        with self._lock:
            stats = self._pair_stats.get((draft_id, verify_id))
            return stats.avg_acceptance_rate if stats else 0.0

    def all_pair_stats(self) -> List[ModelPairStats]:
        with self._lock:
            return [replace(s) for s in self._pair_stats.values()]

    def is_pair_disabled(self, draft_id: str, verify_id: str) -> bool:
        with self._lock:
            stats = self._pair_stats.get((draft_id, verify_id))
            return stats.disabled if stats else False

    def enable_pair(self, draft_id: str, verify_id: str) -> None:
        """Re-enable a disabled pair and forget its acceptance history."""
        with self._lock:
            if (draft_id, verify_id) in self._pair_stats:
                self._pair_stats[(draft_id, verify_id)] = ModelPairStats(draft_id, verify_id)
        logger.info(f"Re-enabled speculative pair {draft_id} -> {verify_id}")

    def reset_stats(self, draft_id: Optional[str] = None, verify_id: Optional[str] = None) -> None:
        with self._lock:
            if draft_id is not None and verify_id is not None:
                self._pair_stats.pop((draft_id, verify_id), None)
            else:
                self._pair_stats.clear()

    # ---- bookkeeping ------------------------------------------------------

    def _record(
        self,
        backend: BackendDescriptor,
        agent_id: str,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
        success: bool,
    ) -> float:
        if self.breakers is not None:
            if success:
                self.breakers.record_success(backend.id)
            else:
                self.breakers.record_failure(backend.id)
        if self.budget is not None:
            cost = self.budget.record_spend(backend.id, agent_id, input_tokens, output_tokens)
        else:
            cost = (
                input_tokens * backend.cost_per_input_token
                + output_tokens * backend.cost_per_output_token
            )
        emit(self.sink, "log_model_call", backend.id, agent_id, input_tokens,
             output_tokens, latency_ms, success, cost)
        return cost

    def _timeout(self, backend: BackendDescriptor) -> float:
        return call_timeout(backend, self.timeout_multiplier, self.min_timeout_s)

    async def _call(
        self,
        prompt: str,
        backend: BackendDescriptor,
        options: CallOptions,
        agent_id: str,
    ) -> Tuple[BackendResponse, int, int, float]:
        """One booked call. Returns (response, input tokens, output tokens, cost)."""
        start = time.perf_counter()
        try:
            response = await invoke_backend(
                self.caller, prompt, backend, options, self._timeout(backend),
            )
        except BackendCallFailure:
            self._record(backend, agent_id, 0, 0, (time.perf_counter() - start) * 1000, False)
            raise
        input_tokens, output_tokens = token_split(response, estimate_prompt_tokens(prompt))
        cost = self._record(
            backend, agent_id, input_tokens, output_tokens, response.latency_ms, True,
        )
        return response, input_tokens, output_tokens, cost

    # ---- execution --------------------------------------------------------

    async def draft(
        self,
        prompt: str,
        cheap: BackendDescriptor,
        options: Optional[CallOptions] = None,
        agent_id: str = "speculative",
    ) -> DraftResult:
        """Run the draft call. Never raises for backend trouble.

        A cancelled draft hands its breaker slot on ``cheap`` back before the
        cancellation propagates.
        """
        admission = Admission.CLOSED
        if self.breakers is not None:
            admission = self.breakers.acquire(cheap.id)
            if not admission:
                return DraftFailed(reason=f"circuit open for {cheap.id}")

        draft_options = CallOptions(
            temperature=options.temperature if options else None,
            max_tokens=self.settings.max_draft_tokens,
        )
        start = time.perf_counter()
        try:
            response, input_tokens, output_tokens, _ = await self._call(
                prompt, cheap, draft_options, agent_id,
            )
        except asyncio.CancelledError:
            if self.breakers is not None:
                self.breakers.release(cheap.id, admission)
            raise
        except BackendCallFailure as e:
            return DraftFailed(
                reason=str(e),
                timed_out=e.timed_out,
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )
        if not response.text.strip():
            return DraftFailed(
                reason=f"{cheap.id}: empty draft",
                elapsed_ms=response.latency_ms,
            )
        return DraftOk(response=response, input_tokens=input_tokens, output_tokens=output_tokens)

    async def direct(
        self,
        prompt: str,
        backend: BackendDescriptor,
        options: Optional[CallOptions] = None,
        agent_id: str = "speculative",
        reason: str = "",
        prior_latency_ms: float = 0.0,
    ) -> SpeculativeResult:
        """Single authoritative call on ``backend``.

        Raises:
            BackendCallFailure: If the call fails, times out or returns no text.
        """
        direct_options = CallOptions(
            temperature=options.temperature if options else None,
            max_tokens=(options.max_tokens if options and options.max_tokens
                        else self.settings.direct_max_tokens),
        )
        response, input_tokens, output_tokens, cost = await self._call(
            prompt, backend, direct_options, agent_id,
        )
        if not response.text.strip():
            raise BackendCallFailure(backend.id, "empty response")
        return SpeculativeResult(
            output=response.text,
            total_latency_ms=max(0.0, prior_latency_ms + response.latency_ms),
            strategy=Strategy.DIRECT,
            backend_id=backend.id,
            cost=cost,
            verified_tokens=output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            reason=reason,
        )

    async def speculative_decode(
        self,
        prompt: str,
        cheap: BackendDescriptor,
        expensive: BackendDescriptor,
        options: Optional[CallOptions] = None,
        agent_id: str = "speculative",
    ) -> SpeculativeResult:
        """Draft on ``cheap``, verify on ``expensive``; fall back to one direct call.

        Raises:
            BackendCallFailure: If the authoritative call on ``expensive``
                (verify or direct) fails. Draft failures never surface.
        """
        if self.is_pair_disabled(cheap.id, expensive.id):
            return await self.direct(
                prompt, expensive, options, agent_id,
                reason="Model pair disabled due to low acceptance rate",
            )

        draft = await self.draft(prompt, cheap, options, agent_id)
        if isinstance(draft, DraftFailed):
            logger.info(
                f"Draft on {cheap.id} failed ({draft.reason}); direct call on {expensive.id}"
            )
            return await self.direct(
                prompt, expensive, options, agent_id,
                reason=f"Draft failed: {draft.reason}",
                prior_latency_ms=draft.elapsed_ms,
            )
        return await self._verify(prompt, cheap, expensive, draft, options, agent_id)

    async def _verify(
        self,
        prompt: str,
        cheap: BackendDescriptor,
        expensive: BackendDescriptor,
        draft: DraftOk,
        options: Optional[CallOptions],
        agent_id: str,
    ) -> SpeculativeResult:
        draft_text = draft.response.text.strip()
        verify_prompt = VERIFY_TEMPLATE.format(prompt=prompt, draft=draft_text)
        verify_options = CallOptions(
            temperature=options.temperature if options else None,
            max_tokens=self.settings.verify_max_tokens,
        )
        response, input_tokens, output_tokens, verify_cost = await self._call(
            verify_prompt, expensive, verify_options, agent_id,
        )

        verified_text = response.text.strip()
        accepted, draft_words = accepted_prefix(draft_text, verified_text)
        accept_rate = accepted / draft_words if draft_words else 0.0
        stats = self._update_pair(cheap.id, expensive.id, accept_rate)

        draft_cost = (
            draft.input_tokens * cheap.cost_per_input_token
            + draft.output_tokens * cheap.cost_per_output_token
        )
        accepted_tokens = round(draft.output_tokens * accept_rate)
        cost_saved = max(
            0.0,
            accepted_tokens * (expensive.cost_per_output_token - cheap.cost_per_output_token),
        )
        logger.debug(
            f"Speculative {cheap.id} -> {expensive.id}: accepted {accepted}/{draft_words} words "
            f"(pair avg {stats.avg_acceptance_rate:.2f})"
        )
        return SpeculativeResult(
            output=verified_text or draft_text,
            total_latency_ms=max(0.0, draft.response.latency_ms + response.latency_ms),
            strategy=Strategy.SPECULATIVE,
            backend_id=expensive.id,
            draft_accept_rate=min(1.0, max(0.0, accept_rate)),
            cost=draft_cost + verify_cost,
            cost_saved=cost_saved,
            draft_tokens=draft.output_tokens,
            verified_tokens=output_tokens,
            input_tokens=draft.input_tokens + input_tokens,
            output_tokens=draft.output_tokens + output_tokens,
            reason=f"Draft accepted {accepted}/{draft_words} words",
        )

    async def generate(
        self,
        prompt: str,
        cheap: BackendDescriptor,
        expensive: BackendDescriptor,
        task_complexity: Optional[float] = None,
        latency_budget_ms: Optional[float] = None,
        cost_budget: Optional[float] = None,
        options: Optional[CallOptions] = None,
        agent_id: str = "speculative",
    ) -> SpeculativeResult:
        """Apply :class:`SpeculativePolicy`, then execute the chosen path.

        A task below ``complexity_threshold`` goes straight to ``cheap``
        rather than ``expensive``: a simple task is not worth the expensive
        backend at all. Every other non-speculative path (disabled pair,
        tight latency budget, failed draft) calls ``expensive``.
        """
        decision = self.policy.decide_strategy(
            cheap, expensive,
            task_complexity=task_complexity,
            latency_budget_ms=latency_budget_ms,
            cost_budget=cost_budget,
            pair_disabled=self.is_pair_disabled(cheap.id, expensive.id),
        )
        if not decision.use_speculative:
            return await self.direct(prompt, decision.backend, options, agent_id, reason=decision.reason)
        return await self.speculative_decode(prompt, cheap, expensive, options, agent_id)
