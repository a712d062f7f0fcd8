"""
Swarm Dispatcher
================

Concurrent entry point: runs many independent requests, each through

    budget admission -> route -> breaker acquire -> call (speculative or direct)
    -> record spend -> update router stats -> breaker record -> log call

bounded by a semaphore worker pool. Every request resolves to exactly one
``SwarmOutcome``; a failing request never aborts its siblings.

Also runs sequential pipelines (per-step conditions, stop on failure) and
fan-out of one request over several backends.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from meshroute.catalog import estimate_cost, split_tokens
from meshroute.errors import (
    BackendCallFailure,
    BudgetExhausted,
    CircuitBreakerOpen,
    MeshrouteError,
)
from meshroute.inference.caller import (
    BackendCaller,
    call_timeout,
    estimate_prompt_tokens,
    invoke_backend,
    token_split,
)
from meshroute.models import (
    BackendDescriptor,
    CallOptions,
    CallOutcome,
    Priority,
    RoutingConstraints,
    Strategy,
    SwarmBatchResult,
    SwarmOutcome,
    SwarmPipelineResult,
    SwarmRequest,
)
from meshroute.observability.sink import ObservabilitySink, emit
from meshroute.profiles import ProfileManager
from meshroute.routing.router import DEFAULT_TOKEN_ESTIMATE, AdaptiveRouter
from meshroute.safeguards.breaker import Admission, CircuitBreakerRegistry
from meshroute.safeguards.budget import BudgetTracker
from meshroute.speculative import SpeculativeExecutor

logger = logging.getLogger("meshroute.swarm")

DEADLINE_EXCEEDED = "deadline exceeded"
FAN_OUT_STRATEGIES = ("best", "consensus")


@dataclass
class PipelineStep:
    """One step of a sequential pipeline.

    ``condition`` receives the previous step's outcome; the step is skipped
    when it returns False. The first step always runs.
    """
    request: SwarmRequest
    condition: Optional[Callable[[SwarmOutcome], bool]] = None


@dataclass
class SwarmPipeline:
    steps: List[PipelineStep]
    name: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class SwarmDispatcher:
    """Worker-pool dispatcher over the router, breakers and budget.

    All collaborators are injected; nothing here is global.

    Usage:
        dispatcher = SwarmDispatcher(router, breakers, budget, caller, max_concurrent=4)
        batch = await dispatcher.execute_parallel(requests, deadline_s=30.0)
        print(f"{batch.completed}/{len(batch.results)} completed")
    """

    def __init__(
        self,
        router: AdaptiveRouter,
        breakers: CircuitBreakerRegistry,
        budget: BudgetTracker,
        caller: BackendCaller,
        speculative: Optional[SpeculativeExecutor] = None,
        profiles: Optional[ProfileManager] = None,
        sink: Optional[ObservabilitySink] = None,
        max_concurrent: int = 8,
        deadline_s: Optional[float] = None,
        timeout_multiplier: float = 3.0,
        min_timeout_s: float = 1.0,
        default_quality: float = 0.85,
        input_share: float = 0.6,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.router = router
        self.breakers = breakers
        self.budget = budget
        self.caller = caller
        self.speculative = speculative
        self.profiles = profiles
        self.sink = sink
        self.max_concurrent = max_concurrent
        self.deadline_s = deadline_s
        self.timeout_multiplier = timeout_multiplier
        self.min_timeout_s = min_timeout_s
        self.default_quality = default_quality
        self.input_share = input_share

    @property
    def catalog(self):
        return self.router.catalog

    # ── Admission ────────────────────────────────────────────────────────────

    def _check_budget(self, request: SwarmRequest) -> None:
        if self.budget.is_exhausted():
            raise BudgetExhausted(
                f"Daily budget exhausted ({self.budget.get_daily_spend():.4f} spent)"
            )
        if self.budget.only_critical_allowed() and request.priority != Priority.CRITICAL:
            raise BudgetExhausted(
                f"Budget nearly exhausted; only critical requests admitted "
                f"(priority={request.priority.value})"
            )

    def _constraints_for(self, request: SwarmRequest) -> RoutingConstraints:
        constraints = RoutingConstraints()
        if self.profiles is not None:
            constraints = self.profiles.get_constraints(request.agent_id, request.task_type)
        constraints = constraints.merge(request.constraints)
        if self.budget.should_downgrade():
            remaining = self.budget.remaining()
            max_cost = remaining if constraints.max_cost is None else min(constraints.max_cost, remaining)
            constraints = constraints.model_copy(update={"prefer_local": True, "max_cost": max_cost})
        return constraints

    def _route_and_acquire(
        self, request: SwarmRequest,
    ) -> Tuple[BackendDescriptor, RoutingConstraints, Admission]:
        """Route, then claim the breaker; re-route around backends that refuse.

        Returns the backend, the effective constraints and the breaker admission.
        """
        constraints = self._constraints_for(request)
        refused: set[str] = set()
        while True:
            decision = self.router.route(
                request.agent_id, request.task_type, constraints, request.estimated_tokens,
            )
            admission = self.breakers.acquire(decision.backend_id)
            if admission:
                return decision.backend, constraints, admission
            # Half-open with a probe already in flight.
            refused.add(decision.backend_id)
            logger.debug(f"Breaker refused {decision.backend_id} for {request.id}; re-routing")
            constraints = constraints.model_copy(
                update={"excluded_backends": constraints.excluded_backends | frozenset(refused)}
            )

    # ── Single request ───────────────────────────────────────────────────────

    def _options_for(self, request: SwarmRequest) -> CallOptions:
        if request.estimated_tokens <= 0:
            return CallOptions()
        _, output_tokens = split_tokens(request.estimated_tokens, self.input_share)
        return CallOptions(max_tokens=max(1, output_tokens))

    def _draft_backend(
        self,
        request: SwarmRequest,
        expensive: BackendDescriptor,
        constraints: Optional[RoutingConstraints] = None,
    ) -> Optional[BackendDescriptor]:
        """Cheapest backend under ``constraints`` that undercuts ``expensive``."""
        candidates = self.router.eligible(request.task_type, constraints, request.estimated_tokens)
        tokens = request.estimated_tokens or DEFAULT_TOKEN_ESTIMATE
        ceiling = estimate_cost(expensive, tokens, self.input_share)
        cheaper = [
            b for b in candidates
            if b.id != expensive.id and estimate_cost(b, tokens, self.input_share) < ceiling
        ]
        if not cheaper:
            return None
        return min(
            cheaper,
            key=lambda b: (estimate_cost(b, tokens, self.input_share), self.catalog.registration_index(b.id)),
        )

    @staticmethod
    def _failed(
        request: SwarmRequest,
        error: str,
        start: float,
        backend_id: Optional[str] = None,
        cost: float = 0.0,
    ) -> SwarmOutcome:
        return SwarmOutcome(
            request_id=request.id,
            agent_id=request.agent_id,
            success=False,
            error=error,
            backend_id=backend_id,
            cost=cost,
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    async def _execute_speculative(
        self,
        request: SwarmRequest,
        backend: BackendDescriptor,
        start: float,
        constraints: Optional[RoutingConstraints] = None,
    ) -> SwarmOutcome:
        # The executor books breaker, spend and sink events for each call it makes.
        options = self._options_for(request)
        cheap = self._draft_backend(request, backend, constraints)
        try:
            if cheap is None:
                result = await self.speculative.direct(
                    request.prompt, backend, options, request.agent_id,
                    reason="No cheaper draft backend available",
                )
            else:
                result = await self.speculative.speculative_decode(
                    request.prompt, cheap, backend, options, request.agent_id,
                )
        except BackendCallFailure as e:
            latency = (time.perf_counter() - start) * 1000
            self.router.update_stats(
                backend.id, request.task_type,
                CallOutcome(success=False, latency_ms=latency, error=str(e)),
            )
            return self._failed(request, str(e), start, backend.id)

        self.router.update_stats(
            backend.id, request.task_type,
            CallOutcome(
                success=True,
                quality=self.default_quality,
                latency_ms=result.total_latency_ms,
                cost=result.cost,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            ),
        )
        return SwarmOutcome(
            request_id=request.id,
            agent_id=request.agent_id,
            success=True,
            output=result.output,
            backend_id=backend.id,
            strategy=result.strategy,
            cost=result.cost,
            latency_ms=result.total_latency_ms,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    async def _execute_direct(
        self, request: SwarmRequest, backend: BackendDescriptor, start: float,
    ) -> SwarmOutcome:
        timeout = request.timeout_s or call_timeout(backend, self.timeout_multiplier, self.min_timeout_s)
        try:
            response = await invoke_backend(
                self.caller, request.prompt, backend, self._options_for(request), timeout,
            )
        except BackendCallFailure as e:
            latency = (time.perf_counter() - start) * 1000
            cost = self.budget.record_spend(backend.id, request.agent_id, 0, 0)
            self.router.update_stats(
                backend.id, request.task_type,
                CallOutcome(success=False, latency_ms=latency, cost=cost, error=str(e)),
            )
            self.breakers.record_failure(backend.id)
            emit(self.sink, "log_model_call", backend.id, request.agent_id, 0, 0, latency, False, cost)
            return self._failed(request, str(e), start, backend.id, cost)

        input_tokens, output_tokens = token_split(response, estimate_prompt_tokens(request.prompt))
        cost = self.budget.record_spend(backend.id, request.agent_id, input_tokens, output_tokens)
        self.router.update_stats(
            backend.id, request.task_type,
            CallOutcome(
                success=True,
                quality=self.default_quality,
                latency_ms=response.latency_ms,
                cost=cost,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            ),
        )
        self.breakers.record_success(backend.id)
        emit(self.sink, "log_model_call", backend.id, request.agent_id, input_tokens,
             output_tokens, response.latency_ms, True, cost)
        return SwarmOutcome(
            request_id=request.id,
            agent_id=request.agent_id,
            success=True,
            output=response.text,
            backend_id=backend.id,
            strategy=Strategy.DIRECT,
            cost=cost,
            latency_ms=response.latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def _execute_on(
        self,
        request: SwarmRequest,
        backend: BackendDescriptor,
        start: float,
        admission: Admission,
        constraints: Optional[RoutingConstraints] = None,
    ) -> SwarmOutcome:
        """Call an already-acquired backend.

        If cancelled while holding the half-open slot, the slot is
        handed back so the next request can take it.
        """
        try:
            if request.speculative and self.speculative is not None:
                return await self._execute_speculative(request, backend, start, constraints)
            return await self._execute_direct(request, backend, start)
        except asyncio.CancelledError:
            self.breakers.release(backend.id, admission)
            raise

    async def execute(self, request: SwarmRequest) -> SwarmOutcome:
        """Run one request through the full cycle. Never raises for request-local errors."""
        start = time.perf_counter()
        try:
            self._check_budget(request)
            backend, constraints, admission = self._route_and_acquire(request)
        except MeshrouteError as e:
            logger.warning(f"Request {request.id} ({request.agent_id}) not dispatched: {e}")
            return self._failed(request, str(e), start)
        return await self._execute_on(request, backend, start, admission, constraints)

    # ── Batches ──────────────────────────────────────────────────────────────

    async def execute_parallel(
        self,
        requests: Iterable[SwarmRequest],
        deadline_s: Optional[float] = None,
    ) -> SwarmBatchResult:
        """Run ``requests`` concurrently, at most ``max_concurrent`` at a time.

        Args:
            requests: Requests to dispatch.
            deadline_s: Overall deadline for the batch (default: configured
                deadline, or none). Requests still pending when it passes are
                cancelled and resolved as failed with "deadline exceeded".

        Returns:
            SwarmBatchResult with one outcome per request, in submission order.
        """
        requests = list(requests)
        if not requests:
            return SwarmBatchResult()
        deadline = deadline_s if deadline_s is not None else self.deadline_s
        semaphore = asyncio.Semaphore(self.max_concurrent)
        batch_start = time.perf_counter()

        async def worker(request: SwarmRequest) -> SwarmOutcome:
            async with semaphore:
                return await self.execute(request)

        tasks = [asyncio.create_task(worker(r)) for r in requests]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"Batch deadline of {deadline}s exceeded; {len(pending)} request(s) cancelled"
            )

        outcomes: List[SwarmOutcome] = []
        for request, task in zip(requests, tasks):
            if task in pending or task.cancelled():
                outcomes.append(self._failed(request, DEADLINE_EXCEEDED, batch_start))
                continue
            error = task.exception()
            if error is not None:
                logger.error(f"Request {request.id} raised unexpectedly: {error!r}")
                outcomes.append(self._failed(request, f"{type(error).__name__}: {error}", batch_start))
            else:
                outcomes.append(task.result())

        return self._aggregate(outcomes, (time.perf_counter() - batch_start) * 1000)

    @staticmethod
    def _aggregate(outcomes: List[SwarmOutcome], elapsed_ms: float) -> SwarmBatchResult:
        completed = sum(1 for o in outcomes if o.success)
        failed = len(outcomes) - completed
        logger.info(
            f"Batch of {len(outcomes)}: {completed} completed, {failed} failed "
            f"in {elapsed_ms:.0f}ms"
        )
        return SwarmBatchResult(
            results=outcomes,
            completed=completed,
            failed=failed,
            total_cost=sum(o.cost for o in outcomes),
            total_latency_ms=elapsed_ms,
            partial_failure=0 < failed < len(outcomes),
        )

    # ── Pipelines ────────────────────────────────────────────────────────────

    async def execute_sequential(self, pipeline: SwarmPipeline) -> SwarmPipelineResult:
        """Run pipeline steps in order, stopping at the first failed step."""
        results: List[SwarmOutcome] = []
        skipped: List[str] = []
        for step in pipeline.steps:
            if step.condition is not None and results and not step.condition(results[-1]):
                logger.info(f"Pipeline {pipeline.id}: skipping step {step.request.id}, condition not met")
                skipped.append(step.request.id)
                continue
            outcome = await self.execute(step.request)
            results.append(outcome)
            if not outcome.success:
                logger.warning(
                    f"Pipeline {pipeline.id} stopped at step {step.request.id}: {outcome.error}"
                )
                break

        return SwarmPipelineResult(
            pipeline_id=pipeline.id,
            results=results,
            completed=all(o.success for o in results),
            skipped=skipped,
            total_cost=sum(o.cost for o in results),
            total_latency_ms=sum(o.latency_ms for o in results),
        )

    # ── Fan-out ──────────────────────────────────────────────────────────────

    async def _fan_out_one(self, request: SwarmRequest, backend_id: str) -> SwarmOutcome:
        start = time.perf_counter()
        backend = self.catalog.get(backend_id)
        if backend is None:
            return self._failed(request, f"Unknown backend: {backend_id}", start, backend_id)
        constraints = self._constraints_for(request)
        try:
            self._check_budget(request)
            admission = self.breakers.check(backend_id)
        except (BudgetExhausted, CircuitBreakerOpen) as e:
            return self._failed(request, str(e), start, backend_id)
        return await self._execute_on(request, backend, start, admission, constraints)

    async def execute_fan_out(
        self,
        request: SwarmRequest,
        backend_ids: Sequence[str],
        strategy: str = "best",
    ) -> SwarmOutcome:
        """Run the same request on several backends and pick one outcome.

        ``best`` picks the fastest successful outcome; ``consensus`` picks the
        most common successful output (first seen on ties). With no success,
        the first outcome is returned.

        Raises:
            ValueError: If ``strategy`` is not "best" or "consensus".
        """
        if strategy not in FAN_OUT_STRATEGIES:
            raise ValueError(f"Unknown fan-out strategy {strategy!r}; expected one of {FAN_OUT_STRATEGIES}")
        if not backend_ids:
            return self._failed(request, "No backends given for fan-out", time.perf_counter())

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def worker(backend_id: str) -> SwarmOutcome:
            async with semaphore:
                return await self._fan_out_one(request, backend_id)

        outcomes = await asyncio.gather(*(worker(b) for b in backend_ids))
        successful = [o for o in outcomes if o.success]
        if not successful:
            return outcomes[0]
        if strategy == "best":
            return min(successful, key=lambda o: o.latency_ms)

        votes = Counter(o.output.strip() for o in successful)
        top = max(votes.values())
        return next(o for o in successful if votes[o.output.strip()] == top)
