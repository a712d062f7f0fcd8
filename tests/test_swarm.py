"""Tests for the swarm dispatcher (parallel, sequential and fan-out execution)."""

import asyncio

import pytest

from meshroute.catalog import BackendCatalog
from meshroute.models import CallOutcome, Priority, RoutingConstraints, Strategy, SwarmRequest
from meshroute.observability import MemorySink
from meshroute.routing import AdaptiveRouter
from meshroute.safeguards import Admission, BudgetTracker, CircuitBreakerRegistry
from meshroute.speculative import SpeculativeExecutor
from meshroute.stack import build_stack
from meshroute.swarm import DEADLINE_EXCEEDED, PipelineStep, SwarmDispatcher, SwarmPipeline

from fakes import FakeCaller, FakeClock, backend

TASK = "chat"


def _catalog():
    return BackendCatalog([
        backend("alpha", quality=0.9, cost_per_input_token=0.0001, cost_per_output_token=0.0002),
        backend("beta", quality=0.8, cost_per_input_token=0.0001, cost_per_output_token=0.0002),
    ])


def _stack(caller, catalog=None, config=None):
    return build_stack(config, caller, catalog=catalog or _catalog(), sink=MemorySink())


def _request(prompt="hello", **kwargs):
    kwargs.setdefault("agent_id", "worker")
    kwargs.setdefault("task_type", TASK)
    return SwarmRequest(prompt=prompt, **kwargs)


def _echo(prompt):
    return prompt


def _dispatcher(caller, catalog, clock):
    """Dispatcher whose breakers run on ``clock``, for half-open scenarios."""
    breakers = CircuitBreakerRegistry(failure_threshold=3, cooldown_s=60.0, clock=clock)
    router = AdaptiveRouter(catalog, breakers)
    budget = BudgetTracker(catalog)
    executor = SpeculativeExecutor(caller, breakers, budget)
    return SwarmDispatcher(router, breakers, budget, caller, speculative=executor)


def _half_open(breakers, clock, backend_id):
    for _ in range(3):
        breakers.record_failure(backend_id)
    clock.advance(60.0)


def _spec_catalog():
    return BackendCatalog([
        backend("remote", quality=0.95, cost_per_input_token=0.00001, cost_per_output_token=0.00003),
        backend("local", provider="ollama", quality=0.6),
    ])


# ── Parallel execution ───────────────────────────────────────────────────────


class TestExecuteParallel:
    @pytest.mark.asyncio
    async def test_outcomes_in_submission_order(self):
        caller = FakeCaller(responses={"alpha": _echo, "beta": _echo})
        stack = _stack(caller)
        requests = [_request(f"prompt-{i}") for i in range(6)]

        batch = await stack.swarm.execute_parallel(requests)

        assert len(batch.results) == 6
        assert [o.request_id for o in batch.results] == [r.id for r in requests]
        assert [o.output for o in batch.results] == [f"prompt-{i}" for i in range(6)]
        assert batch.completed == 6
        assert batch.failed == 0
        assert not batch.partial_failure
        assert batch.total_latency_ms >= 0

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        stack = _stack(FakeCaller())
        batch = await stack.swarm.execute_parallel([])
        assert batch.results == []
        assert batch.completed == 0

    @pytest.mark.asyncio
    async def test_all_breakers_open(self):
        caller = FakeCaller()
        stack = _stack(caller)
        for backend_id in ("alpha", "beta"):
            for _ in range(3):
                stack.breakers.record_failure(backend_id)

        batch = await stack.swarm.execute_parallel([_request() for _ in range(4)])

        assert len(batch.results) == 4
        assert batch.failed == 4
        assert all("No backend satisfies" in o.error for o in batch.results)
        assert caller.calls == []

    @pytest.mark.asyncio
    async def test_failure_isolated_to_its_request(self):
        caller = FakeCaller(fail_when=lambda p: "boom" in p)
        stack = _stack(caller)
        requests = [_request("first"), _request("boom"), _request("last")]

        batch = await stack.swarm.execute_parallel(requests)

        assert [o.success for o in batch.results] == [True, False, True]
        assert "unavailable" in batch.results[1].error
        assert batch.completed == 2
        assert batch.failed == 1
        assert batch.partial_failure

    @pytest.mark.asyncio
    async def test_deadline_cancels_pending(self):
        caller = FakeCaller(delay_when=lambda p: 5.0 if "slow" in p else 0.0)
        stack = _stack(caller)
        requests = [_request("fast"), _request("slow")]

        batch = await stack.swarm.execute_parallel(requests, deadline_s=0.2)

        assert batch.results[0].success
        assert not batch.results[1].success
        assert batch.results[1].error == DEADLINE_EXCEEDED
        assert batch.total_latency_ms < 5000

    @pytest.mark.asyncio
    async def test_deadline_frees_half_open_draft_slot(self):
        clock = FakeClock(start=1000.0)
        caller = FakeCaller(delays={"local": 5.0})
        dispatcher = _dispatcher(caller, _spec_catalog(), clock)
        # Seen once with poor quality, so the unexplored remote wins routing.
        dispatcher.router.update_stats("local", TASK, CallOutcome(success=True, quality=0.1, latency_ms=5.0))
        _half_open(dispatcher.breakers, clock, "local")

        batch = await dispatcher.execute_parallel([_request(speculative=True)], deadline_s=0.2)

        assert batch.results[0].error == DEADLINE_EXCEEDED
        assert caller.backends_called() == ["local"]
        assert dispatcher.breakers.acquire("local") is Admission.HALF_OPEN

    @pytest.mark.asyncio
    async def test_cancelled_closed_call_keeps_other_slot(self):
        clock = FakeClock(start=1000.0)
        catalog = BackendCatalog([backend("alpha")])
        dispatcher = _dispatcher(FakeCaller(delays={"alpha": 5.0}), catalog, clock)

        task = asyncio.create_task(dispatcher.execute(_request()))
        await asyncio.sleep(0.05)
        # While the closed-state call is in flight, the circuit trips and
        # another caller takes the half-open slot.
        _half_open(dispatcher.breakers, clock, "alpha")
        assert dispatcher.breakers.acquire("alpha") is Admission.HALF_OPEN
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not dispatcher.breakers.acquire("alpha")

    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_frees_slot(self):
        clock = FakeClock(start=1000.0)
        catalog = BackendCatalog([backend("alpha")])
        dispatcher = _dispatcher(FakeCaller(delays={"alpha": 5.0}), catalog, clock)
        _half_open(dispatcher.breakers, clock, "alpha")

        batch = await dispatcher.execute_parallel([_request()], deadline_s=0.1)

        assert batch.results[0].error == DEADLINE_EXCEEDED
        assert dispatcher.breakers.acquire("alpha") is Admission.HALF_OPEN

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        caller = FakeCaller(delays={"alpha": 0.02, "beta": 0.02})
        stack = _stack(caller, config={"swarm": {"max_concurrent": 2}})

        batch = await stack.swarm.execute_parallel([_request(f"p{i}") for i in range(8)])

        assert batch.completed == 8
        assert caller.max_in_flight <= 2

    def test_invalid_max_concurrent(self):
        stack = _stack(FakeCaller())
        with pytest.raises(ValueError):
            SwarmDispatcher(stack.router, stack.breakers, stack.budget, FakeCaller(), max_concurrent=0)

    @pytest.mark.asyncio
    async def test_breaker_trips_mid_batch(self):
        caller = FakeCaller(failing={"alpha"})
        catalog = BackendCatalog([backend("alpha")])
        stack = _stack(caller, catalog=catalog, config={"swarm": {"max_concurrent": 1}})

        batch = await stack.swarm.execute_parallel([_request(f"p{i}") for i in range(5)])

        assert batch.failed == 5
        # Three real failures open the breaker; later requests never reach the backend
        assert len(caller.calls) == 3
        assert not stack.breakers.is_available("alpha")


# ── Budget admission ─────────────────────────────────────────────────────────


class TestBudgetAdmission:
    @pytest.mark.asyncio
    async def test_zero_budget_rejects_everything(self):
        caller = FakeCaller()
        stack = _stack(caller, config={"budget": {"daily": 0.0}})

        batch = await stack.swarm.execute_parallel([_request() for _ in range(3)])

        assert batch.failed == 3
        assert all("exhausted" in o.error for o in batch.results)
        assert caller.calls == []

    @pytest.mark.asyncio
    async def test_only_critical_near_exhaustion(self):
        catalog = BackendCatalog([
            backend("paid", quality=0.95, cost_per_input_token=0.01, cost_per_output_token=0.01),
            backend("local", provider="ollama", quality=0.6),
        ])
        caller = FakeCaller()
        stack = _stack(caller, catalog=catalog, config={"budget": {"daily": 1.0}})
        stack.budget.record_spend("paid", "someone", 96, 0)
        assert stack.budget.only_critical_allowed()

        normal = await stack.swarm.execute(_request(priority=Priority.NORMAL))
        assert not normal.success
        assert "only critical" in normal.error

        critical = await stack.swarm.execute(_request(priority=Priority.CRITICAL))
        assert critical.success
        # Downgrade steers to the free local backend within the remaining budget
        assert critical.backend_id == "local"

    @pytest.mark.asyncio
    async def test_request_constraints_applied(self):
        stack = _stack(FakeCaller())
        outcome = await stack.swarm.execute(
            _request(constraints=RoutingConstraints(excluded_backends=frozenset({"alpha"})))
        )
        assert outcome.backend_id == "beta"


# ── Bookkeeping ──────────────────────────────────────────────────────────────


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_success_updates_stats_spend_and_sink(self):
        catalog = BackendCatalog([
            backend("paid", cost_per_input_token=0.001, cost_per_output_token=0.002),
        ])
        stack = _stack(FakeCaller(), catalog=catalog)

        outcome = await stack.swarm.execute(_request())

        assert outcome.success
        assert outcome.strategy == Strategy.DIRECT
        assert outcome.cost == pytest.approx(10 * 0.001 + 20 * 0.002)
        assert stack.budget.get_daily_spend() == pytest.approx(outcome.cost)
        stat = stack.router.get_stats("paid", TASK)
        assert stat.total_calls == 1
        assert stat.quality == pytest.approx(0.85)
        assert stack.breakers.state("paid").total_successes == 1
        assert len(stack.sink.routing_logs) == 1
        assert stack.sink.model_call_logs[0]["success"] is True

    @pytest.mark.asyncio
    async def test_failure_recorded(self):
        stack = _stack(FakeCaller(failing={"alpha", "beta"}))
        outcome = await stack.swarm.execute(_request())
        assert not outcome.success
        assert stack.router.get_stats(outcome.backend_id, TASK).success_count == 0
        assert stack.breakers.state(outcome.backend_id).consecutive_failures == 1
        assert stack.sink.model_call_logs[0]["success"] is False

    @pytest.mark.asyncio
    async def test_reset_clears_learned_state(self):
        stack = _stack(FakeCaller())
        await stack.swarm.execute_parallel([_request() for _ in range(3)])
        stack.reset()
        assert stack.router.all_stats() == []
        assert stack.budget.get_daily_spend() == 0.0
        assert len(stack.catalog) == 2


# ── Speculative requests ─────────────────────────────────────────────────────


class TestSpeculativeRequests:
    @pytest.mark.asyncio
    async def test_speculative_uses_cheaper_draft_backend(self):
        caller = FakeCaller(responses={"local": "draft words", "remote": "draft words and more"})
        stack = _stack(caller, catalog=_spec_catalog())
        # Seen once with poor quality, so the unexplored remote wins routing.
        stack.router.update_stats("local", TASK, CallOutcome(success=True, quality=0.1, latency_ms=5.0))

        outcome = await stack.swarm.execute(_request(speculative=True))

        assert outcome.success
        assert outcome.strategy == Strategy.SPECULATIVE
        assert outcome.backend_id == "remote"
        assert caller.backends_called() == ["local", "remote"]
        assert stack.router.get_stats("remote", TASK).total_calls == 1
        assert stack.router.get_stats("local", TASK).total_calls == 1

    @pytest.mark.parametrize("constraints", [
        RoutingConstraints(excluded_backends=frozenset({"local"})),
        RoutingConstraints(min_quality=0.9),
    ])
    @pytest.mark.asyncio
    async def test_draft_backend_honours_constraints(self, constraints):
        caller = FakeCaller()
        stack = _stack(caller, catalog=_spec_catalog())

        outcome = await stack.swarm.execute(_request(speculative=True, constraints=constraints))

        assert outcome.success
        assert outcome.backend_id == "remote"
        assert outcome.strategy == Strategy.DIRECT
        assert "local" not in caller.backends_called()

    @pytest.mark.asyncio
    async def test_draft_backend_honours_profile_exclusions(self):
        caller = FakeCaller()
        stack = _stack(caller, catalog=_spec_catalog())
        stack.profiles.update_profile(
            "worker", cost_budget_per_hour=50.0, quality_threshold=0.0, excluded_backends=["local"],
        )

        outcome = await stack.swarm.execute(_request(speculative=True))

        assert outcome.success
        assert caller.backends_called() == ["remote"]

    @pytest.mark.asyncio
    async def test_speculative_without_cheaper_backend_goes_direct(self):
        catalog = BackendCatalog([backend("only", cost_per_input_token=0.001)])
        caller = FakeCaller()
        stack = _stack(caller, catalog=catalog)

        outcome = await stack.swarm.execute(_request(speculative=True))

        assert outcome.success
        assert outcome.strategy == Strategy.DIRECT
        assert caller.backends_called() == ["only"]


# ── Pipelines ────────────────────────────────────────────────────────────────


class TestSequential:
    @pytest.mark.asyncio
    async def test_condition_skips_step(self):
        stack = _stack(FakeCaller())
        skipped = _request("skip me")
        pipeline = SwarmPipeline(steps=[
            PipelineStep(_request("one")),
            PipelineStep(skipped, condition=lambda prev: False),
            PipelineStep(_request("three"), condition=lambda prev: prev.success),
        ], name="demo")

        result = await stack.swarm.execute_sequential(pipeline)

        assert result.completed
        assert len(result.results) == 2
        assert result.skipped == [skipped.id]
        assert result.pipeline_id == pipeline.id

    @pytest.mark.asyncio
    async def test_stops_on_failure(self):
        caller = FakeCaller(fail_when=lambda p: "boom" in p)
        stack = _stack(caller)
        pipeline = SwarmPipeline(steps=[
            PipelineStep(_request("boom")),
            PipelineStep(_request("never")),
        ])

        result = await stack.swarm.execute_sequential(pipeline)

        assert not result.completed
        assert len(result.results) == 1
        assert all("never" not in c[1] for c in caller.calls)


# ── Fan-out ──────────────────────────────────────────────────────────────────


class TestFanOut:
    @pytest.mark.asyncio
    async def test_best_picks_fastest(self):
        caller = FakeCaller(latencies={"alpha": 50.0, "beta": 10.0})
        stack = _stack(caller)
        outcome = await stack.swarm.execute_fan_out(_request(), ["alpha", "beta"], strategy="best")
        assert outcome.backend_id == "beta"
        assert sorted(caller.backends_called()) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_consensus_picks_majority(self):
        catalog = BackendCatalog([backend("a"), backend("b"), backend("c")])
        caller = FakeCaller(responses={"a": "x", "b": "y", "c": "y "})
        stack = _stack(caller, catalog=catalog)
        outcome = await stack.swarm.execute_fan_out(_request(), ["a", "b", "c"], strategy="consensus")
        assert outcome.output.strip() == "y"

    @pytest.mark.asyncio
    async def test_unknown_backend(self):
        stack = _stack(FakeCaller())
        outcome = await stack.swarm.execute_fan_out(_request(), ["nope"])
        assert not outcome.success
        assert "Unknown backend" in outcome.error

    @pytest.mark.asyncio
    async def test_open_breaker_skipped(self):
        caller = FakeCaller()
        stack = _stack(caller)
        for _ in range(3):
            stack.breakers.record_failure("alpha")
        outcome = await stack.swarm.execute_fan_out(_request(), ["alpha", "beta"])
        assert outcome.backend_id == "beta"
        assert caller.backends_called() == ["beta"]

    @pytest.mark.asyncio
    async def test_invalid_strategy(self):
        stack = _stack(FakeCaller())
        with pytest.raises(ValueError, match="fan-out strategy"):
            await stack.swarm.execute_fan_out(_request(), ["alpha"], strategy="fastest")
