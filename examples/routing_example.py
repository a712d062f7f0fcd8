#!/usr/bin/env python3
"""
Meshroute Routing Example
=========================

Demonstrates the routing stack against simulated backends:
- Adaptive routing converging on the better backend
- Speculative (draft-then-verify) requests
- Circuit breakers isolating a failing backend
- Budget tracking and metrics export

No network access is needed; the caller below fakes every backend.

Usage:
    python examples/routing_example.py
"""

import asyncio
import random
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from meshroute import (
    BackendResponse,
    CompositeSink,
    LoggingSink,
    MetricsCollector,
    MetricsSink,
    SwarmRequest,
    build_stack,
    configure_logging,
)

# Simulated backend behaviour: (mean latency seconds, failure probability)
SIMULATED = {
    "ollama-qwen2.5:7b": (0.02, 0.0),
    "ollama-qwen2.5:14b": (0.04, 0.0),
    "ollama-deepseek-coder:6.7b": (0.03, 0.0),
    "openrouter-qwen/qwen-2.5-coder-32b-instruct": (0.05, 0.05),
    "openrouter-deepseek/deepseek-chat": (0.05, 1.0),  # always down
    "anthropic-claude-3-haiku": (0.02, 0.0),
    "anthropic-claude-3-sonnet": (0.06, 0.0),
    "anthropic-claude-3-opus": (0.10, 0.0),
    "openai-gpt-4o-mini": (0.03, 0.0),
    "openai-gpt-4o": (0.06, 0.0),
}


async def simulated_caller(prompt, backend_id, options):
    """
    Pretend to call a backend.

    Args:
        prompt: Prompt text
        backend_id: Which backend to "call"
        options: CallOptions (max_tokens caps the fake completion)
    """
    mean_latency, failure_rate = SIMULATED.get(backend_id, (0.05, 0.0))
    latency = random.uniform(0.5, 1.5) * mean_latency
    await asyncio.sleep(latency)
    if random.random() < failure_rate:
        raise ConnectionError(f"{backend_id} refused the connection")

    words = prompt.split()[:8]
    completion = " ".join(words) + f" (answered by {backend_id})"
    output_tokens = min(len(completion) // 4 + 1, options.max_tokens or 1024)
    return BackendResponse(
        text=completion,
        tokens_used=len(prompt) // 4 + output_tokens,
        latency_ms=latency * 1000,
        input_tokens=len(prompt) // 4,
        output_tokens=output_tokens,
    )


async def demonstrate_routing():
    configure_logging("warning")

    collector = MetricsCollector()
    stack = build_stack(
        {"budget": {"daily": 5.0}, "swarm": {"max_concurrent": 4}},
        simulated_caller,
        sink=CompositeSink([LoggingSink(), MetricsSink(collector)]),
    )

    print(f"\n{'='*70}")
    print("MESHROUTE ROUTING DEMONSTRATION")
    print(f"{'='*70}")
    print(f"Backends: {len(stack.catalog)}")
    print(f"Providers: {', '.join(stack.catalog.providers())}")

    # ══════════════════════════════════════════════════════════════
    # 1. PARALLEL BATCHES
    # ══════════════════════════════════════════════════════════════

    print("\n1. PARALLEL BATCHES")
    print("-" * 70)

    agents = ["developer", "tester", "researcher", "summarizer"]
    tasks = {
        "developer": "code-generation",
        "tester": "testing",
        "researcher": "research",
        "summarizer": "summarization",
    }
    for round_num in range(1, 4):
        requests = [
            SwarmRequest(
                agent_id=agent,
                task_type=tasks[agent],
                prompt=f"Round {round_num}: {agent} works on the parser refactor",
                estimated_tokens=800,
            )
            for agent in agents
        ]
        batch = await stack.swarm.execute_parallel(requests, deadline_s=5.0)
        print(
            f"Round {round_num}: {batch.completed}/{len(batch.results)} completed, "
            f"cost ${batch.total_cost:.5f}, {batch.total_latency_ms:.0f}ms"
        )
        for outcome in batch.results:
            status = "ok " if outcome.success else "ERR"
            print(f"  [{status}] {outcome.agent_id:<11} -> {outcome.backend_id or '-'}")

    # ══════════════════════════════════════════════════════════════
    # 2. SPECULATIVE REQUESTS
    # ══════════════════════════════════════════════════════════════

    print("\n2. SPECULATIVE REQUESTS")
    print("-" * 70)

    outcome = await stack.swarm.execute(SwarmRequest(
        agent_id="manager",
        task_type="orchestration",
        prompt="Plan the next round for the parser refactor",
        speculative=True,
        estimated_tokens=600,
    ))
    print(f"Strategy: {outcome.strategy.value if outcome.strategy else '-'}")
    print(f"Backend: {outcome.backend_id}")
    for pair in stack.speculative.all_pair_stats():
        print(
            f"  {pair.draft_backend_id} -> {pair.verify_backend_id}: "
            f"acceptance {pair.avg_acceptance_rate:.2f} over {pair.total_attempts} attempt(s)"
        )

    # ══════════════════════════════════════════════════════════════
    # 3. FAN-OUT
    # ══════════════════════════════════════════════════════════════

    print("\n3. FAN-OUT")
    print("-" * 70)

    best = await stack.swarm.execute_fan_out(
        SwarmRequest(agent_id="designer", task_type="architecture-design", prompt="Sketch the module layout"),
        ["anthropic-claude-3-haiku", "openai-gpt-4o-mini", "openrouter-deepseek/deepseek-chat"],
        strategy="best",
    )
    print(f"Fastest answer from {best.backend_id} in {best.latency_ms:.0f}ms")

    # ══════════════════════════════════════════════════════════════
    # 4. SAFEGUARDS
    # ══════════════════════════════════════════════════════════════

    print("\n4. SAFEGUARDS")
    print("-" * 70)

    for backend_id, state in sorted(stack.breakers.status().items()):
        print(
            f"  {backend_id:<45} {state.status.value:<9} "
            f"health {state.health:.2f}"
        )

    report = stack.budget.get_spend_report("day")
    print(f"\nSpend today: ${report.total_spend:.5f} (remaining ${report.budget_remaining:.4f})")
    print(f"Projected daily: ${report.projected_daily:.4f}")
    for agent_id, spend in sorted(report.by_agent.items()):
        print(f"  {agent_id:<11} ${spend:.5f}")

    # ══════════════════════════════════════════════════════════════
    # 5. METRICS
    # ══════════════════════════════════════════════════════════════

    print("\n5. METRICS")
    print("-" * 70)

    latency = collector.get_stats("backend_call_latency_ms", status="success")
    if latency:
        print(f"Backend call latency: mean {latency['mean']:.1f}ms, p95 {latency['p95']:.1f}ms")

    output_dir = Path("meshroute-output")
    metrics_file = output_dir / "metrics.prom"
    collector.export_prometheus(metrics_file)
    print(f"Metrics exported to: {metrics_file}")

    print(f"\n{'='*70}\n")
    stack.close()


if __name__ == "__main__":
    asyncio.run(demonstrate_routing())
