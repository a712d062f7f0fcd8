"""
Routing Stack Factory
=====================

Builds one explicitly wired set of catalog, breakers, budget, router,
speculative executor, profiles and dispatcher from a config dict.
There are no module-level instances; tests build a fresh stack (or call
``RoutingStack.reset()``) to isolate runs.

Usage:
    from meshroute import build_stack, load_config

    stack = build_stack(load_config(), caller)
    batch = await stack.swarm.execute_parallel(requests)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from meshroute.catalog import BackendCatalog
from meshroute.config import Settings, _DEFAULTS, parse_settings
from meshroute.inference.caller import BackendCaller
from meshroute.observability.audit import RoutingAuditLog
from meshroute.observability.sink import CompositeSink, LoggingSink, ObservabilitySink
from meshroute.profiles import ProfileManager
from meshroute.routing.router import AdaptiveRouter
from meshroute.safeguards.breaker import CircuitBreakerRegistry
from meshroute.safeguards.budget import BudgetTracker
from meshroute.speculative import SpeculativeExecutor
from meshroute.swarm import SwarmDispatcher

logger = logging.getLogger("meshroute.stack")


@dataclass
class RoutingStack:
    settings: Settings
    catalog: BackendCatalog
    breakers: CircuitBreakerRegistry
    budget: BudgetTracker
    router: AdaptiveRouter
    speculative: SpeculativeExecutor
    profiles: ProfileManager
    swarm: SwarmDispatcher
    sink: Optional[ObservabilitySink] = None
    audit_log: Optional[RoutingAuditLog] = None

    def reset(self) -> None:
        """Administrative reset: statistics, breakers, ledger, pair stats, profiles.

        The catalog and configured limits are kept.
        """
        self.router.reset()
        self.breakers.reset()
        self.budget.clear()
        self.speculative.reset_stats()
        self.profiles.reset_to_defaults()
        logger.info("Routing stack reset")

    def close(self) -> None:
        if self.audit_log is not None:
            self.audit_log.close()


def build_stack(
    config: Optional[dict[str, Any]],
    caller: BackendCaller,
    catalog: Optional[BackendCatalog] = None,
    sink: Optional[ObservabilitySink] = None,
) -> RoutingStack:
    """Wire a complete routing stack.

    Args:
        config: Config dict as returned by ``load_config`` (None for defaults).
        caller: Async backend caller ``(prompt, backend_id, options) -> BackendResponse``.
        catalog: Backend catalog (default: the built-in backends).
        sink: Observability sink. When omitted, a debug-level ``LoggingSink``
            is used, plus a ``RoutingAuditLog`` if ``logging.audit_dir`` is set.

    Raises:
        ConfigError: If the config holds invalid values.
    """
    settings = parse_settings(config)
    logging_cfg = {**_DEFAULTS["logging"], **((config or {}).get("logging") or {})}
    catalog = catalog if catalog is not None else BackendCatalog.with_defaults()

    audit_log = None
    if sink is None:
        sinks: list[ObservabilitySink] = [LoggingSink(level=logging.DEBUG)]
        if logging_cfg.get("audit_dir"):
            audit_log = RoutingAuditLog(uuid.uuid4().hex[:12], base_dir=logging_cfg["audit_dir"])
            sinks.append(audit_log)
        sink = sinks[0] if len(sinks) == 1 else CompositeSink(sinks)

    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.breaker.failure_threshold,
        cooldown_s=settings.breaker.cooldown_s,
    )
    budget = BudgetTracker(
        catalog,
        daily=settings.budget.daily,
        hourly=settings.budget.hourly,
        downgrade_threshold=settings.budget.downgrade_threshold,
        critical_threshold=settings.budget.critical_threshold,
        alert_thresholds=settings.budget.alert_thresholds,
    )
    router = AdaptiveRouter(
        catalog,
        breakers,
        sink=sink,
        exploration_constant=settings.router.exploration_constant,
        cost_weight=settings.router.cost_weight,
        cost_reference=settings.router.cost_reference,
        prior_weight=settings.router.prior_weight,
        local_bonus=settings.router.local_bonus,
        preference_bonus=settings.router.preference_bonus,
        margin_scale=settings.router.margin_scale,
        sample_scale=settings.router.sample_scale,
        input_share=settings.swarm.input_share,
    )
    speculative = SpeculativeExecutor(
        caller,
        breakers=breakers,
        budget=budget,
        sink=sink,
        settings=settings.speculative,
        timeout_multiplier=settings.swarm.timeout_multiplier,
        min_timeout_s=settings.swarm.min_timeout_s,
    )
    profiles = ProfileManager()
    swarm = SwarmDispatcher(
        router,
        breakers,
        budget,
        caller,
        speculative=speculative,
        profiles=profiles,
        sink=sink,
        max_concurrent=settings.swarm.max_concurrent,
        deadline_s=settings.swarm.deadline_s,
        timeout_multiplier=settings.swarm.timeout_multiplier,
        min_timeout_s=settings.swarm.min_timeout_s,
        default_quality=settings.swarm.default_quality,
        input_share=settings.swarm.input_share,
    )
    logger.info(
        f"Built routing stack: {len(catalog)} backends, "
        f"max_concurrent={settings.swarm.max_concurrent}, daily budget={settings.budget.daily}"
    )
    return RoutingStack(
        settings=settings,
        catalog=catalog,
        breakers=breakers,
        budget=budget,
        router=router,
        speculative=speculative,
        profiles=profiles,
        swarm=swarm,
        sink=sink,
        audit_log=audit_log,
    )
