"""
Budget Tracker
==============

Spend ledger and admission-control thresholds. The tracker only reports
state; callers enforce admission control by checking ``is_exhausted()``
before spending and by calling ``record_spend()`` after every call.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from meshroute.catalog import BackendCatalog, estimate_cost
from meshroute.models import BackendDescriptor, CostAlert, SpendRecord, SpendReport

logger = logging.getLogger("meshroute.safeguards.budget")

WINDOW_SECONDS: Dict[str, float] = {
    "hour": 3600.0,
    "day": 86400.0,
    "week": 7 * 86400.0,
}
_DAY_SECONDS = 86400.0

_ALERT_MESSAGES: Dict[float, Tuple[str, str]] = {
    0.5: ("Budget 50% consumed", "info"),
    0.75: ("Budget 75% consumed - consider cost optimization", "warning"),
    0.9: ("Budget 90% consumed - routing downgraded to cheaper backends", "critical"),
}


class BudgetTracker:
    """Tracks spend against daily (and optional hourly / per-agent) limits.

    A zero or negative daily limit counts as exhausted immediately.
    Running totals roll over at calendar-day and calendar-hour boundaries
    of the injected clock.

    Usage:
        budget = BudgetTracker(catalog)
        budget.set_budget(daily=25.0)
        if budget.is_exhausted():
            raise BudgetExhausted(...)
        ...  # make the call
        budget.record_spend("openai-gpt-4o", "planner", 1200, 300)
    """

    def __init__(
        self,
        catalog: BackendCatalog,
        daily: float = math.inf,
        hourly: Optional[float] = None,
        per_agent: Optional[Dict[str, float]] = None,
        downgrade_threshold: float = 0.8,
        critical_threshold: float = 0.95,
        alert_thresholds: Iterable[float] = (0.5, 0.75, 0.9),
        clock: Callable[[], float] = time.time,
    ):
        self.catalog = catalog
        self.downgrade_threshold = downgrade_threshold
        self.critical_threshold = critical_threshold
        self.alert_thresholds = sorted(alert_thresholds)
        self._clock = clock
        self._lock = threading.Lock()

        self._daily_limit: float = daily
        self._hourly_limit: float = math.inf if hourly is None else hourly
        self._per_agent_limits: Dict[str, float] = dict(per_agent or {})

        self._records: List[SpendRecord] = []
        self._daily_spend: float = 0.0
        self._hourly_spend: float = 0.0
        self._agent_spend: Dict[str, float] = defaultdict(float)
        self._breakdown: Dict[Tuple[str, str], float] = defaultdict(float)
        self._alerted: set[float] = set()
        self._day_key = self._date_key()
        self._hour_key = self._hour_key_now()

    # ---- configuration ----------------------------------------------------

    def set_budget(
        self,
        daily: float,
        hourly: Optional[float] = None,
        per_agent: Optional[Dict[str, float]] = None,
    ) -> None:
        with self._lock:
            self._daily_limit = daily
            self._hourly_limit = math.inf if hourly is None else hourly
            self._per_agent_limits = dict(per_agent or {})
            self._alerted.clear()
            self._roll()
        logger.info(f"Budget set: daily={daily}, hourly={hourly}")

    @property
    def daily_limit(self) -> float:
        return self._daily_limit

    # ---- ledger -----------------------------------------------------------

    def record_spend(
        self,
        backend_id: str,
        agent_id: str,
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """Add one call's cost to the ledger and return that cost.

        Unknown backends are recorded at zero cost. No retries happen here;
        each invocation records exactly one entry.
        """
        cost = self.catalog.calculate_cost(backend_id, input_tokens, output_tokens)
        if cost is None:
            logger.warning(f"Spend recorded for unknown backend {backend_id}; treating as zero cost")
            cost = 0.0

        record = SpendRecord(
            timestamp=self._clock(),
            backend_id=backend_id,
            agent_id=agent_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
        )
        with self._lock:
            self._roll()
            self._records.append(record)
            self._daily_spend += cost
            self._hourly_spend += cost
            self._agent_spend[agent_id] += cost
            self._breakdown[(backend_id, agent_id)] += cost
            crossed = self._newly_crossed()
        for threshold in crossed:
            self._emit_alert(threshold)
        return cost

    def get_daily_spend(self) -> float:
        with self._lock:
            self._roll()
            return self._daily_spend

    def get_hourly_spend(self) -> float:
        with self._lock:
            self._roll()
            return self._hourly_spend

    def get_agent_spend(self, agent_id: str) -> float:
        with self._lock:
            self._roll()
            return self._agent_spend.get(agent_id, 0.0)

    def get_breakdown(self) -> Dict[Tuple[str, str], float]:
        """Today's spend keyed by (backend_id, agent_id)."""
        with self._lock:
            self._roll()
            return dict(self._breakdown)

    # ---- admission signals ------------------------------------------------

    def is_exhausted(self) -> bool:
        with self._lock:
            self._roll()
            return self._daily_limit <= 0 or self._daily_spend >= self._daily_limit

    def remaining(self) -> float:
        with self._lock:
            self._roll()
            if self._daily_limit <= 0:
                return 0.0
            return max(0.0, self._daily_limit - self._daily_spend)

    def utilization(self) -> float:
        """Fraction of the daily limit consumed, clamped to [0, 1]."""
        with self._lock:
            self._roll()
            return self._utilization()

    def should_downgrade(self) -> bool:
        return self.utilization() >= self.downgrade_threshold

    def only_critical_allowed(self) -> bool:
        return self.utilization() >= self.critical_threshold

    def can_afford(self, backend: BackendDescriptor, estimated_tokens: int) -> bool:
        cost = estimate_cost(backend, estimated_tokens)
        with self._lock:
            self._roll()
            if self._daily_limit <= 0:
                return False
            if self._daily_spend + cost > self._daily_limit:
                return False
            return self._hourly_spend + cost <= self._hourly_limit

    def can_agent_afford(
        self,
        agent_id: str,
        backend: BackendDescriptor,
        estimated_tokens: int,
    ) -> bool:
        cost = estimate_cost(backend, estimated_tokens)
        with self._lock:
            self._roll()
            limit = self._per_agent_limits.get(agent_id, math.inf)
            return self._agent_spend.get(agent_id, 0.0) + cost <= limit

    # ---- reporting --------------------------------------------------------

    def get_spend_report(self, window: str = "day") -> SpendReport:
        """Spend inside ``window`` plus a linear projection to a full day.

        ``projected_daily`` is for early warning only; it never blocks calls.

        Raises:
            ValueError: If ``window`` is not one of hour/day/week.
        """
        if window not in WINDOW_SECONDS:
            raise ValueError(f"Unknown window {window!r}; expected one of {sorted(WINDOW_SECONDS)}")
        span = WINDOW_SECONDS[window]
        cutoff = self._clock() - span

        by_backend: Dict[str, float] = defaultdict(float)
        by_agent: Dict[str, float] = defaultdict(float)
        total = 0.0
        with self._lock:
            self._roll()
            for record in self._records:
                if record.timestamp < cutoff:
                    continue
                total += record.cost
                by_backend[record.backend_id] += record.cost
                by_agent[record.agent_id] += record.cost
            remaining = 0.0 if self._daily_limit <= 0 else max(0.0, self._daily_limit - self._daily_spend)

        return SpendReport(
            window=window,
            total_spend=total,
            by_backend=dict(by_backend),
            by_agent=dict(by_agent),
            projected_daily=total * (_DAY_SECONDS / span),
            budget_remaining=remaining,
        )

    def get_budget_status(self) -> dict:
        with self._lock:
            self._roll()
            utilization = self._utilization()
            spent, limit = self._daily_spend, self._daily_limit
        alerts: List[CostAlert] = []
        for threshold in reversed(self.alert_thresholds):
            if utilization >= threshold:
                alerts.append(self._alert_for(threshold))
                break
        return {
            "daily_spend": spent,
            "daily_limit": limit,
            "percentage": utilization * 100.0,
            "alerts": alerts,
        }

    def clear(self) -> None:
        """Drop every record and running total. Limits are kept."""
        with self._lock:
            self._records.clear()
            self._daily_spend = 0.0
            self._hourly_spend = 0.0
            self._agent_spend.clear()
            self._breakdown.clear()
            self._alerted.clear()
            self._day_key = self._date_key()
            self._hour_key = self._hour_key_now()

    # ---- internals --------------------------------------------------------

    def _utilization(self) -> float:
        # caller holds lock
        if self._daily_limit <= 0:
            return 1.0
        if math.isinf(self._daily_limit):
            return 0.0
        return min(1.0, max(0.0, self._daily_spend / self._daily_limit))

    def _newly_crossed(self) -> List[float]:
        # caller holds lock
        utilization = self._utilization()
        crossed = [
            t for t in self.alert_thresholds
            if utilization >= t and t not in self._alerted
        ]
        self._alerted.update(crossed)
        return crossed

    def _alert_for(self, threshold: float) -> CostAlert:
        message, severity = _ALERT_MESSAGES.get(
            threshold, (f"Budget {threshold:.0%} consumed", "warning")
        )
        return CostAlert(threshold=threshold, message=message, severity=severity)

    def _emit_alert(self, threshold: float) -> None:
        alert = self._alert_for(threshold)
        if alert.severity == "info":
            logger.info(f"Budget alert: {alert.message}")
        else:
            logger.warning(f"Budget alert: {alert.message}")

    def _date_key(self) -> str:
        return datetime.fromtimestamp(self._clock()).strftime("%Y-%m-%d")

    def _hour_key_now(self) -> str:
        return datetime.fromtimestamp(self._clock()).strftime("%Y-%m-%dT%H")

    def _roll(self) -> None:
        # caller holds lock
        day_key = self._date_key()
        if day_key != self._day_key:
            self._daily_spend = 0.0
            self._agent_spend.clear()
            self._breakdown.clear()
            self._alerted.clear()
            self._day_key = day_key
            cutoff = self._clock() - WINDOW_SECONDS["week"]
            self._records = [r for r in self._records if r.timestamp >= cutoff]
        hour_key = self._hour_key_now()
        if hour_key != self._hour_key:
            self._hourly_spend = 0.0
            self._hour_key = hour_key
