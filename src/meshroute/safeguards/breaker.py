"""
Per-Backend Circuit Breakers
============================

Closed/open/half-open breakers keyed by backend id, consulted by the router
(to drop open backends from the candidate set) and by the dispatcher (to
admit or refuse each call).
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from meshroute.errors import CircuitBreakerOpen
from meshroute.models import BreakerStatus, CircuitBreakerState

logger = logging.getLogger("meshroute.safeguards.breaker")


class Admission(Enum):
    """Result of asking a breaker for a call slot.

    Truthy when the call may proceed. ``HALF_OPEN`` means this caller holds
    the single half-open slot and must hand it back if the call is abandoned.
    """
    REFUSED = "refused"
    CLOSED = "closed"
    HALF_OPEN = "half_open"

    def __bool__(self) -> bool:
        return self is not Admission.REFUSED


class CircuitBreaker:
    """Circuit breaker with closed/open/half-open states for one backend.

    Opens after `failure_threshold` consecutive failures, refusing calls
    until `cooldown_s` elapses. After the cooldown it reads as half-open:
    exactly one probe call is admitted. A successful probe closes the
    circuit; a failed probe re-opens it and restarts the cooldown.
    """

    CLOSED = BreakerStatus.CLOSED
    OPEN = BreakerStatus.OPEN
    HALF_OPEN = BreakerStatus.HALF_OPEN

    def __init__(
        self,
        backend_id: str,
        failure_threshold: int = 3,
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend_id = backend_id
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._state: BreakerStatus = self.CLOSED
        self._failure_count: int = 0
        self._opened_at: Optional[float] = None
        self._probe_started_at: Optional[float] = None
        self._total_successes: int = 0
        self._total_failures: int = 0

    def _current_state(self) -> BreakerStatus:
        # caller holds lock
        if self._state == self.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.cooldown_s:
                self._state = self.HALF_OPEN
                self._probe_started_at = None
                logger.info(f"Circuit breaker for {self.backend_id} transitioning to half-open")
        return self._state

    @property
    def state(self) -> BreakerStatus:
        with self._lock:
            return self._current_state()

    def is_available(self) -> bool:
        """False only while the circuit is open."""
        return self.state != self.OPEN

    def try_acquire(self) -> Admission:
        """Admit a call. In half-open state only a single probe is admitted.

        Returns ``Admission.CLOSED`` while closed, ``Admission.HALF_OPEN`` when
        this call took the half-open slot, and ``Admission.REFUSED`` otherwise. A
        probe that never reports back stops blocking new probes after another
        cooldown period.
        """
        with self._lock:
            state = self._current_state()
            if state == self.CLOSED:
                return Admission.CLOSED
            if state == self.OPEN:
                return Admission.REFUSED
            now = self._clock()
            if self._probe_started_at is None or now - self._probe_started_at >= self.cooldown_s:
                self._probe_started_at = now
                logger.info(f"Circuit breaker for {self.backend_id} admitting probe call")
                return Admission.HALF_OPEN
            return Admission.REFUSED

    def check(self) -> Admission:
        """Admit a call or raise.

        Raises:
            CircuitBreakerOpen: If the circuit is open or a probe is already in flight.
        """
        admission = self.try_acquire()
        if not admission:
            raise CircuitBreakerOpen(self.backend_id, self.retry_in())
        return admission

    def retry_in(self) -> float:
        with self._lock:
            if self._opened_at is None:
                return 0.0
            return max(0.0, self.cooldown_s - (self._clock() - self._opened_at))

    def release_probe(self) -> None:
        """Give back a probe slot whose call never reached the backend."""
        with self._lock:
            self._probe_started_at = None

    def record_success(self) -> None:
        """Record a successful call. Resets failure count and closes circuit."""
        with self._lock:
            previous = self._current_state()
            self._failure_count = 0
            self._total_successes += 1
            self._state = self.CLOSED
            self._opened_at = None
            self._probe_started_at = None
        if previous != self.CLOSED:
            logger.info(f"Circuit breaker for {self.backend_id} closed after success (was {previous.value})")

    def record_failure(self) -> None:
        """Record a failed call. May open (or re-open) the circuit."""
        with self._lock:
            state = self._current_state()
            self._total_failures += 1
            if state == self.OPEN:
                # Late result from a call admitted before the circuit opened.
                return
            self._failure_count += 1
            if state == self.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = self.OPEN
                self._opened_at = self._clock()
                self._probe_started_at = None
                failures = self._failure_count
                reopened = state == self.HALF_OPEN
            else:
                return
        if reopened:
            logger.warning(f"Circuit breaker for {self.backend_id} re-opened after failed probe")
        else:
            logger.error(
                f"Circuit breaker for {self.backend_id} opened after {failures} consecutive failures"
            )

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                backend_id=self.backend_id,
                status=self._current_state(),
                consecutive_failures=self._failure_count,
                opened_at=self._opened_at,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
            )

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        with self._lock:
            self._state = self.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_started_at = None
            self._total_successes = 0
            self._total_failures = 0


class CircuitBreakerRegistry:
    """Lazily created breakers, one per backend id.

    Each breaker carries its own lock, so breakers for different backends
    never contend with each other.

    Usage:
        breakers = CircuitBreakerRegistry(failure_threshold=3, cooldown_s=60.0)
        if breakers.acquire("openai-gpt-4o"):
            ...  # make the call
            breakers.record_success("openai-gpt-4o")
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def breaker(self, backend_id: str) -> CircuitBreaker:
        with self._lock:
            cb = self._breakers.get(backend_id)
            if cb is None:
                cb = CircuitBreaker(
                    backend_id,
                    failure_threshold=self.failure_threshold,
                    cooldown_s=self.cooldown_s,
                    clock=self._clock,
                )
                self._breakers[backend_id] = cb
            return cb

    def is_available(self, backend_id: str) -> bool:
        with self._lock:
            cb = self._breakers.get(backend_id)
        return cb is None or cb.is_available()

    def acquire(self, backend_id: str) -> Admission:
        return self.breaker(backend_id).try_acquire()

    def check(self, backend_id: str) -> Admission:
        return self.breaker(backend_id).check()

    def release_probe(self, backend_id: str) -> None:
        self.breaker(backend_id).release_probe()

    def release(self, backend_id: str, admission: Admission) -> None:
        """Hand back an abandoned call slot. Only a half-open admission holds one."""
        if admission is Admission.HALF_OPEN:
            self.release_probe(backend_id)

    def record_success(self, backend_id: str) -> None:
        self.breaker(backend_id).record_success()

    def record_failure(self, backend_id: str) -> None:
        self.breaker(backend_id).record_failure()

    def state(self, backend_id: str) -> CircuitBreakerState:
        return self.breaker(backend_id).snapshot()

    def status(self, backend_ids: Optional[List[str]] = None) -> Dict[str, CircuitBreakerState]:
        """Snapshots for ``backend_ids`` (default: every backend seen so far)."""
        if backend_ids is None:
            with self._lock:
                backend_ids = list(self._breakers)
        return {bid: self.state(bid) for bid in backend_ids}

    def open_backends(self) -> List[str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [cb.backend_id for cb in breakers if not cb.is_available()]

    def reset(self, backend_id: Optional[str] = None) -> None:
        with self._lock:
            if backend_id is None:
                self._breakers.clear()
            else:
                self._breakers.pop(backend_id, None)
