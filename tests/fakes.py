"""Test doubles shared by the meshroute test modules."""

import asyncio
from datetime import datetime

from meshroute.models import BackendDescriptor, BackendResponse


def backend(backend_id, **kwargs):
    """BackendDescriptor with test-friendly defaults."""
    kwargs.setdefault("provider", "openai")
    kwargs["capabilities"] = frozenset(kwargs.get("capabilities", ("chat",)))
    return BackendDescriptor(id=backend_id, **kwargs)


class FakeClock:
    """Manually advanced clock usable for both monotonic and wall time."""

    def __init__(self, start=None):
        self.now = start if start is not None else datetime(2026, 1, 15, 10, 0, 0).timestamp()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeCaller:
    """Async backend caller with scripted per-backend behaviour.

    Args:
        responses: backend id -> text, or callable(prompt) -> text
        failing: backend ids that raise
        delays: backend id -> seconds to sleep before answering
        latencies: backend id -> latency_ms to report
        fail_when: callable(prompt) -> bool; matching prompts raise
    """

    def __init__(self, responses=None, failing=(), delays=None, latencies=None,
                 fail_when=None, default_text="ok", delay_when=None):
        self.responses = responses or {}
        self.failing = set(failing)
        self.delays = delays or {}
        self.latencies = latencies or {}
        self.fail_when = fail_when
        self.delay_when = delay_when
        self.default_text = default_text
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, prompt, backend_id, options):
        self.calls.append((backend_id, prompt, options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(backend_id, 0.0)
            if self.delay_when is not None:
                delay = max(delay, self.delay_when(prompt))
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            if backend_id in self.failing or (self.fail_when and self.fail_when(prompt)):
                raise RuntimeError(f"{backend_id} unavailable")
            text = self.responses.get(backend_id, self.default_text)
            if callable(text):
                text = text(prompt)
            return BackendResponse(
                text=text,
                tokens_used=30,
                latency_ms=self.latencies.get(backend_id, 5.0),
                input_tokens=10,
                output_tokens=20,
            )
        finally:
            self.in_flight -= 1

    def backends_called(self):
        return [c[0] for c in self.calls]
