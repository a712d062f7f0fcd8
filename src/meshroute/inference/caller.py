"""Backend caller contract and the timed invocation helper.

The core never talks to a provider directly. It is handed an async callable

    caller(prompt, backend_id, options) -> BackendResponse

and wraps every invocation with a timeout derived from the backend's
latency prior. Anything the caller raises (or a timeout) comes back as a
``BackendCallFailure``.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from meshroute.errors import BackendCallFailure
from meshroute.models import BackendDescriptor, BackendResponse, CallOptions

logger = logging.getLogger(__name__)

BackendCaller = Callable[[str, str, CallOptions], Awaitable[BackendResponse]]


def call_timeout(
    backend: BackendDescriptor,
    multiplier: float = 3.0,
    min_timeout_s: float = 1.0,
) -> float:
    """Seconds to wait for ``backend``: its p99 prior times ``multiplier``."""
    return max(min_timeout_s, backend.latency_p99 * multiplier / 1000.0)


async def invoke_backend(
    caller: BackendCaller,
    prompt: str,
    backend: BackendDescriptor,
    options: Optional[CallOptions] = None,
    timeout_s: Optional[float] = None,
) -> BackendResponse:
    """Run one backend call with a wall-clock timeout.

    Returns:
        BackendResponse, with ``latency_ms`` filled from the wall clock when
        the caller left it at zero.

    Raises:
        BackendCallFailure: If the caller raised or the timeout elapsed.
    """
    options = options or CallOptions()
    timeout = timeout_s if timeout_s is not None else call_timeout(backend)
    start = time.perf_counter()
    try:
        response = await asyncio.wait_for(caller(prompt, backend.id, options), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Backend {backend.id} timed out after {timeout:.1f}s")
        raise BackendCallFailure(backend.id, f"timed out after {timeout:.1f}s", timed_out=True)
    except BackendCallFailure:
        raise
    except Exception as e:
        logger.warning(f"Backend {backend.id} call failed: {e}")
        raise BackendCallFailure(backend.id, str(e)) from e

    if not isinstance(response, BackendResponse):
        raise BackendCallFailure(
            backend.id, f"caller returned {type(response).__name__}, expected BackendResponse"
        )
    if response.latency_ms <= 0:
        response = response.model_copy(
            update={"latency_ms": (time.perf_counter() - start) * 1000}
        )
    return response


def token_split(response: BackendResponse, prompt_tokens_hint: int = 0) -> tuple[int, int]:
    """(input, output) tokens for a response, inferring from ``tokens_used`` when needed."""
    if response.input_tokens is not None and response.output_tokens is not None:
        return response.input_tokens, response.output_tokens
    if response.output_tokens is not None:
        return max(0, response.tokens_used - response.output_tokens), response.output_tokens
    input_tokens = min(prompt_tokens_hint, response.tokens_used)
    return input_tokens, max(0, response.tokens_used - input_tokens)


def estimate_prompt_tokens(prompt: str) -> int:
    """Rough token count (~4 characters per token)."""
    return max(1, len(prompt) // 4) if prompt else 0
