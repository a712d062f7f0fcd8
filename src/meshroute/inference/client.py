"""OpenAI-compatible backend caller.

Maps backend ids to chat-completion endpoints (llama.cpp, Ollama, OpenRouter,
OpenAI, ...) and implements the ``BackendCaller`` contract.

Includes retry logic, connection pooling and per-backend token tracking.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from meshroute.errors import UnknownBackend
from meshroute.models import BackendResponse, CallOptions

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Token usage statistics."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0


@dataclass
class Endpoint:
    """Where and how to reach one backend."""
    base_url: str
    model: str
    api_key: str = "EMPTY"


class OpenAICompatibleCaller:
    """Backend caller speaking the OpenAI chat-completions protocol.

    Features:
    - One pooled ``AsyncOpenAI`` client per distinct (base_url, api_key)
    - Retry logic with exponential backoff
    - Per-backend token tracking

    Usage:
        caller = OpenAICompatibleCaller({
            "ollama-qwen-7b": {"base_url": "http://localhost:11434/v1", "model": "qwen2.5:7b"},
        })
        stack = build_stack(config, caller)
    """

    def __init__(
        self,
        endpoints: dict[str, Any],
        default_temperature: float = 0.7,
        default_max_tokens: int = 2048,
        timeout_s: float = 120.0,
    ):
        """Initialize the caller.

        Args:
            endpoints: backend id -> ``Endpoint`` or dict with keys
                base_url, model and optional api_key.
            default_temperature: Used when CallOptions leaves it unset.
            default_max_tokens: Used when CallOptions leaves it unset.
            timeout_s: HTTP timeout for a single attempt.
        """
        self.endpoints: dict[str, Endpoint] = {
            backend_id: ep if isinstance(ep, Endpoint) else Endpoint(**ep)
            for backend_id, ep in endpoints.items()
        }
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens
        self.timeout_s = timeout_s

        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

        # Token tracking per backend
        self._token_usage: dict[str, TokenUsage] = {}
        self._usage_lock = asyncio.Lock()

    def _client_for(self, endpoint: Endpoint) -> AsyncOpenAI:
        key = (endpoint.base_url, endpoint.api_key)
        client = self._clients.get(key)
        if client is None:
            client = AsyncOpenAI(
                base_url=endpoint.base_url,
                api_key=endpoint.api_key,
                http_client=httpx.AsyncClient(
                    limits=httpx.Limits(
                        max_keepalive_connections=20,
                        max_connections=100
                    ),
                    timeout=httpx.Timeout(self.timeout_s)
                )
            )
            self._clients[key] = client
        return client

    async def __call__(
        self, prompt: str, backend_id: str, options: Optional[CallOptions] = None
    ) -> BackendResponse:
        return await self.call(prompt, backend_id, options)

    async def call(
        self, prompt: str, backend_id: str, options: Optional[CallOptions] = None
    ) -> BackendResponse:
        """Run one completion on ``backend_id``.

        Raises:
            UnknownBackend: If no endpoint is configured for the backend.
            Exception: Whatever the provider raised after all retries.
        """
        endpoint = self.endpoints.get(backend_id)
        if endpoint is None:
            raise UnknownBackend(f"No endpoint configured for backend '{backend_id}'")
        options = options or CallOptions()
        return await self._complete(prompt, backend_id, endpoint, options)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=8), reraise=True)
    async def _complete(
        self, prompt: str, backend_id: str, endpoint: Endpoint, options: CallOptions
    ) -> BackendResponse:
        start_time = time.perf_counter()
        params = {
            "model": endpoint.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": (
                options.temperature if options.temperature is not None
                else self.default_temperature
            ),
            "max_tokens": options.max_tokens or self.default_max_tokens,
        }
        try:
            response = await self._client_for(endpoint).chat.completions.create(**params)
        except Exception as e:
            logger.error(f"Completion failed on {backend_id}: {e}")
            raise

        content = response.choices[0].message.content or ""
        tokens_in = response.usage.prompt_tokens if response.usage else 0
        tokens_out = response.usage.completion_tokens if response.usage else 0
        latency_ms = (time.perf_counter() - start_time) * 1000

        async with self._usage_lock:
            usage = self._token_usage.setdefault(backend_id, TokenUsage())
            usage.prompt_tokens += tokens_in
            usage.completion_tokens += tokens_out
            usage.total_tokens += tokens_in + tokens_out
            usage.calls += 1

        logger.debug(
            f"Completion on {backend_id}: {tokens_in} in, {tokens_out} out, {latency_ms:.1f}ms"
        )
        return BackendResponse(
            text=content,
            tokens_used=tokens_in + tokens_out,
            latency_ms=latency_ms,
            input_tokens=tokens_in,
            output_tokens=tokens_out,
        )

    def get_token_usage(self, backend_id: str) -> TokenUsage:
        """Token usage for a backend (empty if it was never called)."""
        return self._token_usage.get(backend_id, TokenUsage())

    def reset_token_usage(self, backend_id: Optional[str] = None):
        if backend_id is None:
            self._token_usage.clear()
            logger.info("Reset token usage for all backends")
        elif backend_id in self._token_usage:
            del self._token_usage[backend_id]
            logger.info(f"Reset token usage for {backend_id}")

    async def close(self):
        """Close every pooled client."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        logger.info("Backend caller closed")
