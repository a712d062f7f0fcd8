"""Test suite for backend invocation and the OpenAI-compatible caller.

Tests timeouts, failure wrapping, token accounting, endpoint pooling,
retry logic, and token tracking.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from meshroute.errors import BackendCallFailure, UnknownBackend
from meshroute.inference import (
    Endpoint,
    OpenAICompatibleCaller,
    call_timeout,
    estimate_prompt_tokens,
    invoke_backend,
    token_split,
)
from meshroute.models import BackendResponse, CallOptions

from fakes import FakeCaller, backend


@pytest.fixture
def endpoints():
    return {
        "local-qwen": {"base_url": "http://localhost:11434/v1", "model": "qwen2.5:7b"},
        "local-coder": {"base_url": "http://localhost:11434/v1", "model": "deepseek-coder:6.7b"},
        "remote-gpt": Endpoint(base_url="https://api.example.com/v1", model="gpt-4o", api_key="sk-test"),
    }


@pytest.fixture
def mock_openai_response():
    """Mock OpenAI API response."""
    mock_response = MagicMock()
    mock_response.choices = [
        MagicMock(message=MagicMock(content="Test response"))
    ]
    mock_response.usage = MagicMock(
        prompt_tokens=10,
        completion_tokens=20,
        total_tokens=30
    )
    return mock_response


# ── invoke_backend ───────────────────────────────────────────────────────────


class TestInvokeBackend:
    """Test the timeout and failure contract around a single call."""

    @pytest.mark.asyncio
    async def test_success(self):
        response = await invoke_backend(FakeCaller(default_text="hi"), "p", backend("b"))
        assert response.text == "hi"
        assert response.latency_ms == 5.0

    @pytest.mark.asyncio
    async def test_timeout_marked(self):
        caller = FakeCaller(delays={"b": 1.0})
        with pytest.raises(BackendCallFailure) as exc_info:
            await invoke_backend(caller, "p", backend("b"), timeout_s=0.05)
        assert exc_info.value.timed_out
        assert exc_info.value.backend_id == "b"

    @pytest.mark.asyncio
    async def test_exception_wrapped(self):
        with pytest.raises(BackendCallFailure) as exc_info:
            await invoke_backend(FakeCaller(failing={"b"}), "p", backend("b"))
        assert not exc_info.value.timed_out
        assert "b unavailable" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_wrong_return_type(self):
        async def caller(prompt, backend_id, options):
            return "plain string"

        with pytest.raises(BackendCallFailure, match="expected BackendResponse"):
            await invoke_backend(caller, "p", backend("b"))

    @pytest.mark.asyncio
    async def test_latency_filled_from_wall_clock(self):
        async def caller(prompt, backend_id, options):
            await asyncio.sleep(0.01)
            return BackendResponse(text="x")

        response = await invoke_backend(caller, "p", backend("b"))
        assert response.latency_ms > 0

    @pytest.mark.asyncio
    async def test_options_passed_through(self):
        caller = FakeCaller()
        await invoke_backend(caller, "p", backend("b"), CallOptions(max_tokens=7))
        assert caller.calls[0][2].max_tokens == 7


class TestHelpers:
    def test_call_timeout_scales_p99(self):
        assert call_timeout(backend("b", latency_p99=4000)) == pytest.approx(12.0)
        assert call_timeout(backend("b", latency_p99=4000), multiplier=1.0) == pytest.approx(4.0)

    def test_call_timeout_floor(self):
        assert call_timeout(backend("b", latency_p99=10), min_timeout_s=1.0) == 1.0

    def test_token_split_reported(self):
        response = BackendResponse(text="x", tokens_used=30, input_tokens=12, output_tokens=18)
        assert token_split(response) == (12, 18)

    def test_token_split_inferred(self):
        response = BackendResponse(text="x", tokens_used=30)
        input_tokens, output_tokens = token_split(response, prompt_tokens_hint=10)
        assert input_tokens + output_tokens == 30
        assert input_tokens >= 0 and output_tokens >= 0

    def test_estimate_prompt_tokens(self):
        assert estimate_prompt_tokens("") == 0
        assert estimate_prompt_tokens("abc") == 1
        assert estimate_prompt_tokens("a" * 400) == 100


# ── OpenAICompatibleCaller ───────────────────────────────────────────────────


class TestCallerCreation:
    """Test caller initialization and endpoint pooling."""

    def test_dict_endpoints_normalized(self, endpoints):
        caller = OpenAICompatibleCaller(endpoints)
        assert caller.endpoints["local-qwen"] == Endpoint(
            base_url="http://localhost:11434/v1", model="qwen2.5:7b", api_key="EMPTY",
        )
        assert caller.endpoints["remote-gpt"].api_key == "sk-test"

    def test_clients_shared_per_base_url(self, endpoints):
        caller = OpenAICompatibleCaller(endpoints)
        qwen = caller._client_for(caller.endpoints["local-qwen"])
        coder = caller._client_for(caller.endpoints["local-coder"])
        gpt = caller._client_for(caller.endpoints["remote-gpt"])
        assert qwen is coder
        assert qwen is not gpt

    @pytest.mark.asyncio
    async def test_unknown_backend(self, endpoints):
        caller = OpenAICompatibleCaller(endpoints)
        with pytest.raises(UnknownBackend):
            await caller("hello", "missing", CallOptions())


class TestCompletion:
    """Test completions against a mocked chat-completions resource."""

    @pytest.mark.asyncio
    async def test_completion(self, endpoints, mock_openai_response):
        caller = OpenAICompatibleCaller(endpoints)
        client = caller._client_for(caller.endpoints["local-qwen"])

        with patch.object(
            client.chat.completions,
            "create",
            new_callable=AsyncMock
        ) as mock_create:
            mock_create.return_value = mock_openai_response

            result = await caller("Hello", "local-qwen", CallOptions(temperature=0.1, max_tokens=50))

            assert isinstance(result, BackendResponse)
            assert result.text == "Test response"
            assert result.input_tokens == 10
            assert result.output_tokens == 20
            assert result.tokens_used == 30
            assert result.latency_ms >= 0

            kwargs = mock_create.call_args.kwargs
            assert kwargs["model"] == "qwen2.5:7b"
            assert kwargs["temperature"] == 0.1
            assert kwargs["max_tokens"] == 50
            assert kwargs["messages"] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_defaults_when_options_unset(self, endpoints, mock_openai_response):
        caller = OpenAICompatibleCaller(endpoints, default_temperature=0.3, default_max_tokens=99)
        client = caller._client_for(caller.endpoints["local-qwen"])

        with patch.object(client.chat.completions, "create", new_callable=AsyncMock) as mock_create:
            mock_create.return_value = mock_openai_response
            await caller.call("Hello", "local-qwen")

            kwargs = mock_create.call_args.kwargs
            assert kwargs["temperature"] == 0.3
            assert kwargs["max_tokens"] == 99

    @pytest.mark.asyncio
    async def test_retry_then_success(self, endpoints, mock_openai_response):
        """A transient failure is retried (waits out one backoff step)."""
        caller = OpenAICompatibleCaller(endpoints)
        client = caller._client_for(caller.endpoints["local-qwen"])

        with patch.object(client.chat.completions, "create", new_callable=AsyncMock) as mock_create:
            mock_create.side_effect = [ConnectionError("reset"), mock_openai_response]
            result = await caller("Hello", "local-qwen")

            assert result.text == "Test response"
            assert mock_create.call_count == 2

    @pytest.mark.asyncio
    async def test_token_tracking(self, endpoints, mock_openai_response):
        caller = OpenAICompatibleCaller(endpoints)
        client = caller._client_for(caller.endpoints["local-qwen"])

        with patch.object(client.chat.completions, "create", new_callable=AsyncMock) as mock_create:
            mock_create.return_value = mock_openai_response

            await caller("Hello", "local-qwen")
            await caller("Hello", "local-coder")
            await caller("Hello", "local-qwen")

        usage = caller.get_token_usage("local-qwen")
        assert usage.prompt_tokens == 20
        assert usage.completion_tokens == 40
        assert usage.total_tokens == 60
        assert usage.calls == 2
        assert caller.get_token_usage("local-coder").calls == 1

        caller.reset_token_usage("local-qwen")
        assert caller.get_token_usage("local-qwen").calls == 0
        caller.reset_token_usage()
        assert caller.get_token_usage("local-coder").calls == 0

    @pytest.mark.asyncio
    async def test_close(self, endpoints):
        caller = OpenAICompatibleCaller(endpoints)
        client = caller._client_for(caller.endpoints["remote-gpt"])
        with patch.object(client, "close", new_callable=AsyncMock) as mock_close:
            await caller.close()
            mock_close.assert_awaited_once()
        assert caller._clients == {}
