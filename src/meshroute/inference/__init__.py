"""Backend caller contract and the bundled OpenAI-compatible implementation."""
from meshroute.inference.caller import (
    BackendCaller,
    call_timeout,
    estimate_prompt_tokens,
    invoke_backend,
    token_split,
)
from meshroute.inference.client import Endpoint, OpenAICompatibleCaller, TokenUsage

__all__ = [
    # Contract
    "BackendCaller",
    "call_timeout",
    "invoke_backend",
    "token_split",
    "estimate_prompt_tokens",
    # OpenAI-compatible caller
    "OpenAICompatibleCaller",
    "Endpoint",
    "TokenUsage",
]
