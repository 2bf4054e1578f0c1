"""
Model client registry for LLM API access.

Provides a consistent interface for the providers a judge can run on:
- Anthropic and OpenAI SDK clients
- LiteLLM for everything else
- Provider inference from model identifiers
- Retry with exponential backoff (see ``model_client.retry``)

Clients never retry on their own; callers decide the retry policy.

Example usage:
    from model_client import ModelRegistry

    client = ModelRegistry.get_client("anthropic", "claude-sonnet-4-20250514")
    response = client.generate(
        [{"role": "user", "content": "Hello!"}],
        model="claude-sonnet-4-20250514",
    )
    print(response.content)
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any

from .protocols import ModelClient, ModelResponse, Provider, TokenUsage
from .retry import RETRYABLE_EXCEPTIONS, call_with_retry, is_retryable_exception

__all__ = [
    "ClientConfig",
    "ModelRegistry",
    "ModelClient",
    "ModelResponse",
    "TokenUsage",
    "Provider",
    "infer_provider",
    "call_with_retry",
    "is_retryable_exception",
    "RETRYABLE_EXCEPTIONS",
]

logger = logging.getLogger(__name__)


# Model-id prefixes per provider; anything else goes through LiteLLM
PROVIDER_PREFIXES: dict[str, tuple[str, ...]] = {
    "anthropic": ("claude",),
    "openai": ("gpt-", "o1", "o3", "o4", "chatgpt"),
}


def infer_provider(model: str) -> Provider:
    """Infer the provider for a model identifier."""
    model_lower = model.lower()
    for provider, prefixes in PROVIDER_PREFIXES.items():
        if model_lower.startswith(prefixes):
            return provider  # type: ignore[return-value]
    return "litellm"


@dataclass
class ClientConfig:
    """Configuration for a model client."""

    api_key: str | None = None
    timeout: float = 120.0
    base_url: str | None = None


class AnthropicClient:
    """Anthropic API client wrapper."""

    def __init__(self, config: ClientConfig):
        from anthropic import Anthropic

        self.client = Anthropic(
            api_key=config.api_key or os.environ.get("ANTHROPIC_API_KEY"),
            timeout=config.timeout,
            max_retries=0,  # Retries are the caller's policy
        )
        self.config = config

    def generate(
        self,
        messages: list[dict[str, str]],
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        **kwargs: Any,
    ) -> ModelResponse:
        start_time = time.time()

        response = self.client.messages.create(
            model=model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )

        latency_ms = (time.time() - start_time) * 1000

        # Text lives in the first content block
        content = ""
        if response.content:
            first_block = response.content[0]
            if hasattr(first_block, "text"):
                content = first_block.text

        return ModelResponse(
            content=content,
            model=model,
            usage=TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            finish_reason=response.stop_reason or "stop",
            latency_ms=latency_ms,
            raw_response=response,
        )


def _chat_completion_response(response: Any, model: str, latency_ms: float) -> ModelResponse:
    """Convert an OpenAI-style chat completion into a ModelResponse."""
    choice = response.choices[0] if response.choices else None
    usage = response.usage

    return ModelResponse(
        content=(choice.message.content or "") if choice else "",
        model=model,
        usage=TokenUsage(
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        ),
        finish_reason=(choice.finish_reason or "stop") if choice else "stop",
        latency_ms=latency_ms,
        raw_response=response,
    )


class OpenAIClient:
    """OpenAI API client wrapper."""

    def __init__(self, config: ClientConfig):
        from openai import OpenAI

        self.client = OpenAI(
            api_key=config.api_key or os.environ.get("OPENAI_API_KEY"),
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )
        self.config = config

    def generate(
        self,
        messages: list[dict[str, str]],
        model: str = "gpt-4o",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        **kwargs: Any,
    ) -> ModelResponse:
        start_time = time.time()

        response = self.client.chat.completions.create(
            model=model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )

        return _chat_completion_response(response, model, (time.time() - start_time) * 1000)


class LiteLLMClient:
    """LiteLLM client wrapper for multi-provider support."""

    def __init__(self, config: ClientConfig):
        self.config = config

    def generate(
        self,
        messages: list[dict[str, str]],
        model: str = "gemini/gemini-1.5-pro",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        **kwargs: Any,
    ) -> ModelResponse:
        import litellm  # type: ignore[import-not-found]

        start_time = time.time()

        response = litellm.completion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=self.config.timeout,
            **kwargs,
        )

        return _chat_completion_response(response, model, (time.time() - start_time) * 1000)


class ModelRegistry:
    """
    Factory for creating model clients with consistent configuration.

    Clients are cached per provider/model and shared across threads.
    """

    _clients: dict[str, Any] = {}
    _lock = threading.Lock()

    @classmethod
    def get_client(
        cls,
        provider: Provider | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        base_url: str | None = None,
    ) -> Any:
        """
        Get or create a client for the specified provider.

        Args:
            provider: LLM provider ("anthropic", "openai", "litellm");
                inferred from the model when omitted
            model: Model name (used for provider inference and the cache key)
            api_key: Optional API key (defaults to env var)
            timeout: Request timeout in seconds
            base_url: Optional API base URL (OpenAI-compatible endpoints)

        Returns:
            Configured client instance
        """
        if provider is None:
            if model is None:
                raise ValueError("Either provider or model is required")
            provider = infer_provider(model)

        cache_key = f"{provider}:{model or 'default'}:{timeout}"

        with cls._lock:
            if cache_key in cls._clients:
                return cls._clients[cache_key]

            config = ClientConfig(api_key=api_key, timeout=timeout, base_url=base_url)

            client: Any
            if provider == "anthropic":
                client = AnthropicClient(config)
            elif provider == "openai":
                client = OpenAIClient(config)
            elif provider == "litellm":
                client = LiteLLMClient(config)
            else:
                raise ValueError(f"Unknown provider: {provider}")

            cls._clients[cache_key] = client
            logger.debug(f"Created new client for {cache_key}")
            return client

    @classmethod
    def clear_cache(cls) -> None:
        """Clear the client cache."""
        with cls._lock:
            cls._clients.clear()
