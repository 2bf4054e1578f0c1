"""
Provider-neutral response and client types.

Every client returns a ModelResponse so judges never see SDK objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

Provider = Literal["anthropic", "openai", "litellm"]

# finish_reason values meaning the provider declined to answer
REFUSAL_REASONS = frozenset({"refusal", "content_filter"})


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ModelResponse:
    """One completion, normalized across providers."""

    content: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    latency_ms: float = 0.0
    raw_response: Any = field(default=None, repr=False, compare=False)

    @property
    def refused(self) -> bool:
        return self.finish_reason in REFUSAL_REASONS


@runtime_checkable
class ModelClient(Protocol):
    """Anything that turns chat messages into a ModelResponse."""

    def generate(
        self,
        messages: list[dict[str, str]],
        model: str,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        **kwargs: Any,
    ) -> ModelResponse:
        """
        Run one chat completion.

        ``kwargs`` carries provider-specific options such as Anthropic's
        ``system`` prompt. Clients must not retry on their own.
        """
        ...
