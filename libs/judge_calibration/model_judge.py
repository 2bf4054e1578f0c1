"""
Default judge backend that asks an LLM for a JSON verdict.

ModelJudge satisfies the JudgeBackend protocol on top of ``model_client``.
Provider errors are translated into the JudgeCallError hierarchy so callers
can tell a retryable failure from a parse failure or a refusal.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from model_client import ModelRegistry, infer_provider, is_retryable_exception
from model_client.protocols import ModelClient, Provider

from .errors import JudgeCallError, JudgeParseError, JudgeRefusalError, JudgeTransientError
from .models import JudgeVerdict

logger = logging.getLogger(__name__)


class ModelJudge:
    """
    Binary LLM judge over a model_client client.

    The client is created on first use from the model identifier
    (provider inferred unless given), or injected directly.
    """

    SYSTEM_PROMPT = "You are an objective evaluator. Always respond with valid JSON."

    JUDGE_PROMPT_TEMPLATE = """You are an objective AI judge evaluating whether an output is correct.

## Evaluation Criteria
{criteria}

## Input
{input}

## Output to Evaluate
{output}

## Instructions
Evaluate whether the output satisfies the criteria. Be objective and consistent.

## Output Format

Respond with JSON only:
```json
{{
  "verdict": true or false,
  "confidence": <float between 0.0 and 1.0>,
  "reasoning": "brief explanation of your judgment"
}}
```"""

    def __init__(
        self,
        model: str = "gpt-4o",
        provider: Provider | None = None,
        client: ModelClient | None = None,
        max_tokens: int = 512,
        timeout: float = 120.0,
    ):
        self.model = model
        self.provider = provider or infer_provider(model)
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> ModelClient:
        if self._client is None:
            self._client = ModelRegistry.get_client(
                provider=self.provider, model=self.model, timeout=self.timeout
            )
        return self._client

    def build_prompt(self, input: str, output: str, criteria: str) -> str:
        return self.JUDGE_PROMPT_TEMPLATE.format(criteria=criteria, input=input, output=output)

    def call_judge(
        self, input: str, output: str, criteria: str, **options: Any
    ) -> JudgeVerdict:
        """
        Ask the model for a verdict.

        Recognized options: ``model`` and ``temperature``.

        Raises:
            JudgeTransientError: Rate limits, timeouts, connection errors
            JudgeRefusalError: The provider refused or returned nothing
            JudgeParseError: The answer holds no usable verdict
            JudgeCallError: Any other provider failure
        """
        model = options.get("model") or self.model
        temperature = options.get("temperature", 0.0)
        messages = [{"role": "user", "content": self.build_prompt(input, output, criteria)}]

        # Anthropic takes the system prompt as a parameter, not a message
        extra: dict[str, Any] = {}
        if self.provider == "anthropic":
            extra["system"] = self.SYSTEM_PROMPT
        else:
            messages.insert(0, {"role": "system", "content": self.SYSTEM_PROMPT})

        try:
            response = self.client.generate(
                messages,
                model=model,
                max_tokens=self.max_tokens,
                temperature=temperature,
                **extra,
            )
        except Exception as e:
            if is_retryable_exception(e):
                raise JudgeTransientError(f"{type(e).__name__}: {e}") from e
            raise JudgeCallError(f"{type(e).__name__}: {e}") from e

        if response.refused:
            raise JudgeRefusalError(f"{model} refused to judge ({response.finish_reason})")
        if not response.content.strip():
            raise JudgeRefusalError(f"{model} returned an empty answer")

        logger.debug(f"{model} judged in {response.latency_ms:.0f}ms")
        return parse_verdict(response.content)


def parse_verdict(raw: str) -> JudgeVerdict:
    """
    Extract a JudgeVerdict from a model answer.

    Looks for a fenced ```json block first, then for any JSON object.

    Raises:
        JudgeParseError: If no JSON object with a boolean verdict is found
    """
    json_match = re.search(r"```json\s*([\s\S]*?)```", raw)
    if json_match:
        json_str = json_match.group(1)
    else:
        json_match = re.search(r"\{[\s\S]*\}", raw)
        if not json_match:
            raise JudgeParseError(f"No JSON object in judge answer: {raw[:200]!r}")
        json_str = json_match.group(0)

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise JudgeParseError(f"Invalid JSON in judge answer: {e}") from e

    if not isinstance(data, dict):
        raise JudgeParseError(f"Judge answer is not a JSON object: {json_str[:200]!r}")

    return JudgeVerdict.from_response(data)
