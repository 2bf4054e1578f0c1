"""
Core data models shared across the judge calibration engine.

Everything crossing the public boundary is a dataclass that renders to
plain JSON-compatible data via ``to_plain``.
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from .errors import InvalidArgumentError, JudgeParseError, describe_error

# Confidence assumed when a judge returns a verdict without one
DEFAULT_CONFIDENCE = 0.8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_plain(value: Any) -> Any:
    """Recursively convert dataclasses, enums and datetimes to plain data."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_plain(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if f.repr
        }
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, float) and value != value:  # NaN
        return None
    return value


# =============================================================================
# CALIBRATION SAMPLES
# =============================================================================


@dataclass(frozen=True)
class CalibrationSample:
    """A labeled (input, output) pair with a known-correct verdict."""

    input: str
    output: str
    ground_truth: bool
    context: Mapping[str, Any] = field(default_factory=dict)
    added_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))

    def matches(self, **context: Any) -> bool:
        """Whether every given key/value pair is present in this sample's context."""
        return all(
            key in self.context and self.context[key] == value
            for key, value in context.items()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "output": self.output,
            "ground_truth": self.ground_truth,
            "context": to_plain(self.context),
            "added_at": self.added_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CalibrationSample:
        added_at = data.get("added_at")
        if isinstance(added_at, str):
            added_at = datetime.fromisoformat(added_at)
        return cls(
            input=str(data.get("input", "")),
            output=str(data["output"]),
            ground_truth=bool(data["ground_truth"]),
            context=data.get("context") or {},
            added_at=added_at or utcnow(),
        )


# =============================================================================
# JUDGE VERDICTS
# =============================================================================


@dataclass(frozen=True)
class JudgeVerdict:
    """A single binary judgment."""

    verdict: bool
    confidence: float = DEFAULT_CONFIDENCE
    reasoning: str = ""

    @classmethod
    def from_response(cls, response: Any) -> JudgeVerdict:
        """
        Normalize whatever a judge backend returned into a JudgeVerdict.

        Accepts a JudgeVerdict, a mapping with ``verdict`` (or ``passed``),
        ``confidence`` and ``reasoning`` keys, or an object with the same
        attributes.

        Raises:
            JudgeParseError: If no boolean verdict can be recovered
        """
        if isinstance(response, JudgeVerdict):
            return response

        if isinstance(response, Mapping):
            raw_verdict = response.get("verdict", response.get("passed"))
            confidence = response.get("confidence")
            reasoning = response.get("reasoning")
        elif hasattr(response, "verdict"):
            raw_verdict = response.verdict
            confidence = getattr(response, "confidence", None)
            reasoning = getattr(response, "reasoning", None)
        else:
            raise JudgeParseError(f"Unrecognized judge response: {response!r}")

        verdict = _coerce_verdict(raw_verdict)

        try:
            confidence = DEFAULT_CONFIDENCE if confidence is None else float(confidence)
        except (TypeError, ValueError) as e:
            raise JudgeParseError(f"Invalid confidence: {confidence!r}") from e
        if math.isnan(confidence):
            raise JudgeParseError("Invalid confidence: nan")

        return cls(
            verdict=verdict,
            confidence=min(max(confidence, 0.0), 1.0),
            reasoning=str(reasoning) if reasoning is not None else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


def _coerce_verdict(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise JudgeParseError(f"Judge response has no boolean verdict: {value!r}")


@dataclass(frozen=True)
class JudgeVote:
    """One judge's contribution to a multi-judge decision."""

    judge: str
    verdict: bool | None
    confidence: float | None
    reasoning: str | None
    error: str | None = None
    weight: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def from_verdict(
        cls, judge: str, verdict: JudgeVerdict, weight: float | None = None
    ) -> JudgeVote:
        return cls(
            judge=judge,
            verdict=verdict.verdict,
            confidence=verdict.confidence,
            reasoning=verdict.reasoning,
            weight=weight,
        )

    @classmethod
    def from_error(
        cls, judge: str, error: BaseException, weight: float | None = None
    ) -> JudgeVote:
        return cls(
            judge=judge,
            verdict=None,
            confidence=None,
            reasoning=None,
            error=describe_error(error),
            weight=weight,
        )


# =============================================================================
# JUDGE BACKENDS
# =============================================================================


@runtime_checkable
class JudgeBackend(Protocol):
    """The capability a judge needs: one call that returns a verdict."""

    def call_judge(
        self,
        input: str,
        output: str,
        criteria: str,
        **options: Any,
    ) -> JudgeVerdict | Mapping[str, Any]:
        """
        Judge whether ``output`` satisfies ``criteria`` for ``input``.

        Must raise a JudgeCallError subclass on failure rather than
        returning a made-up verdict.
        """
        ...


class FunctionBackend:
    """Adapts a plain callable to the JudgeBackend protocol."""

    def __init__(self, func: Any):
        self.func = func

    def call_judge(
        self, input: str, output: str, criteria: str, **options: Any
    ) -> JudgeVerdict | Mapping[str, Any]:
        return self.func(input, output, criteria, **options)


def as_backend(judge: Any) -> JudgeBackend:
    """Return ``judge`` as a JudgeBackend, wrapping plain callables."""
    if hasattr(judge, "call_judge"):
        return judge
    if callable(judge):
        return FunctionBackend(judge)
    raise InvalidArgumentError(
        f"Judge backend must define call_judge() or be callable, got {type(judge).__name__}"
    )


def sample_fields(sample: Any) -> tuple[str, str]:
    """Extract (input, output) from a mapping or an object with those attributes."""
    if isinstance(sample, Mapping):
        if "output" not in sample:
            raise InvalidArgumentError(f"Sample is missing 'output': {sample!r}")
        return str(sample.get("input", "") or ""), str(sample["output"])
    if hasattr(sample, "output"):
        return str(getattr(sample, "input", "") or ""), str(sample.output)
    raise InvalidArgumentError(f"Sample must provide an output: {sample!r}")
