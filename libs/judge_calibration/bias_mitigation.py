"""
Detection and mitigation of systematic judge biases.

- PositionDebiaser: pairwise comparisons run in both presentation orders
- LengthBiasAnalyzer: correlation between output length and score
- FormatBiasAnalyzer: correlation between markdown features and score
- ConsistencyChecker: agreement of repeated judgments of the same sample

Analyzers take plain records (mappings or objects with ``output`` and
``score``) and return dataclasses with ``to_dict()``.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Literal

import numpy as np

from .concurrency import fan_out
from .errors import InvalidArgumentError, JudgeCallError, describe_error
from .models import JudgeVerdict, sample_fields, to_plain

logger = logging.getLogger(__name__)

Winner = Literal["a", "b", "tie"]

DEFAULT_BIAS_THRESHOLD = 0.5

# Confidence one ordering needs over the other to break an inconsistent comparison
DEFAULT_TIE_MARGIN = 0.2

COMPARISON_CRITERIA = "Determine which output is better"

COMPARISON_PROMPT = """Compare these two outputs and determine which is better.

## Original Input
{input}

## Evaluation Criteria
{criteria}

## Output {first_label}
{first_output}

## Output {second_label}
{second_output}

Which output better satisfies the criteria? Respond with:
- verdict true if Output {first_label} is better
- verdict false if Output {second_label} is better"""


def _scored_fields(evaluation: Any) -> tuple[str, float]:
    """Extract (output, score) from an evaluation record."""
    if isinstance(evaluation, Mapping):
        output, score = evaluation.get("output"), evaluation.get("score")
    else:
        output, score = getattr(evaluation, "output", None), getattr(evaluation, "score", None)
    if output is None or score is None:
        raise InvalidArgumentError(f"Evaluation needs 'output' and 'score': {evaluation!r}")
    return str(output), float(score)


def _scored_arrays(evaluations: list[Any]) -> tuple[list[str], np.ndarray]:
    if not evaluations:
        raise InvalidArgumentError("At least one evaluation is required")
    pairs = [_scored_fields(e) for e in evaluations]
    return [p[0] for p in pairs], np.array([p[1] for p in pairs], dtype=float)


def _is_constant(values: np.ndarray) -> bool:
    return bool(np.all(values == values[0]))


def _sample_variance(values: np.ndarray) -> float:
    """ddof=1 variance; exactly 0.0 for identical values, whose float mean can drift."""
    if len(values) < 2 or _is_constant(values):
        return 0.0
    return float(np.var(values, ddof=1))


def pearson_correlation(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson r; 0.0 for fewer than two points or a constant series."""
    if len(x) < 2 or _is_constant(x) or _is_constant(y):
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denominator = float(np.sqrt(np.sum(dx**2)) * np.sqrt(np.sum(dy**2)))
    if denominator == 0:
        return 0.0
    return float(np.sum(dx * dy) / denominator)


def point_biserial_correlation(binary: np.ndarray, scores: np.ndarray) -> float:
    """Correlation between a 0/1 feature and a continuous score."""
    n = len(binary)
    if n < 2:
        return 0.0

    with_feature = scores[binary == 1]
    without_feature = scores[binary == 0]
    if len(with_feature) == 0 or len(without_feature) == 0:
        return 0.0

    if _is_constant(scores):
        return 0.0
    overall_std = float(np.std(scores))

    p = len(with_feature) / n
    q = 1.0 - p
    return float((with_feature.mean() - without_feature.mean()) / overall_std * np.sqrt(p * q))


def correlation_strength(r: float) -> str:
    magnitude = abs(r)
    if magnitude < 0.3:
        return "weak"
    if magnitude < 0.5:
        return "moderate"
    if magnitude < 0.7:
        return "strong"
    return "very_strong"


# =============================================================================
# POSITION BIAS
# =============================================================================


@dataclass(frozen=True)
class OrderingJudgment:
    """The judge's answer for one presentation order."""

    first_label: str
    second_label: str
    prefers_first: bool
    confidence: float
    reasoning: str

    @property
    def prefers_a(self) -> bool:
        return self.prefers_first if self.first_label == "A" else not self.prefers_first

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


@dataclass(frozen=True)
class PairwiseComparison:
    """Order-debiased comparison of two outputs."""

    winner: Winner
    confidence: float
    consistent: bool
    position_bias_detected: bool
    forward_result: OrderingJudgment
    reverse_result: OrderingJudgment
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


@dataclass(frozen=True)
class RankingResult:
    """Round-robin ranking of several outputs."""

    rankings: list[dict[str, Any]]
    comparisons: list[dict[str, Any]]
    position_bias_count: int
    total_comparisons: int
    failed_comparisons: int = 0

    @property
    def partial(self) -> bool:
        return self.failed_comparisons > 0

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data["partial"] = self.partial
        return data


class PositionDebiaser:
    """
    Pairwise comparison that cancels out presentation-order bias.

    Each comparison is judged twice, with A first and with B first. When
    both orders agree the winner is clear; when they disagree the ordering
    that is more confident by more than ``tie_margin`` wins, otherwise the
    result is a tie.

    The judge only needs ``evaluate(input, output, criteria)`` returning a
    JudgeVerdict (a StatisticalJudge works); ``verdict`` means "the first
    output is better".
    """

    def __init__(self, judge: Any, tie_margin: float = DEFAULT_TIE_MARGIN, max_workers: int = 4):
        self.judge = judge
        self.tie_margin = tie_margin
        self.max_workers = max_workers

    def _judge_ordering(
        self,
        input: str,
        first_output: str,
        second_output: str,
        criteria: str,
        first_label: str,
        second_label: str,
    ) -> OrderingJudgment:
        prompt = COMPARISON_PROMPT.format(
            input=input,
            criteria=criteria,
            first_label=first_label,
            second_label=second_label,
            first_output=first_output,
            second_output=second_output,
        )
        verdict: JudgeVerdict = self.judge.evaluate(prompt, "", COMPARISON_CRITERIA)
        return OrderingJudgment(
            first_label=first_label,
            second_label=second_label,
            prefers_first=verdict.verdict,
            confidence=verdict.confidence,
            reasoning=verdict.reasoning,
        )

    def compare(self, input: str, output_a: str, output_b: str, criteria: str) -> PairwiseComparison:
        """
        Compare two outputs in both orders.

        Raises:
            InvalidArgumentError: If criteria are missing
            JudgeCallError: If either ordering cannot be judged
        """
        if not criteria:
            raise InvalidArgumentError("Evaluation criteria required")

        orderings = [
            (output_a, output_b, "A", "B"),
            (output_b, output_a, "B", "A"),
        ]
        outcomes = fan_out(
            lambda o: self._judge_ordering(input, o[0], o[1], criteria, o[2], o[3]),
            orderings,
            max_workers=2,
            isolate=(),
        )
        forward, reverse = (outcome.value for outcome in outcomes)
        return self._combine(forward, reverse)

    def _combine(self, forward: OrderingJudgment, reverse: OrderingJudgment) -> PairwiseComparison:
        consistent = forward.prefers_a == reverse.prefers_a

        winner: Winner
        if consistent:
            winner = "a" if forward.prefers_a else "b"
            confidence = (forward.confidence + reverse.confidence) / 2
            reasoning = f"Both orderings agree: {forward.reasoning}"
        else:
            if forward.confidence > reverse.confidence + self.tie_margin:
                winner = "a" if forward.prefers_a else "b"
            elif reverse.confidence > forward.confidence + self.tie_margin:
                winner = "a" if reverse.prefers_a else "b"
            else:
                winner = "tie"
            confidence = min((forward.confidence + reverse.confidence) / 4, 0.5)
            reasoning = (
                f"Position bias detected. Forward: {forward.reasoning}. "
                f"Reverse: {reverse.reasoning}"
            )
            logger.warning(f"Position bias detected; resolved as {winner!r}")

        return PairwiseComparison(
            winner=winner,
            confidence=confidence,
            consistent=consistent,
            position_bias_detected=not consistent,
            forward_result=forward,
            reverse_result=reverse,
            reasoning=reasoning,
        )

    def rank(
        self,
        input: str,
        outputs: list[str],
        criteria: str,
        cancel_event: threading.Event | None = None,
    ) -> RankingResult:
        """
        Rank outputs by round-robin pairwise comparison.

        A win scores 1 point and a tie 0.5 for each side. Comparisons that
        fail are reported in ``failed_comparisons`` and score nothing.
        """
        if len(outputs) < 2:
            raise InvalidArgumentError("At least 2 outputs are required to rank")
        if not criteria:
            raise InvalidArgumentError("Evaluation criteria required")

        pairs = list(combinations(range(len(outputs)), 2))
        outcomes = fan_out(
            lambda pair: self.compare(input, outputs[pair[0]], outputs[pair[1]], criteria),
            pairs,
            max_workers=self.max_workers,
            cancel_event=cancel_event,
            isolate=(JudgeCallError,),
        )

        scores = [0.0] * len(outputs)
        comparisons = []
        failed = 0
        for (i, j), outcome in zip(pairs, outcomes):
            if not outcome.ok:
                failed += 1
                comparisons.append(
                    {
                        "a": i,
                        "b": j,
                        "winner": None,
                        "position_bias_detected": None,
                        "error": describe_error(outcome.error) if outcome.error else "cancelled",
                    }
                )
                continue

            result: PairwiseComparison = outcome.value
            if result.winner == "a":
                scores[i] += 1.0
            elif result.winner == "b":
                scores[j] += 1.0
            else:
                scores[i] += 0.5
                scores[j] += 0.5
            comparisons.append(
                {
                    "a": i,
                    "b": j,
                    "winner": result.winner,
                    "position_bias_detected": result.position_bias_detected,
                    "confidence": result.confidence,
                }
            )

        order = sorted(range(len(outputs)), key=lambda k: (-scores[k], k))
        rankings = [
            {"rank": rank, "index": k, "output": outputs[k], "score": scores[k]}
            for rank, k in enumerate(order, start=1)
        ]

        return RankingResult(
            rankings=rankings,
            comparisons=comparisons,
            position_bias_count=sum(1 for c in comparisons if c["position_bias_detected"]),
            total_comparisons=len(pairs),
            failed_comparisons=failed,
        )


# =============================================================================
# LENGTH BIAS
# =============================================================================


@dataclass(frozen=True)
class LengthBiasResult:
    correlation: float
    bias_detected: bool
    bias_direction: str  # prefers_longer, prefers_shorter or none
    bias_strength: str
    sample_size: int
    length_stats: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


class LengthBiasAnalyzer:
    """Detects and removes a linear dependence of score on output length."""

    def __init__(self, threshold: float = DEFAULT_BIAS_THRESHOLD, min_samples: int = 10):
        self.threshold = threshold
        self.min_samples = min_samples

    def analyze_length_correlation(self, evaluations: list[Any]) -> LengthBiasResult:
        outputs, scores = _scored_arrays(evaluations)
        lengths = np.array([len(o) for o in outputs], dtype=float)

        r = pearson_correlation(lengths, scores)
        if r > 0:
            direction = "prefers_longer"
        elif r < 0:
            direction = "prefers_shorter"
        else:
            direction = "none"

        result = LengthBiasResult(
            correlation=r,
            bias_detected=abs(r) > self.threshold,
            bias_direction=direction,
            bias_strength=correlation_strength(r),
            sample_size=len(outputs),
            length_stats={
                "min": int(lengths.min()),
                "max": int(lengths.max()),
                "mean": float(lengths.mean()),
                "std": float(np.std(lengths, ddof=1)) if len(lengths) > 1 else 0.0,
            },
        )
        if result.bias_detected:
            logger.info(f"Length bias detected: r={r:.3f} ({direction})")
        return result

    def normalize_for_length(
        self, evaluations: list[Any], target_correlation: float = 0.0
    ) -> list[Any]:
        """
        Subtract the length-attributable part of each score.

        Fits score ~ length by least squares and removes
        ``beta * (length - mean_length) * (1 - |target_correlation|)``,
        clamping to [0, 1]. Returns ``evaluations`` unchanged when there
        are fewer than ``min_samples`` items or no bias is detected.
        """
        if len(evaluations) < self.min_samples:
            return evaluations
        analysis = self.analyze_length_correlation(evaluations)
        if not analysis.bias_detected:
            return evaluations

        outputs, scores = _scored_arrays(evaluations)
        lengths = np.array([len(o) for o in outputs], dtype=float)

        centered = lengths - lengths.mean()
        denominator = float(np.sum(centered**2))
        beta = float(np.sum(centered * (scores - scores.mean())) / denominator) if denominator else 0.0

        normalized = []
        for output, score, length, offset in zip(outputs, scores, lengths, centered):
            adjustment = beta * offset * (1.0 - abs(target_correlation))
            normalized.append(
                {
                    "output": output,
                    "original_score": float(score),
                    "normalized_score": min(max(float(score) - adjustment, 0.0), 1.0),
                    "length": int(length),
                    "adjustment": adjustment,
                }
            )
        return normalized


# =============================================================================
# FORMAT BIAS
# =============================================================================

FORMAT_INDICATORS: dict[str, re.Pattern[str]] = {
    "markdown_headers": re.compile(r"^#+\s", re.MULTILINE),
    "bullet_lists": re.compile(r"^[\-\*]\s", re.MULTILINE),
    "numbered_lists": re.compile(r"^\d+\.\s", re.MULTILINE),
    "code_blocks": re.compile(r"```"),
    "bold_text": re.compile(r"\*\*[^*]+\*\*"),
    "inline_code": re.compile(r"`[^`]+`"),
    "links": re.compile(r"\[[^\]]+\]\([^)]+\)"),
    "tables": re.compile(r"\|.*\|"),
}


@dataclass(frozen=True)
class FeatureBias:
    correlation: float
    bias_detected: bool
    direction: str  # prefers_with, prefers_without or none
    feature_frequency: float


@dataclass(frozen=True)
class FormatBiasResult:
    format_biases: dict[str, FeatureBias]
    significant_biases: list[str]
    bias_count: int
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


class FormatBiasAnalyzer:
    """Checks whether presentation features, not content, move the score."""

    def __init__(self, threshold: float = DEFAULT_BIAS_THRESHOLD):
        self.threshold = threshold

    def analyze(self, evaluations: list[Any]) -> FormatBiasResult:
        outputs, scores = _scored_arrays(evaluations)

        biases: dict[str, FeatureBias] = {}
        for name, pattern in FORMAT_INDICATORS.items():
            present = np.array([1 if pattern.search(o) else 0 for o in outputs])
            r = point_biserial_correlation(present, scores)
            if r > 0:
                direction = "prefers_with"
            elif r < 0:
                direction = "prefers_without"
            else:
                direction = "none"
            biases[name] = FeatureBias(
                correlation=r,
                bias_detected=abs(r) > self.threshold,
                direction=direction,
                feature_frequency=float(present.mean()),
            )

        significant = [name for name, bias in biases.items() if bias.bias_detected]
        if significant:
            logger.info(f"Format bias detected for: {', '.join(significant)}")

        return FormatBiasResult(
            format_biases=biases,
            significant_biases=significant,
            bias_count=len(significant),
            sample_size=len(outputs),
        )


# =============================================================================
# CONSISTENCY
# =============================================================================


@dataclass(frozen=True)
class ConsistencyResult:
    consistent: bool
    agreement_rate: float
    passed_ratio: float
    mean_confidence: float
    confidence_variance: float
    repetitions: int
    individual_results: list[JudgeVerdict]
    failed_repetitions: int = 0

    @property
    def partial(self) -> bool:
        return self.failed_repetitions > 0

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data["partial"] = self.partial
        return data


@dataclass(frozen=True)
class ConsistencyBatchResult:
    overall_consistency_rate: float
    mean_agreement_rate: float
    mean_confidence_variance: float
    inconsistent_samples: list[dict[str, Any]]
    results: list[ConsistencyResult | None]
    failed_samples: list[dict[str, Any]] = field(default_factory=list)
    cancelled_count: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failed_samples) or self.cancelled_count > 0

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data["partial"] = self.partial
        return data


class ConsistencyChecker:
    """
    Measures how stable a judge's verdict is across repeated calls.

    ``consistent`` holds when the share of repetitions matching the
    majority verdict is at least ``agreement_floor`` (1.0: all must match).
    """

    def __init__(
        self,
        judge: Any,
        repetitions: int = 3,
        agreement_floor: float = 1.0,
        max_workers: int = 4,
    ):
        if repetitions < 1:
            raise InvalidArgumentError(f"repetitions must be >= 1, got {repetitions}")
        self.judge = judge
        self.repetitions = repetitions
        self.agreement_floor = agreement_floor
        self.max_workers = max_workers

    def check(
        self, input: str, output: str, criteria: str, repetitions: int | None = None
    ) -> ConsistencyResult:
        """
        Judge the same sample repeatedly.

        Failed repetitions are excluded and counted.

        Raises:
            JudgeCallError: If every repetition fails
        """
        repetitions = self.repetitions if repetitions is None else repetitions
        if repetitions < 1:
            raise InvalidArgumentError(f"repetitions must be >= 1, got {repetitions}")
        if not criteria:
            raise InvalidArgumentError("Evaluation criteria required")

        outcomes = fan_out(
            lambda _: self.judge.evaluate(input, output, criteria),
            range(repetitions),
            max_workers=self.max_workers,
            isolate=(JudgeCallError,),
        )

        results: list[JudgeVerdict] = [o.value for o in outcomes if o.ok]
        errors = [o.error for o in outcomes if o.error is not None]
        if not results:
            raise errors[0]

        n = len(results)
        passed = sum(1 for r in results if r.verdict)
        confidences = np.array([r.confidence for r in results], dtype=float)
        agreement = max(passed, n - passed) / n

        return ConsistencyResult(
            consistent=agreement >= self.agreement_floor,
            agreement_rate=agreement,
            passed_ratio=passed / n,
            mean_confidence=float(confidences.mean()),
            confidence_variance=_sample_variance(confidences),
            repetitions=repetitions,
            individual_results=results,
            failed_repetitions=len(errors),
        )

    def check_batch(
        self,
        samples: list[Any],
        criteria: str,
        cancel_event: threading.Event | None = None,
    ) -> ConsistencyBatchResult:
        """Check every sample and aggregate the consistency statistics."""
        pairs = [sample_fields(s) for s in samples]
        if not pairs:
            raise InvalidArgumentError("check_batch requires at least one sample")

        outcomes = fan_out(
            lambda pair: self.check(pair[0], pair[1], criteria),
            pairs,
            max_workers=self.max_workers,
            cancel_event=cancel_event,
            isolate=(JudgeCallError,),
        )

        results: list[ConsistencyResult | None] = []
        failed: list[dict[str, Any]] = []
        inconsistent: list[dict[str, Any]] = []
        for (input, output), outcome in zip(pairs, outcomes):
            if outcome.error is not None:
                failed.append({"index": outcome.index, "error": describe_error(outcome.error)})
            result = outcome.value if outcome.ok else None
            results.append(result)
            if result is not None and not result.consistent:
                inconsistent.append(
                    {"index": outcome.index, "input": input, "output": output, "result": result}
                )

        checked = [r for r in results if r is not None]
        if not checked and failed:
            raise JudgeCallError(f"No sample could be checked ({len(failed)} failed)")

        return ConsistencyBatchResult(
            overall_consistency_rate=(
                sum(1 for r in checked if r.consistent) / len(checked) if checked else 0.0
            ),
            mean_agreement_rate=(
                float(np.mean([r.agreement_rate for r in checked])) if checked else 0.0
            ),
            mean_confidence_variance=(
                float(np.mean([r.confidence_variance for r in checked])) if checked else 0.0
            ),
            inconsistent_samples=inconsistent,
            results=results,
            failed_samples=failed,
            cancelled_count=sum(1 for o in outcomes if o.cancelled),
        )
