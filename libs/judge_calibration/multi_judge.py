"""
Multi-judge consensus evaluation.

Several independent judges vote on the same (input, output, criteria).
Votes are collected concurrently, a failed judge is reported as a per-judge
error rather than a vote, and the surviving votes are combined with one of
four strategies:

- majority: more positive than negative votes (a tie is "no consensus")
- weighted: votes weighted by each judge's calibration quality
- unanimous: positive only when every judge votes positive
- threshold: positive when the positive fraction reaches a threshold

Inter-rater reliability (pairwise agreement, Fleiss' kappa, Cohen's kappa
for two judges) measures how far the judges can be trusted together.

Usage:
    evaluator = MultiJudgeEvaluator(models=["gpt-4o", "claude-sonnet-4-20250514"])
    result = evaluator.evaluate("Q", "A", criteria="Is it correct?")
    if result.consensus is None:
        ...  # tie
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any

import numpy as np

from .calibration_set import CalibrationSet
from .concurrency import CallPolicy, fan_out
from .errors import InvalidArgumentError, JudgeCallError
from .models import JudgeVote, sample_fields, to_plain
from .statistical_judge import CalibrationState, StatisticalJudge

logger = logging.getLogger(__name__)

STRATEGIES = ("majority", "weighted", "unanimous", "threshold")

DEFAULT_THRESHOLD = 0.66
DEFAULT_AGREEMENT_FLOOR = 0.6

# Weighted scores closer than this are a tie
TIE_EPSILON = 1e-12


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class ConsensusResult:
    """Combined verdict of several judges on one sample."""

    consensus: bool | None
    agreement_rate: float
    positive_votes: int
    negative_votes: int
    total_judges: int
    individual_votes: tuple[JudgeVote, ...]
    strategy: str
    failed_votes: int = 0
    tie: bool = False
    threshold: float | None = None
    weighted_positive_score: float | None = None
    weighted_negative_score: float | None = None

    @property
    def counted_votes(self) -> int:
        return self.positive_votes + self.negative_votes

    @property
    def unanimous(self) -> bool:
        return self.failed_votes == 0 and self.counted_votes > 0 and self.agreement_rate == 1.0

    @property
    def partial(self) -> bool:
        return self.failed_votes > 0

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data["partial"] = self.partial
        return data


@dataclass(frozen=True)
class BatchConsensusResult:
    """Consensus results over a batch, with aggregate agreement statistics."""

    results: list[ConsensusResult | None]
    strategy: str
    agreement_floor: float

    @property
    def completed(self) -> list[ConsensusResult]:
        return [r for r in self.results if r is not None]

    @property
    def cancelled_count(self) -> int:
        return sum(1 for r in self.results if r is None)

    @property
    def partial(self) -> bool:
        return self.cancelled_count > 0 or any(r.partial for r in self.completed)

    @property
    def consensus_rate(self) -> float:
        """Fraction of completed samples whose consensus is positive."""
        completed = self.completed
        if not completed:
            return 0.0
        return sum(1 for r in completed if r.consensus is True) / len(completed)

    @property
    def no_consensus_count(self) -> int:
        return sum(1 for r in self.completed if r.consensus is None)

    @property
    def average_agreement(self) -> float:
        completed = self.completed
        if not completed:
            return 0.0
        return float(np.mean([r.agreement_rate for r in completed]))

    @property
    def high_disagreement_count(self) -> int:
        return sum(1 for r in self.completed if r.agreement_rate < self.agreement_floor)

    @property
    def unanimous_count(self) -> int:
        return sum(1 for r in self.completed if r.unanimous)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "results": [r.to_dict() if r is not None else None for r in self.results],
            "consensus_rate": self.consensus_rate,
            "average_agreement": self.average_agreement,
            "high_disagreement_count": self.high_disagreement_count,
            "unanimous_count": self.unanimous_count,
            "no_consensus_count": self.no_consensus_count,
            "cancelled_count": self.cancelled_count,
            "partial": self.partial,
        }


@dataclass(frozen=True)
class ReviewFlag:
    """A sample routed to human review."""

    index: int
    input: str
    output: str
    result: ConsensusResult
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "input": self.input,
            "output": self.output,
            "result": self.result.to_dict(),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ReliabilityReport:
    """How consistently a panel of judges agrees."""

    mean_pairwise_agreement: float
    min_pairwise_agreement: float
    max_pairwise_agreement: float
    fleiss_kappa: float
    num_judges: int
    num_samples: int
    pairwise: list[dict[str, Any]] = field(default_factory=list)
    cohens_kappa: float | None = None
    excluded_samples: int = 0

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


# =============================================================================
# AGREEMENT STATISTICS
# =============================================================================


def fleiss_kappa(votes: np.ndarray) -> float:
    """
    Fleiss' kappa for binary votes.

    Args:
        votes: Boolean array of shape (n_samples, n_judges)

    Returns:
        Kappa; 1.0 when chance agreement is already perfect
    """
    n_samples, n_judges = votes.shape
    if n_samples == 0 or n_judges < 2:
        raise InvalidArgumentError("Fleiss' kappa needs at least one sample and two judges")

    positive = votes.sum(axis=1).astype(float)
    counts = np.column_stack([positive, n_judges - positive])

    k = n_judges
    P_i = (np.sum(counts**2, axis=1) - k) / (k * (k - 1))
    P_bar = float(np.mean(P_i))

    p_j = counts.sum(axis=0) / (n_samples * k)
    P_e = float(np.sum(p_j**2))

    if abs(1.0 - P_e) < 1e-12:
        return 1.0

    return (P_bar - P_e) / (1.0 - P_e)


def cohens_kappa(votes_a: np.ndarray, votes_b: np.ndarray) -> float:
    """Cohen's kappa for two judges' binary votes."""
    n = len(votes_a)
    if n == 0:
        raise InvalidArgumentError("Cohen's kappa needs at least one sample")

    votes_a = votes_a.astype(bool)
    votes_b = votes_b.astype(bool)

    po = float(np.mean(votes_a == votes_b))
    pa = float(np.mean(votes_a))
    pb = float(np.mean(votes_b))
    pe = pa * pb + (1 - pa) * (1 - pb)

    if abs(1.0 - pe) < 1e-12:
        return 1.0

    return (po - pe) / (1.0 - pe)


# =============================================================================
# EVALUATOR
# =============================================================================


class MultiJudgeEvaluator:
    """
    Combines two or more StatisticalJudges into one verdict.

    Build from explicit ``judges`` or from ``models`` (each wrapped in a
    StatisticalJudge; ``backend`` is shared by all of them when given).

    All judges share one call limiter of ``max_workers`` slots, so the
    panel never has more than ``max_workers`` backend calls in flight across
    samples and judges. Explicit judges have their limiter replaced.
    """

    def __init__(
        self,
        judges: Sequence[StatisticalJudge] | None = None,
        models: Sequence[str] | None = None,
        default_strategy: str = "majority",
        temperature: float = 0.0,
        backend: Any = None,
        criteria: str | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        agreement_floor: float = DEFAULT_AGREEMENT_FLOOR,
        policy: CallPolicy | None = None,
        max_workers: int = 4,
    ):
        if judges is None and models is None:
            raise InvalidArgumentError("Provide either judges or models")
        if max_workers < 1:
            raise InvalidArgumentError(f"max_workers must be >= 1, got {max_workers}")
        self.limiter = threading.BoundedSemaphore(max_workers)

        if judges is not None:
            self.judges = list(judges)
        else:
            self.judges = [
                StatisticalJudge(
                    model=model,
                    temperature=temperature,
                    judge=backend,
                    criteria=criteria,
                    policy=policy,
                )
                for model in models or []
            ]

        for judge in self.judges:
            judge.limiter = self.limiter

        if len(self.judges) < 2:
            raise InvalidArgumentError(
                f"At least 2 judges are required for consensus, got {len(self.judges)}"
            )

        _check_strategy(default_strategy)
        _check_threshold(threshold)

        self.default_strategy = default_strategy
        self.criteria = criteria
        self.threshold = threshold
        self.agreement_floor = agreement_floor
        self.max_workers = max_workers

    @property
    def judge_names(self) -> list[str]:
        return [judge.name for judge in self.judges]

    def _require_criteria(self, criteria: str | None) -> str:
        criteria = criteria or self.criteria
        if not criteria:
            raise InvalidArgumentError("Evaluation criteria required")
        return criteria

    # -------------------------------------------------------------------------
    # Calibration
    # -------------------------------------------------------------------------

    def calibrate_all(
        self, calibration_set: CalibrationSet, criteria: str | None = None
    ) -> dict[str, CalibrationState]:
        """Calibrate every judge on the same set, keyed ``judge_<i>_<name>``."""
        criteria = self._require_criteria(criteria)
        return {
            f"judge_{i}_{judge.name}": judge.calibrate(calibration_set, criteria)
            for i, judge in enumerate(self.judges)
        }

    def judges_summary(self) -> list[dict[str, Any]]:
        return [{**judge.summary(), "index": i} for i, judge in enumerate(self.judges)]

    # -------------------------------------------------------------------------
    # Vote collection
    # -------------------------------------------------------------------------

    def _default_weights(self) -> list[float]:
        weights = []
        for judge in self.judges:
            state = judge.state
            if state is None:
                weights.append(1.0)
            else:
                weights.append(max(0.0, state.sensitivity + state.specificity - 1.0))
        return weights

    def _collect_votes(self, input: str, output: str, criteria: str) -> list[JudgeVote]:
        outcomes = fan_out(
            lambda judge: judge.evaluate(input, output, criteria),
            self.judges,
            max_workers=min(self.max_workers, len(self.judges)),
            isolate=(JudgeCallError,),
        )

        votes = []
        for judge, outcome in zip(self.judges, outcomes):
            if outcome.error is not None:
                logger.warning(f"Judge {judge.name} failed: {outcome.error}")
                votes.append(JudgeVote.from_error(judge.name, outcome.error))
            else:
                votes.append(JudgeVote.from_verdict(judge.name, outcome.value))
        return votes

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def _aggregate(
        self,
        votes: list[JudgeVote],
        strategy: str,
        threshold: float | None = None,
        weights: Sequence[float] | None = None,
    ) -> ConsensusResult:
        counted = [v for v in votes if v.succeeded]
        positive = sum(1 for v in counted if v.verdict)
        negative = len(counted) - positive
        failed = len(votes) - len(counted)
        agreement = max(positive, negative) / len(counted) if counted else 0.0

        tie = False
        consensus: bool | None
        weighted_positive = None
        weighted_negative = None

        if not counted:
            consensus = None
        elif strategy == "majority":
            tie = positive == negative
            consensus = None if tie else positive > negative
        elif strategy == "unanimous":
            consensus = failed == 0 and positive == len(votes)
        elif strategy == "threshold":
            threshold = self.threshold if threshold is None else threshold
            consensus = positive / len(counted) >= threshold
        elif strategy == "weighted":
            votes, weighted_positive, weighted_negative = _weigh_votes(
                votes, list(weights) if weights is not None else self._default_weights()
            )
            tie = abs(weighted_positive - weighted_negative) < TIE_EPSILON
            consensus = None if tie else weighted_positive > weighted_negative
        else:
            raise InvalidArgumentError(f"Unknown strategy: {strategy}")

        return ConsensusResult(
            consensus=consensus,
            agreement_rate=agreement,
            positive_votes=positive,
            negative_votes=negative,
            total_judges=len(votes),
            individual_votes=tuple(votes),
            strategy=strategy,
            failed_votes=failed,
            tie=tie,
            threshold=threshold if strategy == "threshold" else None,
            weighted_positive_score=weighted_positive,
            weighted_negative_score=weighted_negative,
        )

    # -------------------------------------------------------------------------
    # Single-sample strategies
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        input: str,
        output: str,
        criteria: str | None = None,
        strategy: str | None = None,
        threshold: float | None = None,
    ) -> ConsensusResult:
        """Evaluate one sample with ``strategy`` (default: the evaluator's)."""
        criteria = self._require_criteria(criteria)
        strategy = strategy or self.default_strategy
        _check_strategy(strategy)
        if threshold is not None:
            _check_threshold(threshold)

        votes = self._collect_votes(input, output, criteria)
        return self._aggregate(votes, strategy, threshold=threshold)

    def evaluate_weighted(
        self,
        input: str,
        output: str,
        criteria: str | None = None,
        weights: Sequence[float] | None = None,
    ) -> ConsensusResult:
        """
        Weight each vote by calibration quality.

        Default weight is max(0, sensitivity + specificity - 1) for a
        calibrated judge and 1.0 for an uncalibrated one. Custom ``weights``
        (one per judge) replace the defaults. Weights are normalized over
        the judges that answered; if they are all zero, each counts equally.
        """
        criteria = self._require_criteria(criteria)
        if weights is not None:
            if len(weights) != len(self.judges):
                raise InvalidArgumentError(
                    f"Expected {len(self.judges)} weights, got {len(weights)}"
                )
            if any(w < 0 for w in weights):
                raise InvalidArgumentError("Weights must be non-negative")

        votes = self._collect_votes(input, output, criteria)
        return self._aggregate(votes, "weighted", weights=weights)

    def evaluate_unanimous(
        self, input: str, output: str, criteria: str | None = None
    ) -> ConsensusResult:
        return self.evaluate(input, output, criteria, strategy="unanimous")

    def evaluate_threshold(
        self,
        input: str,
        output: str,
        criteria: str | None = None,
        threshold: float | None = None,
    ) -> ConsensusResult:
        return self.evaluate(input, output, criteria, strategy="threshold", threshold=threshold)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def evaluate_batch(
        self,
        samples: list[Any],
        criteria: str | None = None,
        strategy: str | None = None,
        threshold: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchConsensusResult:
        """
        Run one strategy over every sample.

        Samples are mappings or objects with ``input`` and ``output``.
        Samples not reached before ``cancel_event`` is set come back as None.
        """
        criteria = self._require_criteria(criteria)
        strategy = strategy or self.default_strategy
        _check_strategy(strategy)
        if threshold is not None:
            _check_threshold(threshold)

        pairs = [sample_fields(s) for s in samples]
        if not pairs:
            raise InvalidArgumentError("evaluate_batch requires at least one sample")

        outcomes = fan_out(
            lambda pair: self._aggregate(
                self._collect_votes(pair[0], pair[1], criteria), strategy, threshold=threshold
            ),
            pairs,
            max_workers=self.max_workers,
            cancel_event=cancel_event,
            isolate=(),
        )

        results: list[ConsensusResult | None] = [
            outcome.value if outcome.ok else None for outcome in outcomes
        ]

        batch = BatchConsensusResult(
            results=results, strategy=strategy, agreement_floor=self.agreement_floor
        )
        logger.info(
            f"Consensus over {len(batch.completed)}/{len(pairs)} samples: "
            f"average agreement {batch.average_agreement:.2f}, "
            f"{batch.high_disagreement_count} below {self.agreement_floor:.2f}"
        )
        return batch

    def flag_for_human_review(
        self,
        samples: list[Any],
        criteria: str | None = None,
        disagreement_threshold: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[ReviewFlag]:
        """Return the samples whose judges agree less than ``disagreement_threshold``."""
        floor = self.agreement_floor if disagreement_threshold is None else disagreement_threshold
        batch = self.evaluate_batch(samples, criteria, cancel_event=cancel_event)

        flags = []
        for index, (sample, result) in enumerate(zip(samples, batch.results)):
            if result is None:
                continue

            if result.counted_votes == 0:
                reason = "No judge returned a verdict"
            elif result.agreement_rate < floor:
                reason = f"Low agreement: {result.agreement_rate * 100:.1f}%"
                if result.failed_votes:
                    reason += f" ({result.failed_votes} judge(s) failed)"
            else:
                continue

            input, output = sample_fields(sample)
            flags.append(
                ReviewFlag(index=index, input=input, output=output, result=result, reason=reason)
            )

        logger.info(f"Flagged {len(flags)} of {len(samples)} samples for human review")
        return flags

    def inter_rater_reliability(
        self, samples: list[Any], criteria: str | None = None
    ) -> ReliabilityReport:
        """
        Pairwise agreement and kappa statistics across the judges.

        Only samples every judge answered are used; the rest are counted in
        ``excluded_samples``.

        Raises:
            JudgeCallError: If no sample was answered by every judge
        """
        batch = self.evaluate_batch(samples, criteria)

        rows = []
        for result in batch.completed:
            if result.failed_votes:
                continue
            rows.append([bool(v.verdict) for v in result.individual_votes])

        excluded = len(samples) - len(rows)
        if not rows:
            raise JudgeCallError("No sample was answered by every judge")

        votes = np.array(rows, dtype=bool)
        names = self.judge_names

        pairwise = []
        for i, j in combinations(range(len(self.judges)), 2):
            agreement = float(np.mean(votes[:, i] == votes[:, j]))
            pairwise.append({"judges": [names[i], names[j]], "agreement": agreement})

        agreements = [p["agreement"] for p in pairwise]

        return ReliabilityReport(
            mean_pairwise_agreement=float(np.mean(agreements)),
            min_pairwise_agreement=min(agreements),
            max_pairwise_agreement=max(agreements),
            fleiss_kappa=fleiss_kappa(votes),
            cohens_kappa=cohens_kappa(votes[:, 0], votes[:, 1]) if len(self.judges) == 2 else None,
            num_judges=len(self.judges),
            num_samples=len(rows),
            pairwise=pairwise,
            excluded_samples=excluded,
        )


def _weigh_votes(
    votes: list[JudgeVote], weights: list[float]
) -> tuple[list[JudgeVote], float, float]:
    """Normalize weights over answered judges and sum them per side."""
    answered = [i for i, v in enumerate(votes) if v.succeeded]
    total = sum(weights[i] for i in answered)

    normalized = [0.0] * len(votes)
    for i in answered:
        normalized[i] = weights[i] / total if total > 0 else 1.0 / len(answered)

    weighted_positive = sum(normalized[i] for i in answered if votes[i].verdict)
    weighted_negative = sum(normalized[i] for i in answered if not votes[i].verdict)

    weighted_votes = [
        JudgeVote(
            judge=v.judge,
            verdict=v.verdict,
            confidence=v.confidence,
            reasoning=v.reasoning,
            error=v.error,
            weight=normalized[i],
        )
        for i, v in enumerate(votes)
    ]
    return weighted_votes, weighted_positive, weighted_negative


def _check_strategy(strategy: str) -> None:
    if strategy not in STRATEGIES:
        raise InvalidArgumentError(
            f"Unknown strategy: {strategy!r} (expected one of {', '.join(STRATEGIES)})"
        )


def _check_threshold(threshold: float) -> None:
    if not 0.0 < threshold <= 1.0:
        raise InvalidArgumentError(f"Threshold must be in (0, 1], got {threshold}")
