"""
Statistically calibrated LLM judge.

An LLM judge is a noisy binary classifier. Calibrating it against labeled
data measures its sensitivity (q1, true positive rate) and specificity
(q0, true negative rate). Those two numbers turn the raw fraction of
positive verdicts on new data into an unbiased estimate of the true rate:

    theta = (p + q0 - 1) / (q0 + q1 - 1)

and the delta method gives a confidence interval that accounts for the
uncertainty in both the test batch and the calibration set.

Usage:
    judge = StatisticalJudge(model="gpt-4o", criteria="Is the answer correct?")
    judge.calibrate(calibration_set)

    result = judge.evaluate_batch([{"input": q, "output": a} for q, a in pairs])
    print(result.bias_corrected_accuracy, result.confidence_interval.lower)
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from scipy import stats

from .calibration_set import CalibrationSet
from .concurrency import CallPolicy, fan_out, guarded_call
from .errors import (
    InsufficientCalibrationDataError,
    InvalidArgumentError,
    JudgeCallError,
    JudgeNotCalibratedError,
    UninformativeJudgeError,
    describe_error,
)
from .models import JudgeVerdict, as_backend, sample_fields, to_plain, utcnow

logger = logging.getLogger(__name__)

# |q0 + q1 - 1| below this is treated as a judge carrying no signal
INFORMATIVE_EPSILON = 1e-9

# Floor on each class in a recommended calibration allocation
MIN_ALLOCATION_PER_CLASS = 10


# =============================================================================
# PURE ESTIMATORS
# =============================================================================


def _check_proportion(p: float) -> None:
    if not 0.0 <= p <= 1.0:
        raise InvalidArgumentError(f"Raw proportion must be in [0, 1], got {p}")


def _denominator(sensitivity: float, specificity: float) -> float:
    denominator = specificity + sensitivity - 1.0
    if abs(denominator) < INFORMATIVE_EPSILON:
        raise UninformativeJudgeError(sensitivity, specificity)
    return denominator


def bias_corrected_estimate(p: float, sensitivity: float, specificity: float) -> float:
    """
    Correct a raw positive rate for the judge's error rates.

    Args:
        p: Observed fraction of positive verdicts
        sensitivity: Judge true positive rate (q1)
        specificity: Judge true negative rate (q0)

    Returns:
        Estimated true positive rate, clamped to [0, 1]

    Raises:
        UninformativeJudgeError: If sensitivity + specificity == 1
    """
    _check_proportion(p)
    denominator = _denominator(sensitivity, specificity)
    theta = (p + specificity - 1.0) / denominator
    return min(max(theta, 0.0), 1.0)


def sampling_variance(p: float, test_n: int, sensitivity: float, specificity: float) -> float:
    """
    Variance of theta contributed by sampling the test batch.

    This is the raw-proportion variance p(1-p)/test_n carried through the
    correction by the delta method, i.e. divided by (q0 + q1 - 1)^2, so it
    adds directly to calibration_variance.
    """
    denominator = _denominator(sensitivity, specificity)
    return p * (1.0 - p) / (test_n * denominator**2)


def calibration_variance(
    p: float, sensitivity: float, specificity: float, m0: int, m1: int
) -> float:
    """
    Variance of theta contributed by estimating q0 and q1 (delta method).

    d(theta)/d(q0) = (1 - theta) / (q0 + q1 - 1)
    d(theta)/d(q1) = theta / (q0 + q1 - 1)
    """
    denominator = _denominator(sensitivity, specificity)
    theta = bias_corrected_estimate(p, sensitivity, specificity)

    var_q0 = specificity * (1.0 - specificity) / m0
    var_q1 = sensitivity * (1.0 - sensitivity) / m1

    partial_q0 = (1.0 - theta) / denominator
    partial_q1 = theta / denominator

    return partial_q0**2 * var_q0 + partial_q1**2 * var_q1


@dataclass(frozen=True)
class ConfidenceInterval:
    """Confidence interval for a bias-corrected accuracy estimate."""

    point_estimate: float
    lower: float
    upper: float
    confidence_level: float
    standard_error: float
    test_variance: float
    calibration_variance: float
    test_n: int
    calibration_m0: int
    calibration_m1: int

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def to_dict(self) -> dict[str, Any]:
        return {
            "point_estimate": self.point_estimate,
            "lower": self.lower,
            "upper": self.upper,
            "confidence_level": self.confidence_level,
            "standard_error": self.standard_error,
            "variance_decomposition": {
                "test_variance": self.test_variance,
                "calibration_variance": self.calibration_variance,
            },
            "sample_sizes": {
                "test_n": self.test_n,
                "calibration_m0": self.calibration_m0,
                "calibration_m1": self.calibration_m1,
            },
        }


def estimate_confidence_interval(
    p: float,
    test_n: int,
    sensitivity: float,
    specificity: float,
    m0: int,
    m1: int,
    alpha: float = 0.05,
) -> ConfidenceInterval:
    """
    Normal-approximation interval around the bias-corrected estimate.

    Combines test-batch and calibration uncertainty; bounds are clamped to
    [0, 1]. With calibration fixed, the width shrinks as ``test_n`` grows.
    """
    _check_proportion(p)
    if test_n < 1:
        raise InvalidArgumentError(f"test_n must be >= 1, got {test_n}")
    if m0 < 1 or m1 < 1:
        raise InvalidArgumentError(f"Calibration sizes must be >= 1, got m0={m0}, m1={m1}")
    if not 0.0 < alpha < 1.0:
        raise InvalidArgumentError(f"alpha must be in (0, 1), got {alpha}")

    point = bias_corrected_estimate(p, sensitivity, specificity)
    var_test = sampling_variance(p, test_n, sensitivity, specificity)
    var_cal = calibration_variance(p, sensitivity, specificity, m0, m1)
    std_error = math.sqrt(var_test + var_cal)

    z = float(stats.norm.ppf(1.0 - alpha / 2.0))

    return ConfidenceInterval(
        point_estimate=point,
        lower=min(max(point - z * std_error, 0.0), 1.0),
        upper=min(max(point + z * std_error, 0.0), 1.0),
        confidence_level=1.0 - alpha,
        standard_error=std_error,
        test_variance=var_test,
        calibration_variance=var_cal,
        test_n=test_n,
        calibration_m0=m0,
        calibration_m1=m1,
    )


@dataclass(frozen=True)
class AllocationPlan:
    """Recommended split of a calibration budget between the two classes."""

    m0: int
    m1: int
    ratio: float
    pilot_sensitivity: float
    pilot_specificity: float
    expected_positive_rate: float
    expected_variance_reduction: float  # percent, vs an even split

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


def optimal_allocation(
    total_budget: int,
    sensitivity: float,
    specificity: float,
    expected_positive_rate: float,
) -> AllocationPlan:
    """
    Split a calibration budget to minimize calibration variance.

    The optimal ratio is m1/m0 = sqrt(q1(1-q1)p^2 / (q0(1-q0)(1-p)^2)).
    Each class gets at least MIN_ALLOCATION_PER_CLASS samples, taken out of
    the budget before the other class gets the rest, so m0 + m1 always
    equals total_budget.
    """
    if total_budget < 2 * MIN_ALLOCATION_PER_CLASS:
        raise InvalidArgumentError(
            f"Calibration budget must be >= {2 * MIN_ALLOCATION_PER_CLASS}, got {total_budget}"
        )
    _check_proportion(expected_positive_rate)
    _denominator(sensitivity, specificity)

    p = expected_positive_rate
    term_0 = specificity * (1.0 - specificity) * (1.0 - p) ** 2
    term_1 = sensitivity * (1.0 - sensitivity) * p**2
    ratio = math.sqrt(term_1 / term_0) if term_0 > 0 else 1.0

    m0 = int(math.floor(total_budget / (1.0 + ratio) + 0.5))
    m0 = min(max(m0, MIN_ALLOCATION_PER_CLASS), total_budget - MIN_ALLOCATION_PER_CLASS)
    m1 = total_budget - m0

    even = total_budget // 2
    naive_var = calibration_variance(p, sensitivity, specificity, even, even)
    optimal_var = calibration_variance(p, sensitivity, specificity, m0, m1)
    reduction = 0.0 if naive_var == 0 else round((naive_var - optimal_var) / naive_var * 100, 2)

    return AllocationPlan(
        m0=m0,
        m1=m1,
        ratio=m1 / m0,
        pilot_sensitivity=sensitivity,
        pilot_specificity=specificity,
        expected_positive_rate=p,
        expected_variance_reduction=reduction,
    )


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class CalibrationState:
    """Immutable snapshot of a judge's measured error rates."""

    sensitivity: float
    specificity: float
    calibrated_at: datetime
    criteria: str
    m0: int
    m1: int
    true_positives: int
    true_negatives: int
    false_positives: int
    false_negatives: int
    failed_samples: int = 0
    calibration_set: CalibrationSet | None = field(default=None, repr=False, compare=False)

    @property
    def better_than_random(self) -> bool:
        return self.sensitivity + self.specificity > 1.0

    @property
    def informative(self) -> bool:
        return abs(self.sensitivity + self.specificity - 1.0) >= INFORMATIVE_EPSILON

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data["better_than_random"] = self.better_than_random
        return data


@dataclass(frozen=True)
class ItemResult:
    """Outcome of judging one sample in a batch."""

    index: int
    passed: bool | None = None
    confidence: float | None = None
    reasoning: str | None = None
    error: str | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.passed is not None

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


@dataclass(frozen=True)
class BatchEvaluation:
    """Raw and bias-corrected statistics for a batch of judgments."""

    raw_accuracy: float | None
    passed_count: int
    total_count: int
    failed_count: int
    cancelled_count: int
    individual_results: list[ItemResult]
    bias_corrected_accuracy: float | None = None
    confidence_interval: ConfidenceInterval | None = None
    calibration: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.failed_count > 0 or self.cancelled_count > 0

    @property
    def judged_count(self) -> int:
        return self.total_count - self.failed_count - self.cancelled_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_accuracy": self.raw_accuracy,
            "bias_corrected_accuracy": self.bias_corrected_accuracy,
            "confidence_interval": (
                self.confidence_interval.to_dict() if self.confidence_interval else None
            ),
            "passed_count": self.passed_count,
            "total_count": self.total_count,
            "failed_count": self.failed_count,
            "cancelled_count": self.cancelled_count,
            "partial": self.partial,
            "calibration": self.calibration,
            "warnings": list(self.warnings),
            "individual_results": [r.to_dict() for r in self.individual_results],
        }


# =============================================================================
# JUDGE
# =============================================================================


class StatisticalJudge:
    """
    A binary judge with measured error rates and bias-corrected estimates.

    The judge capability is any object with
    ``call_judge(input, output, criteria, **options)`` (or a plain callable
    with that signature). When omitted, a ModelJudge for ``model`` is used.

    Calibration state is an immutable CalibrationState swapped in one
    assignment; calibrations are serialized by a lock, and evaluations read
    whichever state is current when they start.

    Every backend call holds a slot of ``limiter`` (one per judge unless a
    shared one is given) until the call really returns, so at most
    ``policy.max_workers`` calls are in flight even when some have timed out.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        temperature: float = 0.0,
        judge: Any = None,
        criteria: str | None = None,
        policy: CallPolicy | None = None,
        min_positive: int | None = None,
        min_negative: int | None = None,
        name: str | None = None,
        limiter: threading.BoundedSemaphore | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.criteria = criteria
        self.policy = policy or CallPolicy()
        self.min_positive = min_positive
        self.min_negative = min_negative
        self.name = name or model
        self.limiter = (
            threading.BoundedSemaphore(self.policy.max_workers) if limiter is None else limiter
        )

        if judge is None:
            from .model_judge import ModelJudge

            # The transport gives up with the policy so abandoned calls end too
            options = {} if self.policy.timeout is None else {"timeout": self.policy.timeout}
            judge = ModelJudge(model=model, **options)
        self.backend = as_backend(judge)

        self._state: CalibrationState | None = None
        self._calibration_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"StatisticalJudge(name={self.name!r}, calibrated={self.is_calibrated})"

    # -------------------------------------------------------------------------
    # Calibration state
    # -------------------------------------------------------------------------

    @property
    def state(self) -> CalibrationState | None:
        return self._state

    @property
    def is_calibrated(self) -> bool:
        return self._state is not None

    @property
    def sensitivity(self) -> float | None:
        state = self._state
        return state.sensitivity if state else None

    @property
    def specificity(self) -> float | None:
        state = self._state
        return state.specificity if state else None

    def better_than_random(self) -> bool:
        """Whether sensitivity + specificity > 1; False when uncalibrated."""
        state = self._state
        return state is not None and state.better_than_random

    def _require_state(self) -> CalibrationState:
        state = self._state
        if state is None:
            raise JudgeNotCalibratedError(
                f"Judge {self.name!r} must be calibrated before bias correction"
            )
        return state

    def _require_criteria(self, criteria: str | None) -> str:
        criteria = criteria or self.criteria
        if not criteria:
            raise InvalidArgumentError("Evaluation criteria required")
        return criteria

    def reset_calibration(self) -> StatisticalJudge:
        with self._calibration_lock:
            self._state = None
        return self

    # -------------------------------------------------------------------------
    # Judging
    # -------------------------------------------------------------------------

    def _judge(self, input: str, output: str, criteria: str) -> JudgeVerdict:
        response = guarded_call(
            self.backend.call_judge,
            self.policy,
            input,
            output,
            criteria,
            limiter=self.limiter,
            model=self.model,
            temperature=self.temperature,
        )
        verdict = JudgeVerdict.from_response(response)
        logger.debug(f"{self.name}: verdict={verdict.verdict} confidence={verdict.confidence:.2f}")
        return verdict

    def evaluate(self, input: str, output: str, criteria: str | None = None) -> JudgeVerdict:
        """
        Judge a single output.

        Raises:
            InvalidArgumentError: If no criteria are available
            JudgeCallError: If the judge call fails after retries
        """
        return self._judge(input, output, self._require_criteria(criteria))

    def calibrate(
        self, calibration_set: CalibrationSet, criteria: str | None = None
    ) -> CalibrationState:
        """
        Measure sensitivity and specificity against labeled samples.

        Samples whose judge call fails are excluded from the counts and
        reported as ``failed_samples``. If the remaining samples no longer
        meet the minimums, no state is stored.

        Raises:
            InsufficientCalibrationDataError: If the set (or its usable part)
                is too small
            InvalidArgumentError: If no criteria are available
        """
        criteria = self._require_criteria(criteria)
        min_positive = (
            calibration_set.min_positive if self.min_positive is None else self.min_positive
        )
        min_negative = (
            calibration_set.min_negative if self.min_negative is None else self.min_negative
        )
        calibration_set.validate(min_positive, min_negative)

        samples = calibration_set.samples

        with self._calibration_lock:
            logger.info(f"Calibrating {self.name} on {len(samples)} samples")
            outcomes = fan_out(
                lambda s: self._judge(s.input, s.output, criteria),
                samples,
                max_workers=self.policy.max_workers,
                isolate=(JudgeCallError,),
            )

            tp = tn = fp = fn = failed = 0
            for sample, outcome in zip(samples, outcomes):
                if not outcome.ok:
                    failed += 1
                    logger.warning(
                        f"{self.name}: calibration sample {outcome.index} failed: "
                        f"{describe_error(outcome.error) if outcome.error else 'cancelled'}"
                    )
                    continue
                passed = outcome.value.verdict
                if sample.ground_truth and passed:
                    tp += 1
                elif sample.ground_truth:
                    fn += 1
                elif passed:
                    fp += 1
                else:
                    tn += 1

            m1 = tp + fn
            m0 = tn + fp
            if m1 < min_positive or m0 < min_negative:
                raise InsufficientCalibrationDataError(
                    positive=m1,
                    negative=m0,
                    min_positive=min_positive,
                    min_negative=min_negative,
                    message=(
                        f"Only {m1} positive and {m0} negative calibration samples were "
                        f"judged successfully ({failed} failed); need at least "
                        f"{min_positive} and {min_negative}"
                    ),
                )

            state = CalibrationState(
                sensitivity=tp / m1,
                specificity=tn / m0,
                calibrated_at=utcnow(),
                criteria=criteria,
                m0=m0,
                m1=m1,
                true_positives=tp,
                true_negatives=tn,
                false_positives=fp,
                false_negatives=fn,
                failed_samples=failed,
                calibration_set=calibration_set,
            )
            self._state = state

        logger.info(
            f"Calibrated {self.name}: sensitivity={state.sensitivity:.3f}, "
            f"specificity={state.specificity:.3f} (m1={m1}, m0={m0}, failed={failed})"
        )
        if not state.better_than_random:
            logger.warning(
                f"{self.name} is not better than random "
                f"(sensitivity + specificity = {state.sensitivity + state.specificity:.3f}); "
                f"consider a different model or criteria"
            )
        return state

    # -------------------------------------------------------------------------
    # Bias correction
    # -------------------------------------------------------------------------

    def bias_corrected_accuracy(self, raw_proportion: float) -> float:
        state = self._require_state()
        return bias_corrected_estimate(raw_proportion, state.sensitivity, state.specificity)

    def confidence_interval(
        self, raw_proportion: float, test_n: int, alpha: float = 0.05
    ) -> ConfidenceInterval:
        state = self._require_state()
        return estimate_confidence_interval(
            raw_proportion,
            test_n,
            sensitivity=state.sensitivity,
            specificity=state.specificity,
            m0=state.m0,
            m1=state.m1,
            alpha=alpha,
        )

    def evaluate_batch(
        self,
        samples: list[Any],
        criteria: str | None = None,
        alpha: float = 0.05,
        cancel_event: threading.Event | None = None,
    ) -> BatchEvaluation:
        """
        Judge a batch and report raw and bias-corrected accuracy.

        Judge-call failures are recorded per item and excluded from the raw
        proportion. Without calibration (or with an uninformative judge) the
        result carries raw statistics and a warning instead of a correction.

        Args:
            samples: Mappings or objects with ``input`` and ``output``
            criteria: Evaluation criteria (defaults to the judge's)
            alpha: Significance level for the confidence interval
            cancel_event: Set to stop issuing judge calls

        Returns:
            BatchEvaluation
        """
        criteria = self._require_criteria(criteria)
        pairs = [sample_fields(s) for s in samples]
        if not pairs:
            raise InvalidArgumentError("evaluate_batch requires at least one sample")

        state = self._state
        outcomes = fan_out(
            lambda pair: self._judge(pair[0], pair[1], criteria),
            pairs,
            max_workers=self.policy.max_workers,
            cancel_event=cancel_event,
            isolate=(JudgeCallError,),
        )

        results: list[ItemResult] = []
        for outcome in outcomes:
            if outcome.cancelled:
                results.append(ItemResult(index=outcome.index, cancelled=True))
            elif outcome.error is not None:
                results.append(
                    ItemResult(index=outcome.index, error=describe_error(outcome.error))
                )
            else:
                verdict = outcome.value
                results.append(
                    ItemResult(
                        index=outcome.index,
                        passed=verdict.verdict,
                        confidence=verdict.confidence,
                        reasoning=verdict.reasoning,
                    )
                )

        judged = [r for r in results if r.succeeded]
        failed_count = sum(1 for r in results if r.error is not None)
        cancelled_count = sum(1 for r in results if r.cancelled)
        passed_count = sum(1 for r in judged if r.passed)
        raw_accuracy = passed_count / len(judged) if judged else None

        warnings: list[str] = []
        if failed_count:
            warnings.append(f"{failed_count} of {len(results)} judge calls failed")
        if cancelled_count:
            warnings.append(f"Cancelled before {cancelled_count} of {len(results)} samples were judged")

        corrected = None
        interval = None
        calibration = None
        if state is None:
            warnings.append(
                "Judge not calibrated; results may be biased. "
                "Call calibrate() with ground-truth data for corrected estimates."
            )
        elif not state.informative:
            warnings.append(
                "Judge is no better than chance (sensitivity + specificity = 1); "
                "bias correction is undefined"
            )
        elif raw_accuracy is None:
            warnings.append("No successful judgments; nothing to correct")
        else:
            corrected = bias_corrected_estimate(raw_accuracy, state.sensitivity, state.specificity)
            interval = estimate_confidence_interval(
                raw_accuracy,
                len(judged),
                sensitivity=state.sensitivity,
                specificity=state.specificity,
                m0=state.m0,
                m1=state.m1,
                alpha=alpha,
            )

        if state is not None:
            calibration = {
                "sensitivity": state.sensitivity,
                "specificity": state.specificity,
                "m0": state.m0,
                "m1": state.m1,
            }

        for message in warnings:
            logger.warning(f"{self.name}: {message}")

        return BatchEvaluation(
            raw_accuracy=raw_accuracy,
            passed_count=passed_count,
            total_count=len(results),
            failed_count=failed_count,
            cancelled_count=cancelled_count,
            individual_results=results,
            bias_corrected_accuracy=corrected,
            confidence_interval=interval,
            calibration=calibration,
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Planning and reporting
    # -------------------------------------------------------------------------

    def optimal_calibration_allocation(
        self,
        total_budget: int,
        pilot_set: CalibrationSet,
        expected_positive_rate: float,
        criteria: str | None = None,
    ) -> AllocationPlan:
        """
        Calibrate on a pilot set, then recommend how to split a full budget.

        The pilot calibration replaces the judge's current state.
        """
        pilot = self.calibrate(pilot_set, criteria)
        return optimal_allocation(
            total_budget,
            sensitivity=pilot.sensitivity,
            specificity=pilot.specificity,
            expected_positive_rate=expected_positive_rate,
        )

    def summary(self) -> dict[str, Any]:
        state = self._state
        return {
            "name": self.name,
            "model": self.model,
            "temperature": self.temperature,
            "calibrated": state is not None,
            "sensitivity": state.sensitivity if state else None,
            "specificity": state.specificity if state else None,
            "better_than_random": state.better_than_random if state else None,
            "calibration": state.to_dict() if state else None,
        }
