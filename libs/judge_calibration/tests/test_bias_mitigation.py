"""
Tests for bias mitigation.

Tests:
- Position debiasing of pairwise comparisons and round-robin ranking
- Length bias detection and normalization
- Format bias detection
- Consistency of repeated judgments
"""

import itertools
import re
import threading

import pytest

from judge_calibration import (
    ConsistencyChecker,
    FormatBiasAnalyzer,
    InvalidArgumentError,
    JudgeCallError,
    JudgeParseError,
    JudgeVerdict,
    LengthBiasAnalyzer,
    PositionDebiaser,
)


class StubJudge:
    """evaluate() stub: ``decide(input, output)`` returns a verdict or (verdict, confidence)."""

    def __init__(self, decide, confidence=0.9):
        self.decide = decide
        self.confidence = confidence
        self.calls = 0
        self._lock = threading.Lock()

    def evaluate(self, input, output, criteria=None):
        with self._lock:
            self.calls += 1
        decision = self.decide(input, output)
        if isinstance(decision, tuple):
            verdict, confidence = decision
        else:
            verdict, confidence = decision, self.confidence
        return JudgeVerdict(verdict=verdict, confidence=confidence, reasoning="stub")


def first_shown_is_good(prompt, output):
    """Prefers whichever output contains GOOD, regardless of order."""
    return prompt.find("GOOD") < prompt.rfind("## Output ")


def always_first(prompt, output):
    return True


def first_shown_label(prompt):
    return re.search(r"## Output (\w)", prompt).group(1)


class TestPositionDebiaser:
    """Tests for order-debiased pairwise comparison."""

    def test_consistent_preference(self):
        judge = StubJudge(first_shown_is_good)
        debiaser = PositionDebiaser(judge)

        result = debiaser.compare("question", "GOOD answer", "weak answer", "Which is better?")

        assert result.winner == "a"
        assert result.consistent
        assert not result.position_bias_detected
        assert result.confidence == pytest.approx(0.9)
        assert judge.calls == 2

    def test_consistent_preference_for_b(self):
        result = PositionDebiaser(StubJudge(first_shown_is_good)).compare(
            "question", "weak answer", "GOOD answer", "Which is better?"
        )

        assert result.winner == "b"
        assert result.forward_result.first_label == "A"
        assert result.reverse_result.first_label == "B"

    def test_position_bias_is_a_tie(self):
        """A judge that always prefers the first output is inconsistent."""
        result = PositionDebiaser(StubJudge(always_first)).compare(
            "question", "one", "two", "Which is better?"
        )

        assert result.winner == "tie"
        assert result.position_bias_detected
        assert result.confidence == pytest.approx(0.45)
        assert result.reasoning.startswith("Position bias detected")

    def test_confident_ordering_breaks_inconsistency(self):
        """The ordering that is more confident by more than the margin wins."""

        def decide(prompt, output):
            return True, 0.9 if first_shown_label(prompt) == "A" else 0.5

        result = PositionDebiaser(StubJudge(decide)).compare("q", "one", "two", "Which?")

        assert result.position_bias_detected
        assert result.winner == "a"
        assert result.confidence == pytest.approx(0.35)

    def test_within_margin_is_a_tie(self):
        def decide(prompt, output):
            return True, 0.8 if first_shown_label(prompt) == "A" else 0.7

        result = PositionDebiaser(StubJudge(decide)).compare("q", "one", "two", "Which?")

        assert result.winner == "tie"

    def test_compare_requires_criteria(self):
        with pytest.raises(InvalidArgumentError):
            PositionDebiaser(StubJudge(always_first)).compare("q", "a", "b", "")

    def test_compare_propagates_judge_errors(self):
        def broken(prompt, output):
            raise JudgeParseError("garbled")

        with pytest.raises(JudgeParseError):
            PositionDebiaser(StubJudge(broken)).compare("q", "a", "b", "Which?")


class TestRanking:
    """Tests for round-robin ranking."""

    @staticmethod
    def by_quality(prompt, output):
        first, second = (int(q) for q in re.findall(r"quality (\d+)", prompt)[:2])
        return first > second

    def test_rank(self):
        outputs = ["quality 3", "quality 1", "quality 2"]

        result = PositionDebiaser(StubJudge(self.by_quality)).rank("q", outputs, "Which?")

        assert [r["index"] for r in result.rankings] == [0, 2, 1]
        assert [r["score"] for r in result.rankings] == [2.0, 1.0, 0.0]
        assert result.rankings[0]["rank"] == 1
        assert result.rankings[0]["output"] == "quality 3"
        assert result.total_comparisons == 3
        assert result.position_bias_count == 0
        assert not result.partial

    def test_ties_score_half(self):
        result = PositionDebiaser(StubJudge(always_first)).rank("q", ["x", "y"], "Which?")

        assert [r["score"] for r in result.rankings] == [0.5, 0.5]
        assert result.position_bias_count == 1
        assert result.comparisons[0]["winner"] == "tie"

    def test_failed_comparisons_are_reported(self):
        def decide(prompt, output):
            if "broken" in prompt:
                raise JudgeParseError("garbled")
            return self.by_quality(prompt, output)

        outputs = ["quality 3", "quality 1", "broken"]
        result = PositionDebiaser(StubJudge(decide)).rank("q", outputs, "Which?")

        assert result.failed_comparisons == 2
        assert result.partial
        assert result.rankings[0]["index"] == 0
        failed = [c for c in result.comparisons if c["winner"] is None]
        assert all(c["error"].startswith("JudgeParseError") for c in failed)

    def test_rank_needs_two_outputs(self):
        with pytest.raises(InvalidArgumentError):
            PositionDebiaser(StubJudge(always_first)).rank("q", ["only"], "Which?")


def length_biased_evaluations(n=20):
    return [{"output": "x" * (5 * (i + 1)), "score": i / (n - 1)} for i in range(n)]


class TestLengthBias:
    """Tests for length bias analysis."""

    def test_detects_length_bias(self):
        result = LengthBiasAnalyzer().analyze_length_correlation(length_biased_evaluations())

        assert result.correlation == pytest.approx(1.0)
        assert result.bias_detected
        assert result.bias_direction == "prefers_longer"
        assert result.bias_strength == "very_strong"
        assert result.sample_size == 20
        assert result.length_stats["min"] == 5
        assert result.length_stats["max"] == 100
        assert result.length_stats["mean"] == pytest.approx(52.5)

    def test_prefers_shorter(self):
        evaluations = [{"output": e["output"], "score": 1 - e["score"]} for e in length_biased_evaluations()]

        result = LengthBiasAnalyzer().analyze_length_correlation(evaluations)

        assert result.bias_direction == "prefers_shorter"

    def test_no_correlation(self):
        evaluations = [{"output": "x" * (i + 1), "score": 0.5} for i in range(12)]

        result = LengthBiasAnalyzer().analyze_length_correlation(evaluations)

        assert result.correlation == 0.0
        assert result.bias_direction == "none"
        assert not result.bias_detected

    def test_normalize_removes_length_trend(self):
        """A purely length-driven score normalizes to the mean score."""
        normalized = LengthBiasAnalyzer().normalize_for_length(length_biased_evaluations())

        assert len(normalized) == 20
        assert all(n["normalized_score"] == pytest.approx(0.5) for n in normalized)
        assert normalized[0]["original_score"] == 0.0
        assert normalized[0]["adjustment"] < 0

    def test_normalize_with_target_correlation(self):
        normalized = LengthBiasAnalyzer().normalize_for_length(
            length_biased_evaluations(), target_correlation=1.0
        )

        assert all(n["adjustment"] == pytest.approx(0.0) for n in normalized)

    def test_normalize_too_few_samples(self):
        evaluations = length_biased_evaluations(5)

        assert LengthBiasAnalyzer().normalize_for_length(evaluations) is evaluations

    def test_normalize_without_bias(self):
        evaluations = [{"output": "x" * (i + 1), "score": 0.5} for i in range(12)]

        assert LengthBiasAnalyzer().normalize_for_length(evaluations) is evaluations

    def test_invalid_records(self):
        with pytest.raises(InvalidArgumentError):
            LengthBiasAnalyzer().analyze_length_correlation([])
        with pytest.raises(InvalidArgumentError):
            LengthBiasAnalyzer().analyze_length_correlation([{"output": "no score"}])


class TestFormatBias:
    """Tests for format bias analysis."""

    def test_bold_text_bias(self):
        evaluations = [{"output": f"**Answer** number {i}", "score": 0.9} for i in range(5)]
        evaluations += [{"output": f"Answer number {i}", "score": 0.3} for i in range(5)]

        result = FormatBiasAnalyzer().analyze(evaluations)

        bold = result.format_biases["bold_text"]
        assert bold.correlation == pytest.approx(1.0)
        assert bold.direction == "prefers_with"
        assert bold.feature_frequency == pytest.approx(0.5)
        assert result.significant_biases == ["bold_text"]
        assert result.bias_count == 1
        assert result.sample_size == 10

    def test_absent_features_have_no_bias(self):
        evaluations = [{"output": f"plain {i}", "score": i / 10} for i in range(10)]

        result = FormatBiasAnalyzer().analyze(evaluations)

        assert result.bias_count == 0
        assert all(b.direction == "none" for b in result.format_biases.values())

    def test_accepts_objects(self):
        class Record:
            def __init__(self, output, score):
                self.output = output
                self.score = score

        records = [Record("# Title\n- item", 1.0), Record("plain", 0.0)]

        result = FormatBiasAnalyzer().analyze(records)

        assert result.format_biases["markdown_headers"].direction == "prefers_with"
        assert result.format_biases["bullet_lists"].bias_detected


class TestConsistency:
    """Tests for repeated-judgment consistency."""

    def test_deterministic_judge(self):
        result = ConsistencyChecker(StubJudge(always_first, confidence=0.8)).check(
            "q", "a", "Is it good?"
        )

        assert result.consistent
        assert result.agreement_rate == 1.0
        assert result.passed_ratio == 1.0
        assert result.mean_confidence == pytest.approx(0.8)
        assert result.confidence_variance == 0.0
        assert result.repetitions == 3
        assert len(result.individual_results) == 3

    @pytest.mark.parametrize("confidence", [0.8, 0.1, 0.7])
    def test_identical_confidences_have_zero_variance(self, confidence):
        """The float mean of equal values can drift; the variance must not."""
        result = ConsistencyChecker(StubJudge(always_first, confidence=confidence)).check(
            "q", "a", "Is it good?", repetitions=3
        )

        assert result.confidence_variance == 0.0

    def test_flip_flopping_judge(self):
        flips = itertools.cycle([True, False])
        lock = threading.Lock()

        def decide(input, output):
            with lock:
                return next(flips)

        checker = ConsistencyChecker(StubJudge(decide), repetitions=4)
        result = checker.check("q", "a", "Is it good?")

        assert not result.consistent
        assert result.agreement_rate == pytest.approx(0.5)
        assert result.passed_ratio == pytest.approx(0.5)

    def test_agreement_floor(self):
        answers = iter([True, True, False])
        lock = threading.Lock()

        def decide(input, output):
            with lock:
                return next(answers)

        checker = ConsistencyChecker(StubJudge(decide), agreement_floor=0.6, max_workers=1)
        result = checker.check("q", "a", "Is it good?")

        assert result.agreement_rate == pytest.approx(2 / 3)
        assert result.consistent

    def test_failed_repetitions_are_excluded(self):
        attempts = itertools.count()
        lock = threading.Lock()

        def decide(input, output):
            with lock:
                attempt = next(attempts)
            if attempt == 0:
                raise JudgeParseError("garbled")
            return True

        result = ConsistencyChecker(StubJudge(decide), max_workers=1).check("q", "a", "Good?")

        assert result.failed_repetitions == 1
        assert result.partial
        assert len(result.individual_results) == 2
        assert result.consistent

    def test_all_repetitions_fail(self):
        def broken(input, output):
            raise JudgeParseError("garbled")

        with pytest.raises(JudgeParseError):
            ConsistencyChecker(StubJudge(broken)).check("q", "a", "Good?")

    def test_invalid_repetitions(self):
        with pytest.raises(InvalidArgumentError):
            ConsistencyChecker(StubJudge(always_first), repetitions=0)

    def test_check_batch(self):
        def decide(input, output):
            if output == "broken":
                raise JudgeParseError("garbled")
            return True

        samples = [{"input": "q1", "output": "fine"}, {"input": "q2", "output": "broken"}]
        result = ConsistencyChecker(StubJudge(decide)).check_batch(samples, "Good?")

        assert result.overall_consistency_rate == 1.0
        assert result.mean_agreement_rate == 1.0
        assert result.results[1] is None
        assert result.failed_samples[0]["index"] == 1
        assert result.inconsistent_samples == []
        assert result.partial

    def test_check_batch_all_fail(self):
        def broken(input, output):
            raise JudgeParseError("garbled")

        with pytest.raises(JudgeCallError, match="No sample could be checked"):
            ConsistencyChecker(StubJudge(broken)).check_batch([{"output": "a"}], "Good?")

    def test_check_batch_cancelled(self):
        cancel = threading.Event()
        cancel.set()

        result = ConsistencyChecker(StubJudge(always_first)).check_batch(
            [{"output": "a"}, {"output": "b"}], "Good?", cancel_event=cancel
        )

        assert result.cancelled_count == 2
        assert result.overall_consistency_rate == 0.0
        assert result.partial
