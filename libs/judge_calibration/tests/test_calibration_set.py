"""
Tests for CalibrationSet.

Tests:
- Building and counting samples
- Validation against minimum class counts
- Reproducible random and stratified splits
- Filtering, statistics and merging
- JSON/YAML serialization
"""

import dataclasses
import json

import pytest

from judge_calibration import (
    CalibrationSample,
    CalibrationSet,
    InsufficientCalibrationDataError,
    InvalidArgumentError,
)


def make_set(positive, negative):
    cal_set = CalibrationSet()
    for i in range(positive):
        cal_set.add(f"q{i}", f"good-{i}", True)
    for i in range(negative):
        cal_set.add(f"q{i}", f"bad-{i}", False)
    return cal_set


class TestBuilding:
    """Tests for adding samples and class counts."""

    def test_add_is_chainable(self):
        """add() returns the set itself."""
        cal_set = CalibrationSet()
        result = cal_set.add("2+2?", "4", True).add("2+2?", "5", False)

        assert result is cal_set
        assert len(cal_set) == 2

    def test_counts(self):
        """m1 counts positives and m0 counts negatives."""
        cal_set = make_set(4, 7)

        assert cal_set.m1 == 4
        assert cal_set.m0 == 7
        assert len(cal_set.positive_samples) == 4
        assert len(cal_set.negative_samples) == 7
        assert all(s.ground_truth for s in cal_set.positive_samples)

    def test_samples_are_timestamped(self):
        """Added samples carry an added_at timestamp."""
        cal_set = make_set(1, 0)

        assert cal_set.samples[0].added_at.tzinfo is not None

    def test_samples_are_immutable(self):
        """Samples and their context cannot be changed after creation."""
        cal_set = CalibrationSet().add("q", "a", True, context={"domain": "math"})
        sample = cal_set.samples[0]

        with pytest.raises(dataclasses.FrozenInstanceError):
            sample.output = "changed"  # type: ignore[misc]
        with pytest.raises(TypeError):
            sample.context["domain"] = "code"  # type: ignore[index]

    def test_samples_view_is_a_copy(self):
        """Mutating the returned list does not change the set."""
        cal_set = make_set(2, 2)
        cal_set.samples.clear()

        assert len(cal_set) == 4


class TestValidation:
    """Tests for minimum class counts."""

    def test_too_small_set_raises(self):
        """A 3/3 set fails the default 10/10 minimums."""
        cal_set = make_set(3, 3)

        assert not cal_set.is_valid()
        with pytest.raises(InsufficientCalibrationDataError) as exc_info:
            cal_set.validate()

        error = exc_info.value
        assert (error.positive, error.negative) == (3, 3)
        assert (error.min_positive, error.min_negative) == (10, 10)

    def test_overridden_minimums(self):
        """Minimums can be overridden per call or per set."""
        cal_set = make_set(3, 3)

        assert cal_set.is_valid(min_positive=3, min_negative=3)
        assert CalibrationSet(cal_set.samples, min_positive=2, min_negative=2).is_valid()
        assert cal_set.validate(3, 3) is cal_set

    def test_valid_set(self, balanced_set):
        assert balanced_set.is_valid()


class TestSplitting:
    """Tests for train/test partitioning."""

    def test_split_sizes(self):
        train, test = make_set(10, 10).split(ratio=0.8, seed=1)

        assert len(train) == 16
        assert len(test) == 4

    def test_split_is_reproducible(self):
        """The same seed produces the same partition."""
        cal_set = make_set(10, 10)

        train_a, test_a = cal_set.split(ratio=0.7, seed=42)
        train_b, test_b = cal_set.split(ratio=0.7, seed=42)

        assert [s.output for s in train_a] == [s.output for s in train_b]
        assert [s.output for s in test_a] == [s.output for s in test_b]

    def test_split_partitions_all_samples(self):
        cal_set = make_set(10, 10)
        train, test = cal_set.split(ratio=0.5, seed=3)

        outputs = sorted(s.output for s in list(train) + list(test))
        assert outputs == sorted(s.output for s in cal_set)

    def test_stratified_split_preserves_balance(self):
        """A 15:5 set keeps a ~3:1 ratio in both partitions."""
        cal_set = make_set(15, 5)
        train, test = cal_set.stratified_split(ratio=0.8, seed=7)

        source_ratio = cal_set.m1 / cal_set.m0
        assert train.m1 / train.m0 == pytest.approx(source_ratio, abs=0.5)
        assert test.m1 / test.m0 == pytest.approx(source_ratio, abs=0.5)
        assert len(train) + len(test) == 20

    def test_stratified_split_is_reproducible(self):
        cal_set = make_set(15, 5)

        first = cal_set.stratified_split(seed=11)
        second = cal_set.stratified_split(seed=11)

        assert [s.output for s in first[1]] == [s.output for s in second[1]]

    def test_split_records_metadata(self):
        train, test = make_set(10, 10).stratified_split(ratio=0.8, seed=5)

        assert train.metadata["split"]["part"] == "train"
        assert test.metadata["split"]["stratified"] is True
        assert test.metadata["split"]["seed"] == 5

    @pytest.mark.parametrize("ratio", [0.0, 1.0, 1.5, -0.1])
    def test_invalid_ratio(self, ratio):
        with pytest.raises(InvalidArgumentError):
            make_set(5, 5).split(ratio=ratio)


class TestFilterStatisticsMerge:
    """Tests for filtering, statistics and merging."""

    def test_filter_by_context(self, balanced_set):
        """filter() keeps samples whose context matches every pair."""
        math = balanced_set.filter(domain="math")

        assert len(math) == 16
        assert all(s.context["domain"] == "math" for s in math)
        assert len(balanced_set) == 30
        assert len(balanced_set.filter(domain="math", missing="key")) == 0

    def test_statistics(self):
        stats = make_set(6, 2).statistics()

        assert stats["total"] == 8
        assert stats["positive"] == 6
        assert stats["negative"] == 2
        assert stats["positive_ratio"] == pytest.approx(0.75)
        assert stats["balance_ratio"] == pytest.approx(3.0)
        assert stats["is_valid"] is False

    def test_statistics_without_negatives(self):
        assert make_set(3, 0).statistics()["balance_ratio"] is None

    def test_merge(self):
        """merge() concatenates samples and stamps provenance."""
        merged = CalibrationSet.merge(make_set(2, 1), make_set(3, 4))

        assert merged.m1 == 5
        assert merged.m0 == 5
        assert merged.metadata["merged_from"] == 2
        assert "merged_at" in merged.metadata


class TestSerialization:
    """Tests for dict/JSON/YAML round trips."""

    def test_json_round_trip(self):
        cal_set = CalibrationSet(metadata={"task": "qa"})
        cal_set.add("q", "a", True, context={"domain": "math", "difficulty": 3})

        restored = CalibrationSet.from_json(cal_set.to_json())

        assert restored.metadata == {"task": "qa"}
        original, copy = cal_set.samples[0], restored.samples[0]
        assert copy.input == original.input
        assert copy.ground_truth is True
        assert dict(copy.context) == {"domain": "math", "difficulty": 3}
        assert copy.added_at == original.added_at

    def test_document_shape(self):
        data = json.loads(make_set(1, 1).to_json())

        assert data["schema_version"] == "1.0.0"
        assert set(data["samples"][0]) == {"input", "output", "ground_truth", "context", "added_at"}

    @pytest.mark.parametrize("filename", ["cal.json", "cal.yaml", "nested/cal.yml"])
    def test_save_load(self, tmp_path, balanced_set, filename):
        path = balanced_set.save(tmp_path / filename)
        restored = CalibrationSet.load(path)

        assert [s.output for s in restored] == [s.output for s in balanced_set]
        assert [s.added_at for s in restored] == [s.added_at for s in balanced_set]
        assert restored.m1 == 15

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CalibrationSet.load(tmp_path / "missing.json")

    def test_incompatible_schema_version(self):
        with pytest.raises(ValueError, match="schema version"):
            CalibrationSet.from_dict({"schema_version": "2.0.0", "samples": []})

    def test_sample_from_dict_defaults(self):
        sample = CalibrationSample.from_dict({"output": "a", "ground_truth": False})

        assert sample.input == ""
        assert dict(sample.context) == {}
