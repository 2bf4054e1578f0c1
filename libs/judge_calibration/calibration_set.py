"""
Labeled calibration data for measuring a judge's error rates.

A CalibrationSet holds (input, output) pairs whose correct verdict is known.
Running a judge over it yields sensitivity (true positive rate) and
specificity (true negative rate), which drive bias correction.

Usage:
    cal = CalibrationSet()
    cal.add("What is 2+2?", "4", ground_truth=True)
    cal.add("What is 2+2?", "5", ground_truth=False)

    train, test = cal.stratified_split(ratio=0.8, seed=42)
    cal.save("calibration.yaml")
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .errors import InsufficientCalibrationDataError, InvalidArgumentError
from .models import CalibrationSample, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"

DEFAULT_MIN_POSITIVE = 10
DEFAULT_MIN_NEGATIVE = 10

YAML_SUFFIXES = (".yaml", ".yml")


def _check_schema_version(version: str | None) -> None:
    if version is None:
        return
    major = str(version).split(".")[0]
    if major != SCHEMA_VERSION.split(".")[0]:
        raise ValueError(
            f"Incompatible calibration set schema version {version} "
            f"(expected {SCHEMA_VERSION.split('.')[0]}.x)"
        )


class CalibrationSet:
    """Ordered collection of labeled calibration samples."""

    def __init__(
        self,
        samples: Iterable[CalibrationSample] | None = None,
        metadata: Mapping[str, Any] | None = None,
        min_positive: int = DEFAULT_MIN_POSITIVE,
        min_negative: int = DEFAULT_MIN_NEGATIVE,
    ):
        self._samples: list[CalibrationSample] = list(samples or [])
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.min_positive = min_positive
        self.min_negative = min_negative

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def add(
        self,
        input: str,
        output: str,
        ground_truth: bool,
        context: Mapping[str, Any] | None = None,
    ) -> CalibrationSet:
        """Append a labeled sample and return self for chaining."""
        self._samples.append(
            CalibrationSample(
                input=input,
                output=output,
                ground_truth=bool(ground_truth),
                context=context or {},
            )
        )
        return self

    def add_sample(self, sample: CalibrationSample) -> CalibrationSet:
        self._samples.append(sample)
        return self

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    @property
    def samples(self) -> list[CalibrationSample]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[CalibrationSample]:
        return iter(list(self._samples))

    def __repr__(self) -> str:
        return f"CalibrationSet(positive={self.m1}, negative={self.m0})"

    @property
    def positive_samples(self) -> list[CalibrationSample]:
        return [s for s in self._samples if s.ground_truth]

    @property
    def negative_samples(self) -> list[CalibrationSample]:
        return [s for s in self._samples if not s.ground_truth]

    @property
    def m1(self) -> int:
        """Number of positive samples."""
        return sum(1 for s in self._samples if s.ground_truth)

    @property
    def m0(self) -> int:
        """Number of negative samples."""
        return len(self._samples) - self.m1

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def is_valid(
        self, min_positive: int | None = None, min_negative: int | None = None
    ) -> bool:
        min_positive = self.min_positive if min_positive is None else min_positive
        min_negative = self.min_negative if min_negative is None else min_negative
        return self.m1 >= min_positive and self.m0 >= min_negative

    def validate(
        self, min_positive: int | None = None, min_negative: int | None = None
    ) -> CalibrationSet:
        """
        Raise unless both classes meet their minimum counts.

        Raises:
            InsufficientCalibrationDataError: With actual and required counts
        """
        min_positive = self.min_positive if min_positive is None else min_positive
        min_negative = self.min_negative if min_negative is None else min_negative
        if not self.is_valid(min_positive, min_negative):
            raise InsufficientCalibrationDataError(
                positive=self.m1,
                negative=self.m0,
                min_positive=min_positive,
                min_negative=min_negative,
            )
        return self

    # -------------------------------------------------------------------------
    # Partitioning
    # -------------------------------------------------------------------------

    def _derived(self, samples: Iterable[CalibrationSample], **metadata: Any) -> CalibrationSet:
        return CalibrationSet(
            samples,
            metadata={**self.metadata, **metadata},
            min_positive=self.min_positive,
            min_negative=self.min_negative,
        )

    def split(
        self, ratio: float = 0.8, seed: int | None = None
    ) -> tuple[CalibrationSet, CalibrationSet]:
        """
        Randomly partition into (train, test).

        The same seed over the same samples always yields the same partition.
        """
        _check_ratio(ratio)
        rng = np.random.default_rng(seed)
        order = rng.permutation(len(self._samples))
        cut = int(math.floor(len(order) * ratio + 0.5))

        train = [self._samples[i] for i in sorted(order[:cut])]
        test = [self._samples[i] for i in sorted(order[cut:])]

        split_info = {"ratio": ratio, "seed": seed, "stratified": False}
        return (
            self._derived(train, split={**split_info, "part": "train"}),
            self._derived(test, split={**split_info, "part": "test"}),
        )

    def stratified_split(
        self, ratio: float = 0.8, seed: int | None = None
    ) -> tuple[CalibrationSet, CalibrationSet]:
        """Partition each class independently so both parts keep the class balance."""
        _check_ratio(ratio)
        rng = np.random.default_rng(seed)

        train_idx: list[int] = []
        test_idx: list[int] = []
        for label in (True, False):
            indices = [i for i, s in enumerate(self._samples) if bool(s.ground_truth) == label]
            shuffled = [indices[j] for j in rng.permutation(len(indices))]
            cut = int(math.floor(len(shuffled) * ratio + 0.5))
            train_idx.extend(shuffled[:cut])
            test_idx.extend(shuffled[cut:])

        split_info = {"ratio": ratio, "seed": seed, "stratified": True}
        return (
            self._derived(
                [self._samples[i] for i in sorted(train_idx)],
                split={**split_info, "part": "train"},
            ),
            self._derived(
                [self._samples[i] for i in sorted(test_idx)],
                split={**split_info, "part": "test"},
            ),
        )

    def filter(self, **context: Any) -> CalibrationSet:
        """Return a new set with the samples whose context matches every key/value."""
        return self._derived(s for s in self._samples if s.matches(**context))

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def statistics(self) -> dict[str, Any]:
        total = len(self._samples)
        positive = self.m1
        negative = self.m0
        return {
            "total": total,
            "positive": positive,
            "negative": negative,
            "positive_ratio": positive / total if total else 0.0,
            "negative_ratio": negative / total if total else 0.0,
            "balance_ratio": positive / negative if negative else None,
            "is_valid": self.is_valid(),
            "min_positive": self.min_positive,
            "min_negative": self.min_negative,
        }

    @classmethod
    def merge(cls, *sets: CalibrationSet) -> CalibrationSet:
        """Concatenate several sets into a new one, recording provenance."""
        samples: list[CalibrationSample] = []
        for cal_set in sets:
            samples.extend(cal_set._samples)

        min_positive = sets[0].min_positive if sets else DEFAULT_MIN_POSITIVE
        min_negative = sets[0].min_negative if sets else DEFAULT_MIN_NEGATIVE
        return cls(
            samples,
            metadata={"merged_from": len(sets), "merged_at": utcnow().isoformat()},
            min_positive=min_positive,
            min_negative=min_negative,
        )

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "metadata": self.metadata,
            "min_positive": self.min_positive,
            "min_negative": self.min_negative,
            "statistics": self.statistics(),
            "samples": [s.to_dict() for s in self._samples],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CalibrationSet:
        _check_schema_version(data.get("schema_version"))
        return cls(
            (CalibrationSample.from_dict(s) for s in data.get("samples") or []),
            metadata=data.get("metadata") or {},
            min_positive=data.get("min_positive", DEFAULT_MIN_POSITIVE),
            min_negative=data.get("min_negative", DEFAULT_MIN_NEGATIVE),
        )

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @classmethod
    def from_json(cls, text: str) -> CalibrationSet:
        return cls.from_dict(json.loads(text))

    def save(self, path: str | Path) -> Path:
        """Save as YAML (.yaml/.yml) or JSON (anything else)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.suffix.lower() in YAML_SUFFIXES:
            with open(path, "w") as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        else:
            with open(path, "w") as f:
                f.write(self.to_json())

        logger.debug(f"Saved calibration set ({len(self)} samples) to {path}")
        return path

    @classmethod
    def load(cls, path: str | Path) -> CalibrationSet:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration set not found: {path}")

        with open(path) as f:
            if path.suffix.lower() in YAML_SUFFIXES:
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        cal_set = cls.from_dict(data)
        logger.debug(f"Loaded calibration set ({len(cal_set)} samples) from {path}")
        return cal_set


def _check_ratio(ratio: float) -> None:
    if not 0.0 < ratio < 1.0:
        raise InvalidArgumentError(f"Split ratio must be between 0 and 1, got {ratio}")
