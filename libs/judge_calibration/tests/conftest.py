"""Shared fixtures: stub judge backends and calibration data. No network access."""

import threading
import time

import pytest

from judge_calibration import CalibrationSet, CallPolicy, StatisticalJudge


class StubBackend:
    """
    call_judge stub whose verdict is ``decide(input, output)``.

    ``decide`` may also raise to simulate a failing judge call.
    """

    def __init__(self, decide, confidence=0.9, reasoning="stub"):
        self.decide = decide
        self.confidence = confidence
        self.reasoning = reasoning
        self.calls = []
        self._lock = threading.Lock()

    def call_judge(self, input, output, criteria, **options):
        with self._lock:
            self.calls.append((input, output, criteria, options))
        verdict = self.decide(input, output)
        return {"verdict": verdict, "confidence": self.confidence, "reasoning": self.reasoning}


class InFlightBackend:
    """call_judge stub that sleeps and records the peak number of concurrent calls."""

    def __init__(self, delay):
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def call_judge(self, input, output, criteria, **options):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
        finally:
            with self._lock:
                self.in_flight -= 1
        return {"verdict": True}


@pytest.fixture
def stub_backend():
    """Factory for StubBackend instances."""
    return StubBackend


@pytest.fixture
def in_flight_backend():
    """Factory for InFlightBackend instances."""
    return InFlightBackend


@pytest.fixture
def fast_policy():
    """Call policy with no backoff delay."""
    return CallPolicy(timeout=5.0, max_attempts=3, initial_delay=0.0, max_delay=0.0, max_workers=4)


@pytest.fixture
def make_judge(fast_policy):
    """Build a StatisticalJudge around a backend with the fast policy."""

    def _make(backend, **kwargs):
        kwargs.setdefault("criteria", "Is the output good?")
        kwargs.setdefault("policy", fast_policy)
        return StatisticalJudge(judge=backend, **kwargs)

    return _make


@pytest.fixture
def balanced_set():
    """15 positive ("good-i") and 15 negative ("bad-i") samples."""
    cal_set = CalibrationSet()
    for i in range(15):
        domain = "math" if i % 2 == 0 else "code"
        cal_set.add(f"question {i}", f"good-{i}", True, context={"domain": domain})
        cal_set.add(f"question {i}", f"bad-{i}", False, context={"domain": domain})
    return cal_set


def is_good(input, output):
    return output.startswith("good")


@pytest.fixture
def perfect_backend(stub_backend):
    """Backend that is always right on ``balanced_set``."""
    return stub_backend(is_good)
