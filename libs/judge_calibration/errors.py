"""Error types raised by the judge calibration engine."""

from __future__ import annotations


class JudgeCalibrationError(Exception):
    """Base class for all errors raised by judge_calibration."""


class InsufficientCalibrationDataError(JudgeCalibrationError):
    """A calibration set has too few positive or negative samples."""

    def __init__(
        self,
        positive: int,
        negative: int,
        min_positive: int,
        min_negative: int,
        message: str | None = None,
    ):
        self.positive = positive
        self.negative = negative
        self.min_positive = min_positive
        self.min_negative = min_negative
        super().__init__(
            message
            or (
                f"Calibration set needs at least {min_positive} positive and "
                f"{min_negative} negative samples, got {positive} positive and "
                f"{negative} negative"
            )
        )


class JudgeNotCalibratedError(JudgeCalibrationError):
    """Bias correction was requested from a judge that has not been calibrated."""


class UninformativeJudgeError(JudgeCalibrationError):
    """
    The judge carries no signal (sensitivity + specificity == 1).

    The bias-correction denominator is zero, so no corrected estimate exists.
    """

    def __init__(self, sensitivity: float, specificity: float):
        self.sensitivity = sensitivity
        self.specificity = specificity
        super().__init__(
            f"Judge is exactly as good as chance (sensitivity={sensitivity:.3f}, "
            f"specificity={specificity:.3f}); bias correction is undefined"
        )


class InvalidArgumentError(JudgeCalibrationError, ValueError):
    """A required argument is missing or out of range."""


class JudgeCallError(JudgeCalibrationError):
    """A call to the underlying judge failed."""


class JudgeTransientError(JudgeCallError):
    """A judge call failed in a way that may succeed on retry (network, rate limit)."""


class JudgeTimeoutError(JudgeTransientError):
    """A judge call exceeded its timeout."""


class JudgeParseError(JudgeCallError):
    """The judge's answer could not be parsed into a verdict."""


class JudgeRefusalError(JudgeCallError):
    """The provider declined to produce a verdict."""


def describe_error(error: BaseException) -> str:
    """Render an error as ``TypeName: message`` for serializable results."""
    return f"{type(error).__name__}: {error}"
