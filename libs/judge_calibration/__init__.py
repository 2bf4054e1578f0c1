"""
Judge Calibration

Statistical calibration and bias correction for LLM judges.

An LLM judge is a noisy binary classifier. This library measures how noisy
(sensitivity and specificity on labeled data), corrects raw pass rates for
that noise with confidence intervals, combines several judges into one
verdict, and detects position, length, formatting and consistency biases.

Example:
    from judge_calibration import CalibrationSet, StatisticalJudge

    calibration = CalibrationSet.load("calibration.yaml")
    judge = StatisticalJudge(model="gpt-4o", criteria="Is the answer correct?")
    judge.calibrate(calibration)

    result = judge.evaluate_batch(samples)
    print(result.raw_accuracy, result.bias_corrected_accuracy)
    print(result.confidence_interval.lower, result.confidence_interval.upper)

    # Any object with call_judge(input, output, criteria, **options) works
    # as the judge, including plain functions:
    judge = StatisticalJudge(judge=lambda i, o, c, **kw: {"verdict": True})
"""

# Errors
from .errors import (
    JudgeCalibrationError,
    InsufficientCalibrationDataError,
    JudgeNotCalibratedError,
    UninformativeJudgeError,
    InvalidArgumentError,
    JudgeCallError,
    JudgeTransientError,
    JudgeTimeoutError,
    JudgeParseError,
    JudgeRefusalError,
)

# Models
from .models import (
    CalibrationSample,
    JudgeVerdict,
    JudgeVote,
    JudgeBackend,
    FunctionBackend,
    as_backend,
)

# Calibration data
from .calibration_set import CalibrationSet

# Concurrency
from .concurrency import CallPolicy, TaskOutcome, call_with_timeout, fan_out

# Single judge
from .statistical_judge import (
    StatisticalJudge,
    CalibrationState,
    ConfidenceInterval,
    AllocationPlan,
    BatchEvaluation,
    ItemResult,
    bias_corrected_estimate,
    estimate_confidence_interval,
    optimal_allocation,
)

# Judge panels
from .multi_judge import (
    MultiJudgeEvaluator,
    ConsensusResult,
    BatchConsensusResult,
    ReviewFlag,
    ReliabilityReport,
    fleiss_kappa,
    cohens_kappa,
)

# Bias mitigation
from .bias_mitigation import (
    PositionDebiaser,
    PairwiseComparison,
    OrderingJudgment,
    RankingResult,
    LengthBiasAnalyzer,
    LengthBiasResult,
    FormatBiasAnalyzer,
    FormatBiasResult,
    ConsistencyChecker,
    ConsistencyResult,
    ConsistencyBatchResult,
    FORMAT_INDICATORS,
)

# Model backend
from .model_judge import ModelJudge, parse_verdict

# Configuration
from .config import JudgeConfig, ConfigLoader, create_judge, create_evaluator

__all__ = [
    # Errors
    "JudgeCalibrationError",
    "InsufficientCalibrationDataError",
    "JudgeNotCalibratedError",
    "UninformativeJudgeError",
    "InvalidArgumentError",
    "JudgeCallError",
    "JudgeTransientError",
    "JudgeTimeoutError",
    "JudgeParseError",
    "JudgeRefusalError",
    # Models
    "CalibrationSample",
    "JudgeVerdict",
    "JudgeVote",
    "JudgeBackend",
    "FunctionBackend",
    "as_backend",
    # Calibration data
    "CalibrationSet",
    # Concurrency
    "CallPolicy",
    "TaskOutcome",
    "call_with_timeout",
    "fan_out",
    # Single judge
    "StatisticalJudge",
    "CalibrationState",
    "ConfidenceInterval",
    "AllocationPlan",
    "BatchEvaluation",
    "ItemResult",
    "bias_corrected_estimate",
    "estimate_confidence_interval",
    "optimal_allocation",
    # Judge panels
    "MultiJudgeEvaluator",
    "ConsensusResult",
    "BatchConsensusResult",
    "ReviewFlag",
    "ReliabilityReport",
    "fleiss_kappa",
    "cohens_kappa",
    # Bias mitigation
    "PositionDebiaser",
    "PairwiseComparison",
    "OrderingJudgment",
    "RankingResult",
    "LengthBiasAnalyzer",
    "LengthBiasResult",
    "FormatBiasAnalyzer",
    "FormatBiasResult",
    "ConsistencyChecker",
    "ConsistencyResult",
    "ConsistencyBatchResult",
    "FORMAT_INDICATORS",
    # Model backend
    "ModelJudge",
    "parse_verdict",
    # Configuration
    "JudgeConfig",
    "ConfigLoader",
    "create_judge",
    "create_evaluator",
]

__version__ = "0.1.0"
