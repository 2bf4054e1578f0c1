"""
Command-line interface for judge calibration.

Supports:
- Inspecting, splitting and merging calibration sets
- Bias-correcting a raw pass rate from known judge error rates
- Planning a calibration budget
- Calibrating configured judges against a calibration set
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from .calibration_set import CalibrationSet
from .config import ConfigLoader, create_judge, parse_cli_overrides
from .errors import JudgeCalibrationError
from .logging_setup import setup_logging
from .statistical_judge import estimate_confidence_interval, optimal_allocation

console = Console()


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="judge-calibration",
        description="Calibrate LLM judges and bias-correct their verdicts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Summarize a calibration set
  judge-calibration stats data/calibration.yaml

  # Stratified 80/20 split
  judge-calibration split data/calibration.yaml --stratified --seed 42 --out-dir data/

  # Correct a raw pass rate of 75% over 200 samples
  judge-calibration correct --raw 0.75 --n 200 --sensitivity 0.9 --specificity 0.8 --m0 50 --m1 50

  # Calibrate every configured judge, overriding the criteria
  judge-calibration calibrate data/calibration.yaml --config judges.yaml --criteria="Is it correct?"
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    stats_parser = subparsers.add_parser("stats", help="Show calibration set statistics")
    stats_parser.add_argument("set", help="Calibration set file (.json or .yaml)")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    split_parser = subparsers.add_parser("split", help="Split a calibration set into train/test")
    split_parser.add_argument("set", help="Calibration set file")
    split_parser.add_argument("--ratio", type=float, default=0.8, help="Train fraction")
    split_parser.add_argument("--seed", type=int, default=None, help="Random seed")
    split_parser.add_argument("--stratified", action="store_true", help="Preserve class balance")
    split_parser.add_argument("--out-dir", "-o", default=".", help="Output directory")

    merge_parser = subparsers.add_parser("merge", help="Merge calibration sets")
    merge_parser.add_argument("sets", nargs="+", help="Calibration set files")
    merge_parser.add_argument("--output", "-o", required=True, help="Output file")

    correct_parser = subparsers.add_parser(
        "correct", help="Bias-correct a raw pass rate with a confidence interval"
    )
    correct_parser.add_argument("--raw", type=float, required=True, help="Raw pass rate")
    correct_parser.add_argument("--n", type=int, required=True, help="Test batch size")
    correct_parser.add_argument("--sensitivity", type=float, required=True, help="q1")
    correct_parser.add_argument("--specificity", type=float, required=True, help="q0")
    correct_parser.add_argument("--m0", type=int, required=True, help="Negative calibration samples")
    correct_parser.add_argument("--m1", type=int, required=True, help="Positive calibration samples")
    correct_parser.add_argument("--alpha", type=float, default=0.05, help="Significance level")
    correct_parser.add_argument("--json", action="store_true", help="Output as JSON")

    allocate_parser = subparsers.add_parser(
        "allocate", help="Recommend a positive/negative calibration split"
    )
    allocate_parser.add_argument("--budget", type=int, required=True, help="Total samples")
    allocate_parser.add_argument("--sensitivity", type=float, required=True, help="Pilot q1")
    allocate_parser.add_argument("--specificity", type=float, required=True, help="Pilot q0")
    allocate_parser.add_argument(
        "--expected-positive-rate", type=float, required=True, help="Expected pass rate"
    )

    calibrate_parser = subparsers.add_parser(
        "calibrate", help="Calibrate configured judges against a set"
    )
    calibrate_parser.add_argument("set", help="Calibration set file")
    calibrate_parser.add_argument("--config", "-c", required=True, help="Judge config file")
    calibrate_parser.add_argument(
        "--config-dir", default="./configs", help="Directory containing configs"
    )
    calibrate_parser.add_argument("--save-state", help="Write calibration results as JSON")

    # Unknown --key=value args become config overrides
    args, unknown = parser.parse_known_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(verbose=args.verbose)
    overrides = parse_cli_overrides(unknown)

    commands = {
        "stats": cmd_stats,
        "split": cmd_split,
        "merge": cmd_merge,
        "correct": cmd_correct,
        "allocate": cmd_allocate,
        "calibrate": lambda a: cmd_calibrate(a, overrides),
    }

    try:
        return commands[args.command](args)
    except (JudgeCalibrationError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1


def cmd_stats(args: argparse.Namespace) -> int:
    """Show calibration set statistics."""
    cal_set = CalibrationSet.load(args.set)
    stats = cal_set.statistics()

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    table = Table(title=f"Calibration set: {args.set}")
    table.add_column("Statistic")
    table.add_column("Value", justify="right")
    for key, value in stats.items():
        table.add_row(key, _fmt(value))
    console.print(table)
    return 0


def cmd_split(args: argparse.Namespace) -> int:
    """Split a calibration set into train and test files."""
    source = Path(args.set)
    cal_set = CalibrationSet.load(source)

    if args.stratified:
        train, test = cal_set.stratified_split(ratio=args.ratio, seed=args.seed)
    else:
        train, test = cal_set.split(ratio=args.ratio, seed=args.seed)

    out_dir = Path(args.out_dir)
    train_path = train.save(out_dir / f"{source.stem}_train{source.suffix}")
    test_path = test.save(out_dir / f"{source.stem}_test{source.suffix}")

    console.print(f"Train: {train_path} ({train.m1} positive, {train.m0} negative)")
    console.print(f"Test:  {test_path} ({test.m1} positive, {test.m0} negative)")
    return 0


def cmd_merge(args: argparse.Namespace) -> int:
    """Merge calibration sets into one file."""
    merged = CalibrationSet.merge(*(CalibrationSet.load(p) for p in args.sets))
    path = merged.save(args.output)
    console.print(f"Merged {len(args.sets)} sets ({len(merged)} samples) into {path}")
    return 0


def cmd_correct(args: argparse.Namespace) -> int:
    """Bias-correct a raw pass rate."""
    interval = estimate_confidence_interval(
        args.raw,
        args.n,
        sensitivity=args.sensitivity,
        specificity=args.specificity,
        m0=args.m0,
        m1=args.m1,
        alpha=args.alpha,
    )

    if args.json:
        print(json.dumps(interval.to_dict(), indent=2))
        return 0

    table = Table(title="Bias-corrected accuracy")
    table.add_column("Quantity")
    table.add_column("Value", justify="right")
    table.add_row("raw pass rate", _fmt(args.raw))
    table.add_row("corrected estimate", _fmt(interval.point_estimate))
    table.add_row(
        f"{interval.confidence_level:.0%} interval",
        f"[{interval.lower:.4f}, {interval.upper:.4f}]",
    )
    table.add_row("standard error", _fmt(interval.standard_error))
    table.add_row("test variance", _fmt(interval.test_variance))
    table.add_row("calibration variance", _fmt(interval.calibration_variance))
    console.print(table)
    return 0


def cmd_allocate(args: argparse.Namespace) -> int:
    """Recommend how to split a calibration budget."""
    plan = optimal_allocation(
        args.budget,
        sensitivity=args.sensitivity,
        specificity=args.specificity,
        expected_positive_rate=args.expected_positive_rate,
    )
    console.print(
        f"Allocate {plan.m1} positive and {plan.m0} negative samples "
        f"(ratio {plan.ratio:.2f}); expected calibration variance reduction "
        f"vs an even split: {plan.expected_variance_reduction:.2f}%"
    )
    return 0


def cmd_calibrate(args: argparse.Namespace, overrides: dict[str, Any]) -> int:
    """Calibrate every configured judge against a calibration set."""
    config = ConfigLoader(args.config_dir).load(args.config, overrides)
    cal_set = CalibrationSet.load(args.set)

    table = Table(title=f"Calibration on {len(cal_set)} samples")
    table.add_column("Judge")
    table.add_column("Sensitivity", justify="right")
    table.add_column("Specificity", justify="right")
    table.add_column("Better than random", justify="center")
    table.add_column("Failed", justify="right")

    states = {}
    for model in config.models:
        judge = create_judge(config, model=model)
        state = judge.calibrate(cal_set)
        states[judge.name] = state.to_dict()
        table.add_row(
            judge.name,
            _fmt(state.sensitivity),
            _fmt(state.specificity),
            "yes" if state.better_than_random else "[red]no[/red]",
            str(state.failed_samples),
        )

    console.print(table)

    if args.save_state:
        path = Path(args.save_state)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(states, f, indent=2)
        console.print(f"Saved calibration results to {path}")

    return 0


def _fmt(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}"
    return str(value)


if __name__ == "__main__":
    sys.exit(main())
