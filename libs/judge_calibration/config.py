"""
Configuration for judges and judge panels.

Supports:
- YAML config files
- Config inheritance (extends)
- CLI overrides (--key=value)
- Environment variable substitution (${VAR} or ${VAR:default})

Example config:
    models:
      - gpt-4o
      - claude-sonnet-4-20250514
    criteria: "Is the answer factually correct?"
    temperature: 0.0
    timeout: ${JUDGE_TIMEOUT:30}
    default_strategy: weighted
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .concurrency import CallPolicy
from .errors import InvalidArgumentError
from .multi_judge import DEFAULT_AGREEMENT_FLOOR, DEFAULT_THRESHOLD, MultiJudgeEvaluator
from .statistical_judge import StatisticalJudge

ENV_PATTERN = re.compile(r"\$\{(\w+)(?::([^}]*))?\}")


@dataclass
class JudgeConfig:
    """Settings for building a StatisticalJudge or MultiJudgeEvaluator."""

    models: list[str] = field(default_factory=lambda: ["gpt-4o"])
    temperature: float = 0.0
    criteria: str | None = None

    # Judge-call policy
    timeout: float | None = 30.0
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    max_workers: int = 4

    # Calibration minimums (None: use the calibration set's own)
    min_positive: int | None = None
    min_negative: int | None = None

    # Consensus
    default_strategy: str = "majority"
    threshold: float = DEFAULT_THRESHOLD
    agreement_floor: float = DEFAULT_AGREEMENT_FLOOR

    # Inherit from another config
    extends: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.models, str):
            self.models = [self.models]
        if not self.models:
            raise InvalidArgumentError("At least one model is required")

    @property
    def policy(self) -> CallPolicy:
        return CallPolicy(
            timeout=self.timeout,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            max_workers=self.max_workers,
        )

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.to_yaml())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JudgeConfig:
        """Create a config from a dictionary, coercing substituted strings."""
        valid_fields = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_fields}

        for key, convert in _CONVERTERS.items():
            if key in filtered and filtered[key] is not None:
                try:
                    filtered[key] = convert(filtered[key])
                except (TypeError, ValueError) as e:
                    raise InvalidArgumentError(
                        f"Invalid value for {key}: {filtered[key]!r}"
                    ) from e

        return cls(**filtered)


_CONVERTERS = {
    "temperature": float,
    "timeout": float,
    "max_attempts": int,
    "initial_delay": float,
    "max_delay": float,
    "max_workers": int,
    "min_positive": int,
    "min_negative": int,
    "threshold": float,
    "agreement_floor": float,
}


class ConfigLoader:
    """
    Loads judge configurations from YAML.

    Relative names are looked up in ``config_dir`` with or without the
    ``.yaml`` suffix.
    """

    def __init__(self, config_dir: Path | str | None = None):
        self.config_dir = Path(config_dir) if config_dir else Path("./configs")

    def load(
        self,
        path_or_name: str | Path,
        overrides: dict[str, Any] | None = None,
    ) -> JudgeConfig:
        return JudgeConfig.from_dict(self.load_dict(path_or_name, overrides))

    def load_dict(
        self,
        path_or_name: str | Path,
        overrides: dict[str, Any] | None = None,
        _seen: frozenset[Path] = frozenset(),
    ) -> dict[str, Any]:
        path = self._resolve_path(path_or_name)
        if path in _seen:
            raise InvalidArgumentError(f"Circular config inheritance at {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if data.get("extends"):
            parent = self.load_dict(data["extends"], _seen=_seen | {path})
            data = _deep_merge(parent, data)
        data.pop("extends", None)

        if overrides:
            data = _deep_merge(data, overrides)

        return substitute_env(data)

    def _resolve_path(self, path_or_name: str | Path) -> Path:
        path = Path(path_or_name)
        candidates = [
            path,
            path.with_suffix(".yaml"),
            self.config_dir / path,
            (self.config_dir / path).with_suffix(".yaml"),
        ]
        for candidate in candidates:
            if candidate.is_file():
                return candidate.resolve()

        raise FileNotFoundError(f"Config not found: {path_or_name}")


def _deep_merge(base: dict, override: dict) -> dict:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def substitute_env(data: Any) -> Any:
    """Replace ${VAR} and ${VAR:default} in every string value."""
    if isinstance(data, str):

        def replace(match: re.Match[str]) -> str:
            default = match.group(2)
            return os.environ.get(match.group(1), default if default is not None else match.group(0))

        return ENV_PATTERN.sub(replace, data)

    if isinstance(data, dict):
        return {k: substitute_env(v) for k, v in data.items()}

    if isinstance(data, list):
        return [substitute_env(v) for v in data]

    return data


def parse_cli_overrides(args: list[str]) -> dict[str, Any]:
    """
    Parse ``--key=value`` arguments into a config override dict.

    Examples:
        --temperature=0.5
        --models=gpt-4o,claude-sonnet-4-20250514
        --criteria="Is the answer correct?"
    """
    overrides: dict[str, Any] = {}
    for arg in args:
        if not arg.startswith("--") or "=" not in arg:
            continue
        key, value = arg[2:].split("=", 1)
        overrides[key.replace("-", "_")] = _parse_value(value)
    return overrides


def _parse_value(value: str) -> Any:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "none":
        return None

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_value(v.strip()) for v in value.split(",")]

    return value


# =============================================================================
# FACTORIES
# =============================================================================


def create_judge(config: JudgeConfig, backend: Any = None, model: str | None = None) -> StatisticalJudge:
    """Build a StatisticalJudge for ``model`` (default: the first configured model)."""
    return StatisticalJudge(
        model=model or config.models[0],
        temperature=config.temperature,
        judge=backend,
        criteria=config.criteria,
        policy=config.policy,
        min_positive=config.min_positive,
        min_negative=config.min_negative,
    )


def create_evaluator(config: JudgeConfig, backend: Any = None) -> MultiJudgeEvaluator:
    """Build a MultiJudgeEvaluator with one judge per configured model."""
    if len(config.models) < 2:
        raise InvalidArgumentError(
            f"A judge panel needs at least 2 models, got {len(config.models)}"
        )
    return MultiJudgeEvaluator(
        judges=[create_judge(config, backend, model=m) for m in config.models],
        default_strategy=config.default_strategy,
        criteria=config.criteria,
        threshold=config.threshold,
        agreement_floor=config.agreement_floor,
        max_workers=config.max_workers,
    )
